"""REST + SSE API over executions, logs and tasks.

All routes are mounted under `/api`. The caller's owner id comes from the
``X-Owner-Id`` header; session handling happens in front of this service.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from sse_starlette.sse import EventSourceResponse
from starlette.concurrency import run_in_threadpool

from agent_ops import __version__
from agent_ops.orchestrator.scheduling.completion import MAX_WAIT_SECONDS, wait_for_completion
from agent_ops.orchestrator.services import Services
from agent_ops.orchestrator.store.models import (
    Execution,
    ExecutionParent,
    ExecutionStatus,
    LogLine,
    Task,
    TaskStatus,
)
from agent_ops.orchestrator.streaming.events import StreamEvent
from agent_ops.orchestrator.streaming.stream import aiter_execution_stream, aiter_owner_stream
from agent_ops.orchestrator.workflow.state_machine import TransitionContext
from agent_ops.orchestrator.workflow.task_engine import TaskStats
from agent_ops.server.models import (
    HealthResponse,
    ProposeTaskRequest,
    RunAgentRequest,
    TransitionTaskRequest,
    WaitResponse,
)

router = APIRouter()


def _services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if not isinstance(services, Services):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Orchestrator services not configured")
    return services


def _owner_id(x_owner_id: str | None) -> int:
    if x_owner_id is None or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    try:
        return int(x_owner_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="X-Owner-Id must be an integer") from e


def _resume_cursor(since_id: int | None, last_event_id: str | None) -> int | None:
    """The later of ``?since_id=`` and the ``Last-Event-ID`` a reconnecting client sends."""

    cursor = since_id
    if last_event_id and last_event_id.strip().isdigit():
        resumed = int(last_event_id)
        cursor = resumed if cursor is None else max(cursor, resumed)
    return cursor


async def _sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[dict[str, Any]]:
    async for event in events:
        yield event.to_sse()


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    services = _services(request)
    return HealthResponse(
        version=__version__,
        database=services.db.backend,
        scheduler_running=services.scheduler.running,
    )


# -- executions ---------------------------------------------------------------


@router.get("/executions", response_model=list[Execution])
def list_executions(
    request: Request,
    status_filter: ExecutionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    x_owner_id: str | None = Header(default=None),
) -> list[Execution]:
    return _services(request).executions.list_for_owner(
        _owner_id(x_owner_id), status=status_filter, limit=limit, offset=offset
    )


@router.get("/executions/{execution_id}", response_model=Execution)
def get_execution(
    request: Request, execution_id: int, x_owner_id: str | None = Header(default=None)
) -> Execution:
    return _services(request).executions.get(_owner_id(x_owner_id), execution_id)


@router.get("/executions/{execution_id}/wait", response_model=WaitResponse)
def wait_execution(
    request: Request,
    execution_id: int,
    timeout_seconds: float = Query(default=30.0, ge=0, le=MAX_WAIT_SECONDS),
    poll_seconds: float | None = Query(default=None, gt=0),
    x_owner_id: str | None = Header(default=None),
) -> WaitResponse:
    services = _services(request)
    result = wait_for_completion(
        services.executions,
        owner_id=_owner_id(x_owner_id),
        execution_id=execution_id,
        poll_interval_seconds=poll_seconds or services.settings.completion_poll_seconds,
        timeout_seconds=min(timeout_seconds, services.settings.completion_timeout_seconds),
    )
    return WaitResponse(
        execution=result.execution, completion=result.completion, timed_out=result.timed_out
    )


@router.get("/routines/{routine_id}/executions", response_model=list[Execution])
def routine_executions(
    request: Request,
    routine_id: int,
    limit: int = Query(default=20, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    x_owner_id: str | None = Header(default=None),
) -> list[Execution]:
    return _services(request).executions.get_recent(
        _owner_id(x_owner_id), ExecutionParent.routine(routine_id), limit=limit, offset=offset
    )


@router.get("/agents/{agent_id}/executions", response_model=list[Execution])
def agent_executions(
    request: Request,
    agent_id: int,
    limit: int = Query(default=20, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    x_owner_id: str | None = Header(default=None),
) -> list[Execution]:
    return _services(request).executions.get_recent(
        _owner_id(x_owner_id), ExecutionParent.agent(agent_id), limit=limit, offset=offset
    )


@router.post(
    "/routines/{routine_id}/run",
    response_model=Execution,
    status_code=status.HTTP_202_ACCEPTED,
)
def run_routine(
    request: Request, routine_id: int, x_owner_id: str | None = Header(default=None)
) -> Execution:
    return _services(request).scheduler.run_now(_owner_id(x_owner_id), routine_id)


@router.post(
    "/agents/{agent_id}/run",
    response_model=Execution,
    status_code=status.HTTP_202_ACCEPTED,
)
def run_agent(
    request: Request,
    agent_id: int,
    req: RunAgentRequest | None = None,
    x_owner_id: str | None = Header(default=None),
) -> Execution:
    config = req.config if req is not None else {}
    return _services(request).scheduler.run_agent_now(
        _owner_id(x_owner_id), agent_id, config=config
    )


# -- logs ---------------------------------------------------------------------


@router.get("/executions/{execution_id}/logs", response_model=list[LogLine])
def execution_logs(
    request: Request,
    execution_id: int,
    limit: int | None = Query(default=None, ge=1, le=10000),
    x_owner_id: str | None = Header(default=None),
) -> list[LogLine]:
    services = _services(request)
    return services.logs.list_all(
        _owner_id(x_owner_id),
        execution_id,
        limit=limit or services.settings.log_history_limit,
    )


@router.get("/logs/recent", response_model=list[LogLine])
def recent_logs(
    request: Request,
    limit: int = Query(default=5, ge=1, le=100),
    x_owner_id: str | None = Header(default=None),
) -> list[LogLine]:
    return _services(request).logs.recent_for_owner(_owner_id(x_owner_id), limit=limit)


@router.get("/executions/{execution_id}/logs/stream")
async def stream_execution_logs(
    request: Request,
    execution_id: int,
    since_id: int | None = Query(default=None, ge=0),
    x_owner_id: str | None = Header(default=None),
    last_event_id: str | None = Header(default=None),
) -> EventSourceResponse:
    services = _services(request)
    owner_id = _owner_id(x_owner_id)
    # Resolve ownership before the 200 goes out.
    await run_in_threadpool(services.executions.get, owner_id, execution_id)

    events = aiter_execution_stream(
        broadcaster=services.broadcaster,
        logs=services.logs,
        executions=services.executions,
        owner_id=owner_id,
        execution_id=execution_id,
        since_id=_resume_cursor(since_id, last_event_id) or 0,
        idle_poll_seconds=services.settings.stream_idle_poll_seconds,
    )
    return EventSourceResponse(_sse(events), ping=services.settings.stream_ping_seconds)


@router.get("/logs/stream")
async def stream_owner_logs(
    request: Request,
    since_id: int | None = Query(default=None, ge=0),
    x_owner_id: str | None = Header(default=None),
    last_event_id: str | None = Header(default=None),
) -> EventSourceResponse:
    services = _services(request)
    events = aiter_owner_stream(
        broadcaster=services.broadcaster,
        logs=services.logs,
        owner_id=_owner_id(x_owner_id),
        since_id=_resume_cursor(since_id, last_event_id),
        idle_poll_seconds=services.settings.stream_idle_poll_seconds,
    )
    return EventSourceResponse(_sse(events), ping=services.settings.stream_ping_seconds)


# -- tasks --------------------------------------------------------------------


@router.get("/tasks", response_model=list[Task])
def list_tasks(
    request: Request,
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    assigned_to_agent_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    x_owner_id: str | None = Header(default=None),
) -> list[Task]:
    return _services(request).tasks.list_tasks(
        _owner_id(x_owner_id),
        status=status_filter,
        assigned_to_agent_id=assigned_to_agent_id,
        limit=limit,
        offset=offset,
    )


@router.get("/tasks/stats", response_model=TaskStats)
def task_stats(request: Request, x_owner_id: str | None = Header(default=None)) -> TaskStats:
    return _services(request).tasks.stats(_owner_id(x_owner_id))


@router.get("/tasks/{task_id}", response_model=Task)
def get_task(request: Request, task_id: int, x_owner_id: str | None = Header(default=None)) -> Task:
    return _services(request).tasks.get(_owner_id(x_owner_id), task_id)


@router.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED)
def propose_task(
    request: Request, req: ProposeTaskRequest, x_owner_id: str | None = Header(default=None)
) -> Task:
    return _services(request).tasks.propose(
        owner_id=_owner_id(x_owner_id),
        title=req.title,
        description=req.description,
        priority=req.priority,
        suggestion_reasoning=req.suggestion_reasoning,
        proposed_by_agent_id=req.proposed_by_agent_id,
    )


@router.post("/tasks/{task_id}/transition", response_model=Task)
def transition_task(
    request: Request,
    task_id: int,
    req: TransitionTaskRequest,
    x_owner_id: str | None = Header(default=None),
) -> Task:
    context = TransitionContext.model_validate(req.model_dump(exclude={"status"}))
    return _services(request).tasks.transition(_owner_id(x_owner_id), task_id, req.status, context)
