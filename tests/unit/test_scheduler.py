"""Unit tests for the polling scheduler.

Dispatch is recorded instead of threaded so every tick is deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import pytest

from agent_ops.orchestrator.errors import EntityDisabled, ExecutionAlreadyActive, StoreError
from agent_ops.orchestrator.runtime.provider import AgentRuntime, ExecutionReporter, RunRequest
from agent_ops.orchestrator.scheduling.runner import ExecutionRunner
from agent_ops.orchestrator.scheduling.scheduler import Scheduler
from agent_ops.orchestrator.store.database import Database
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.models import (
    Agent,
    AgentStatus,
    Execution,
    ExecutionParent,
    ExecutionStatus,
    Routine,
    RoutineStatus,
    TaskStatus,
    TriggerType,
)
from agent_ops.orchestrator.store.routines import RoutineStore
from agent_ops.orchestrator.workflow.state_machine import TransitionContext
from agent_ops.orchestrator.workflow.task_engine import TaskEngine


@dataclass
class RecordingDispatch:
    calls: list[tuple[Execution, dict[str, Any]]] = field(default_factory=list)

    def __call__(self, execution: Execution, **kwargs: Any) -> None:
        self.calls.append((execution, kwargs))


class ThreeStepRuntime(AgentRuntime):
    def run(self, request: RunRequest, reporter: ExecutionReporter) -> None:
        reporter.log("Fetching", stage="fetch")
        reporter.log("Summarizing", stage="summarize")
        reporter.log("Sending", stage="send")
        reporter.complete(cost_usd=0.02, duration_ms=1500)


@dataclass
class FlakyExecutionStore(ExecutionStore):
    failures_left: int = 1

    def create(self, **kwargs: Any) -> Execution:
        if self.failures_left:
            self.failures_left -= 1
            raise StoreError("database is locked")
        return super().create(**kwargs)


class UnreachableRoutineStore(RoutineStore):
    def list_due(self, now: Any, *, limit: int | None = None) -> list[Routine]:
        raise StoreError("connection refused")


@pytest.fixture
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


@pytest.fixture
def scheduler(
    routines: RoutineStore,
    executions: ExecutionStore,
    tasks: TaskEngine,
    dispatch: RecordingDispatch,
    clock: Any,
) -> Scheduler:
    return Scheduler(
        routines=routines,
        executions=executions,
        tasks=tasks,
        dispatch=dispatch,
        clock=clock,
    )


def test_daily_routine_runs_and_is_rescheduled(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    routines: RoutineStore,
    executions: ExecutionStore,
    logs: LogStore,
    daily_routine: Routine,
    clock: Any,
    owner_id: int,
) -> None:
    report = scheduler.tick()

    assert len(report.triggered) == 1
    execution, kwargs = dispatch.calls[0]
    assert execution.id == report.triggered[0]
    assert execution.trigger_type == TriggerType.SCHEDULED
    assert execution.routine_id == daily_routine.id
    assert kwargs["config"] == {"mailbox": "inbox"}

    routine = routines.get_routine(owner_id, daily_routine.id)
    assert routine.last_run_at == clock()
    assert routine.next_run_at == clock() + timedelta(hours=24)

    runner = ExecutionRunner(executions=executions, logs=logs, runtime=ThreeStepRuntime())
    finished = runner.run(execution, **kwargs)

    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.cost_usd == 0.02
    assert finished.duration_ms == 1500
    assert [line.stage for line in logs.list_all(owner_id, execution.id)] == [
        "fetch",
        "summarize",
        "send",
    ]

    # Not due again until a day later.
    clock.now = clock() + timedelta(hours=23)
    assert scheduler.tick().triggered == []
    clock.now = clock() + timedelta(hours=1)
    assert len(scheduler.tick().triggered) == 1


def test_routine_with_active_execution_is_skipped(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    routines: RoutineStore,
    daily_routine: Routine,
    owner_id: int,
) -> None:
    running = scheduler.run_now(owner_id, daily_routine.id)
    dispatch.calls.clear()

    report = scheduler.tick()

    assert report.triggered == []
    assert report.skipped == [daily_routine.id]
    assert dispatch.calls == []
    # Still due, so the next tick tries again.
    assert routines.get_routine(owner_id, daily_routine.id).next_run_at is None
    assert running.status == ExecutionStatus.PENDING


def test_never_run_routines_trigger_before_overdue_ones(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    routines: RoutineStore,
    agent: Agent,
    daily_routine: Routine,
    clock: Any,
    owner_id: int,
) -> None:
    overdue = routines.create_routine(
        owner_id=owner_id,
        agent_id=agent.id,
        name="Overdue",
        frequency="weekly",
        next_run_at=clock() - timedelta(days=1),
    )

    scheduler.tick()

    assert [e.routine_id for e, _ in dispatch.calls] == [daily_routine.id, overdue.id]


def test_disabled_routines_and_agents_do_not_run(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    routines: RoutineStore,
    agent: Agent,
    daily_routine: Routine,
    owner_id: int,
) -> None:
    routines.set_routine_status(owner_id, daily_routine.id, RoutineStatus.DISABLED)
    assert scheduler.tick().triggered == []
    with pytest.raises(EntityDisabled):
        scheduler.run_now(owner_id, daily_routine.id)

    routines.set_routine_status(owner_id, daily_routine.id, RoutineStatus.ACTIVE)
    routines.set_agent_status(owner_id, agent.id, AgentStatus.DISABLED)
    assert scheduler.tick().triggered == []
    with pytest.raises(EntityDisabled):
        scheduler.run_now(owner_id, daily_routine.id)
    with pytest.raises(EntityDisabled):
        scheduler.run_agent_now(owner_id, agent.id)

    assert dispatch.calls == []


def test_run_now_is_manual_and_keeps_schedule(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    routines: RoutineStore,
    daily_routine: Routine,
    owner_id: int,
) -> None:
    execution = scheduler.run_now(owner_id, daily_routine.id)

    assert execution.trigger_type == TriggerType.MANUAL
    assert [e.id for e, _ in dispatch.calls] == [execution.id]
    assert routines.get_routine(owner_id, daily_routine.id).last_run_at is None

    with pytest.raises(ExecutionAlreadyActive):
        scheduler.run_now(owner_id, daily_routine.id)


def test_run_agent_now_uses_agent_parent(
    scheduler: Scheduler, dispatch: RecordingDispatch, agent: Agent, owner_id: int
) -> None:
    execution = scheduler.run_agent_now(owner_id, agent.id, config={"prompt": "Tidy inbox"})

    assert execution.parent == ExecutionParent.agent(agent.id)
    assert dispatch.calls[0][1]["config"] == {"prompt": "Tidy inbox"}


def test_failed_dispatch_fails_the_execution(
    routines: RoutineStore,
    executions: ExecutionStore,
    tasks: TaskEngine,
    daily_routine: Routine,
    clock: Any,
    owner_id: int,
) -> None:
    def broken_dispatch(execution: Execution, **kwargs: Any) -> None:
        raise RuntimeError("worker pool gone")

    scheduler = Scheduler(
        routines=routines,
        executions=executions,
        tasks=tasks,
        dispatch=broken_dispatch,
        clock=clock,
    )

    report = scheduler.tick()

    assert report.failed == [daily_routine.id]
    (execution,) = executions.list_for_owner(owner_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Dispatch failed: worker pool gone"


def test_approved_tasks_get_their_own_execution(
    scheduler: Scheduler,
    dispatch: RecordingDispatch,
    tasks: TaskEngine,
    agent: Agent,
    owner_id: int,
) -> None:
    task = tasks.propose(owner_id=owner_id, title="Book dentist")
    tasks.transition(
        owner_id,
        task.id,
        TaskStatus.APPROVED,
        TransitionContext(
            approved_by="sam", approval_reasoning="Overdue", assigned_to_agent_id=agent.id
        ),
    )

    report = scheduler.tick()

    assert report.tasks_dispatched == [task.id]
    execution, kwargs = dispatch.calls[-1]
    assert execution.parent == ExecutionParent.agent(agent.id)
    assert execution.metadata == {"task_id": task.id}
    assert kwargs["task_id"] == task.id
    assert kwargs["config"]["task"]["title"] == "Book dentist"

    started = tasks.get(owner_id, task.id)
    assert started.status == TaskStatus.IN_PROGRESS
    assert started.execution_id == execution.id
    assert started.last_status_change_by == "scheduler"

    # In progress now, so not dispatched twice.
    assert scheduler.tick().tasks_dispatched == []


def test_task_dispatch_can_be_turned_off(
    routines: RoutineStore,
    executions: ExecutionStore,
    tasks: TaskEngine,
    dispatch: RecordingDispatch,
    agent: Agent,
    clock: Any,
    owner_id: int,
) -> None:
    task = tasks.propose(owner_id=owner_id, title="Book dentist")
    tasks.transition(
        owner_id,
        task.id,
        TaskStatus.APPROVED,
        TransitionContext(
            approved_by="sam", approval_reasoning="Overdue", assigned_to_agent_id=agent.id
        ),
    )
    scheduler = Scheduler(
        routines=routines,
        executions=executions,
        tasks=tasks,
        dispatch=dispatch,
        task_dispatch_enabled=False,
        clock=clock,
    )

    assert scheduler.tick().tasks_dispatched == []
    assert tasks.get(owner_id, task.id).status == TaskStatus.APPROVED


def test_start_and_stop_background_loop(scheduler: Scheduler) -> None:
    scheduler.tick_seconds = 0.01
    scheduler.start()
    assert scheduler.running

    scheduler.stop()
    assert not scheduler.running


def test_store_failure_leaves_routine_due_for_next_tick(
    db: Database,
    routines: RoutineStore,
    tasks: TaskEngine,
    dispatch: RecordingDispatch,
    daily_routine: Routine,
    clock: Any,
    owner_id: int,
) -> None:
    scheduler = Scheduler(
        routines=routines,
        executions=FlakyExecutionStore(db),
        tasks=tasks,
        dispatch=dispatch,
        clock=clock,
    )

    report = scheduler.tick()

    assert report.failed == [daily_routine.id]
    assert report.triggered == []
    assert dispatch.calls == []
    routine = routines.get_routine(owner_id, daily_routine.id)
    assert routine.last_run_at is None
    assert routine.next_run_at is None

    retried = scheduler.tick()

    assert retried.failed == []
    assert len(retried.triggered) == 1
    assert routines.get_routine(owner_id, daily_routine.id).last_run_at == clock()


def test_due_query_failure_abandons_the_tick(
    db: Database,
    executions: ExecutionStore,
    tasks: TaskEngine,
    dispatch: RecordingDispatch,
    daily_routine: Routine,
    clock: Any,
    owner_id: int,
) -> None:
    scheduler = Scheduler(
        routines=UnreachableRoutineStore(db),
        executions=executions,
        tasks=tasks,
        dispatch=dispatch,
        clock=clock,
    )

    report = scheduler.tick()

    assert report.triggered == report.skipped == report.failed == report.tasks_dispatched == []
    assert dispatch.calls == []
    assert executions.list_for_owner(owner_id) == []
