"""Store-backed task workflow engine.

All status changes go through :meth:`TaskEngine.transition`, which plans the
change with :func:`plan_transition` and writes it with a compare-and-set on the
status it planned from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import case, func, insert, select, update
from sqlalchemy.engine import Connection

from agent_ops.orchestrator.errors import InvalidTransition, NotFound
from agent_ops.orchestrator.store.database import Database, agents, executions, tasks
from agent_ops.orchestrator.store.models import (
    PRIORITY_RANK,
    AgentStatus,
    Execution,
    ExecutionStatus,
    Task,
    TaskPriority,
    TaskStatus,
    patch_values,
    utc_now,
)
from agent_ops.orchestrator.workflow.state_machine import TransitionContext, plan_transition

logger = logging.getLogger(__name__)

AUTOMATIC_CHANGED_BY = "system"


class TaskStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


def _task(row: Any) -> Task:
    return Task.model_validate(dict(row._mapping))


_priority_order = case(
    {p.value: rank for p, rank in PRIORITY_RANK.items()},
    value=tasks.c.priority,
    else_=len(PRIORITY_RANK) + 1,
)


@dataclass
class TaskEngine:
    db: Database

    def propose(
        self,
        *,
        owner_id: int,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.MEDIUM,
        suggestion_reasoning: str | None = None,
        proposed_by_agent_id: int | None = None,
    ) -> Task:
        """Record an agent's (or a person's) suggestion as a ``suggested`` task."""

        now = utc_now()
        with self.db.transaction() as conn:
            if proposed_by_agent_id is not None:
                self._require_agent(conn, owner_id, proposed_by_agent_id)
            row = conn.execute(
                insert(tasks)
                .values(
                    owner_id=owner_id,
                    title=title,
                    description=description,
                    priority=TaskPriority(priority).value,
                    status=TaskStatus.SUGGESTED.value,
                    suggestion_reasoning=suggestion_reasoning,
                    proposed_by_agent_id=proposed_by_agent_id,
                    created_at=now,
                    updated_at=now,
                )
                .returning(*tasks.c)
            ).one()
        task = _task(row)
        logger.info(
            "Task proposed",
            extra={"task_id": task.id, "owner_id": owner_id, "priority": task.priority.value},
        )
        return task

    def get(self, owner_id: int, task_id: int) -> Task:
        with self.db.transaction() as conn:
            return _task(self._row(conn, owner_id, task_id))

    def list_tasks(
        self,
        owner_id: int,
        *,
        status: TaskStatus | None = None,
        assigned_to_agent_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Task]:
        stmt = select(tasks).where(tasks.c.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(tasks.c.status == TaskStatus(status).value)
        if assigned_to_agent_id is not None:
            stmt = stmt.where(tasks.c.assigned_to_agent_id == assigned_to_agent_id)
        stmt = stmt.order_by(tasks.c.created_at.desc(), tasks.c.id.desc()).limit(limit).offset(offset)
        with self.db.transaction() as conn:
            rows = conn.execute(stmt).all()
        return [_task(r) for r in rows]

    def stats(self, owner_id: int) -> TaskStats:
        with self.db.transaction() as conn:
            rows = conn.execute(
                select(tasks.c.status, func.count())
                .where(tasks.c.owner_id == owner_id)
                .group_by(tasks.c.status)
            ).all()
        by_status = {s.value: 0 for s in TaskStatus}
        for status, count in rows:
            by_status[status] = count
        return TaskStats(total=sum(by_status.values()), by_status=by_status)

    def find_by_execution(self, owner_id: int, execution_id: int) -> Task | None:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(tasks)
                .where(tasks.c.owner_id == owner_id, tasks.c.execution_id == execution_id)
                .order_by(tasks.c.id.desc())
                .limit(1)
            ).one_or_none()
        return _task(row) if row is not None else None

    def list_dispatchable(self, *, limit: int | None = None) -> list[Task]:
        """Approved tasks assigned to an active agent, across all owners.

        Ordered critical first, then oldest first within a priority.
        """

        stmt = (
            select(tasks)
            .join(agents, agents.c.id == tasks.c.assigned_to_agent_id)
            .where(
                tasks.c.status == TaskStatus.APPROVED.value,
                agents.c.status == AgentStatus.ACTIVE.value,
                agents.c.owner_id == tasks.c.owner_id,
            )
            .order_by(_priority_order, tasks.c.created_at.asc(), tasks.c.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.transaction() as conn:
            rows = conn.execute(stmt).all()
        return [_task(r) for r in rows]

    def transition(
        self,
        owner_id: int,
        task_id: int,
        new_status: TaskStatus,
        context: TransitionContext | None = None,
    ) -> Task:
        """Move a task to ``new_status``.

        Raises:
            NotFound: Unknown task, or a referenced agent/execution the owner does not have.
            InvalidTransition: The pair is not allowed, or the status changed concurrently.
            TransitionContextError: Required context is missing.
        """

        context = context or TransitionContext()
        now = utc_now()
        with self.db.transaction() as conn:
            current = _task(self._row(conn, owner_id, task_id))
            patch = plan_transition(task=current, to=new_status, context=context, now=now)

            if patch.assigned_to_agent_id is not None:
                self._require_agent(conn, owner_id, patch.assigned_to_agent_id)
            if patch.execution_id is not None:
                self._require_execution(conn, owner_id, patch.execution_id)

            values = patch_values(patch)
            values["updated_at"] = now
            row = conn.execute(
                update(tasks)
                .where(
                    tasks.c.id == task_id,
                    tasks.c.owner_id == owner_id,
                    tasks.c.status == current.status.value,
                )
                .values(**values)
                .returning(*tasks.c)
            ).one_or_none()
            if row is None:
                latest = self._row(conn, owner_id, task_id)
                raise InvalidTransition("task", task_id, latest.status, TaskStatus(new_status).value)

        task = _task(row)
        logger.info(
            "Task transitioned",
            extra={
                "task_id": task_id,
                "owner_id": owner_id,
                "from_status": current.status.value,
                "to_status": task.status.value,
                "changed_by": task.last_status_change_by,
            },
        )
        return task

    def on_execution_finished(self, execution: Execution) -> Task | None:
        """Advance the task linked to a finished execution.

        A completed run completes the task. A failed run parks it in
        ``waiting`` with the failure as the reason; it is never completed
        automatically after a failure.
        """

        task = self.find_by_execution(execution.owner_id, execution.id)
        if task is None:
            return None
        if task.status != TaskStatus.IN_PROGRESS:
            logger.info(
                "Linked task not in progress; leaving it",
                extra={"task_id": task.id, "execution_id": execution.id, "status": task.status.value},
            )
            return task

        if execution.status == ExecutionStatus.COMPLETED:
            summary = execution.metadata.get("summary")
            context = TransitionContext(
                changed_by=AUTOMATIC_CHANGED_BY,
                completion_summary=(
                    summary
                    if isinstance(summary, str) and summary.strip()
                    else f"Execution {execution.id} completed"
                ),
            )
            target = TaskStatus.COMPLETED
        else:
            context = TransitionContext(
                changed_by=AUTOMATIC_CHANGED_BY,
                blocked_reason=(
                    f"Execution {execution.id} failed: {execution.error_message or 'unknown error'}"
                ),
            )
            target = TaskStatus.WAITING

        try:
            return self.transition(execution.owner_id, task.id, target, context)
        except InvalidTransition:
            logger.warning(
                "Task changed while its execution finished",
                extra={"task_id": task.id, "execution_id": execution.id},
            )
            return self.get(execution.owner_id, task.id)

    @staticmethod
    def _row(conn: Connection, owner_id: int, task_id: int) -> Any:
        row = conn.execute(
            select(tasks).where(tasks.c.id == task_id, tasks.c.owner_id == owner_id)
        ).one_or_none()
        if row is None:
            raise NotFound("task", task_id)
        return row

    @staticmethod
    def _require_agent(conn: Connection, owner_id: int, agent_id: int) -> None:
        found = conn.execute(
            select(agents.c.id).where(agents.c.id == agent_id, agents.c.owner_id == owner_id)
        ).scalar_one_or_none()
        if found is None:
            raise NotFound("agent", agent_id)

    @staticmethod
    def _require_execution(conn: Connection, owner_id: int, execution_id: int) -> None:
        found = conn.execute(
            select(executions.c.id).where(
                executions.c.id == execution_id, executions.c.owner_id == owner_id
            )
        ).scalar_one_or_none()
        if found is None:
            raise NotFound("execution", execution_id)
