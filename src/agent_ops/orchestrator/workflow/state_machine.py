"""Task approval workflow: the transition table and its pure planner.

This module has no I/O. :func:`plan_transition` validates a requested status
change against :data:`TASK_TRANSITIONS` and the context the target status
needs, and returns the :class:`TaskPatch` to write. The store-backed engine
applies it with a compare-and-set on the current status.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from agent_ops.orchestrator.errors import InvalidTransition, TransitionContextError
from agent_ops.orchestrator.store.models import Task, TaskPatch, TaskStatus

# Every non-terminal status may also be abandoned (-> rejected).
TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.SUGGESTED: {TaskStatus.APPROVED, TaskStatus.REJECTED},
    TaskStatus.APPROVED: {TaskStatus.IN_PROGRESS, TaskStatus.REJECTED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.WAITING,
        TaskStatus.BLOCKED,
        TaskStatus.COMPLETED,
        TaskStatus.REJECTED,
    },
    TaskStatus.WAITING: {TaskStatus.IN_PROGRESS, TaskStatus.REJECTED},
    TaskStatus.BLOCKED: {TaskStatus.IN_PROGRESS, TaskStatus.REJECTED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.REJECTED: set(),
}

PAUSED_STATUSES = (TaskStatus.WAITING, TaskStatus.BLOCKED)

DEFAULT_CHANGED_BY = "system"


class TransitionContext(BaseModel):
    """What the caller supplies alongside a requested status change."""

    changed_by: str | None = None

    approved_by: str | None = None
    approval_reasoning: str | None = None
    assigned_to_agent_id: int | None = None

    rejection_reasoning: str | None = None
    execution_id: int | None = None
    blocked_reason: str | None = None
    completion_summary: str | None = None


def _required_fields(current: TaskStatus, to: TaskStatus) -> tuple[str, ...]:
    if to == TaskStatus.APPROVED:
        return ("approved_by", "approval_reasoning", "assigned_to_agent_id")
    if to == TaskStatus.REJECTED:
        return ("rejection_reasoning",)
    if to == TaskStatus.IN_PROGRESS and current == TaskStatus.APPROVED:
        return ("execution_id",)
    if to in PAUSED_STATUSES:
        return ("blocked_reason",)
    if to == TaskStatus.COMPLETED:
        return ("completion_summary",)
    return ()


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def plan_transition(
    *, task: Task, to: TaskStatus, context: TransitionContext, now: datetime
) -> TaskPatch:
    """Return the patch that moves ``task`` to ``to``.

    Raises:
        InvalidTransition: The pair is not in :data:`TASK_TRANSITIONS`.
        TransitionContextError: A field the target status requires is missing.
    """

    to = TaskStatus(to)
    current = task.status
    if to not in TASK_TRANSITIONS.get(current, set()):
        raise InvalidTransition("task", task.id, current.value, to.value)

    missing = tuple(f for f in _required_fields(current, to) if _is_blank(getattr(context, f)))
    if missing:
        raise TransitionContextError(to.value, missing)

    patch = TaskPatch(
        status=to,
        last_status_change_at=now,
        last_status_change_by=context.changed_by or DEFAULT_CHANGED_BY,
    )

    if to == TaskStatus.APPROVED:
        patch.approved_by = context.approved_by
        patch.approval_reasoning = context.approval_reasoning
        patch.assigned_to_agent_id = context.assigned_to_agent_id
        patch.approved_at = now
    elif to == TaskStatus.REJECTED:
        patch.rejection_reasoning = context.rejection_reasoning
    elif to == TaskStatus.IN_PROGRESS:
        if current == TaskStatus.APPROVED:
            patch.started_at = now
            patch.execution_id = context.execution_id
        else:
            patch.blocked_reason = None
            patch.blocked_at = None
            if context.execution_id is not None:
                patch.execution_id = context.execution_id
    elif to in PAUSED_STATUSES:
        patch.blocked_reason = context.blocked_reason
        patch.blocked_at = now
    elif to == TaskStatus.COMPLETED:
        patch.completion_summary = context.completion_summary
        patch.completed_at = now

    return patch
