"""Unit tests for the task approval state machine.

These tests assert that illegal transitions fail loudly, that each target
status demands its context, and that the planned patch carries the side
effects of the move.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from agent_ops.orchestrator.errors import InvalidTransition, TransitionContextError
from agent_ops.orchestrator.store.models import Task, TaskStatus
from agent_ops.orchestrator.workflow.state_machine import (
    TASK_TRANSITIONS,
    TransitionContext,
    plan_transition,
)

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def _task(status: TaskStatus, **fields: object) -> Task:
    return Task(
        id=7,
        owner_id=1,
        title="Reply to landlord",
        status=status,
        created_at=NOW,
        updated_at=NOW,
        **fields,
    )


def test_terminal_statuses_have_no_exits() -> None:
    assert TASK_TRANSITIONS[TaskStatus.COMPLETED] == set()
    assert TASK_TRANSITIONS[TaskStatus.REJECTED] == set()
    for status, targets in TASK_TRANSITIONS.items():
        if not status.is_terminal:
            assert TaskStatus.REJECTED in targets


@pytest.mark.parametrize(
    ("current", "to"),
    [
        (TaskStatus.SUGGESTED, TaskStatus.IN_PROGRESS),
        (TaskStatus.SUGGESTED, TaskStatus.COMPLETED),
        (TaskStatus.APPROVED, TaskStatus.COMPLETED),
        (TaskStatus.WAITING, TaskStatus.COMPLETED),
        (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS),
        (TaskStatus.REJECTED, TaskStatus.APPROVED),
    ],
)
def test_plan_rejects_illegal_transitions(current: TaskStatus, to: TaskStatus) -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        plan_transition(task=_task(current), to=to, context=TransitionContext(), now=NOW)

    assert excinfo.value.from_status == current.value
    assert excinfo.value.to_status == to.value


def test_approval_requires_approver_reasoning_and_assignee() -> None:
    with pytest.raises(TransitionContextError) as excinfo:
        plan_transition(
            task=_task(TaskStatus.SUGGESTED),
            to=TaskStatus.APPROVED,
            context=TransitionContext(approved_by="sam", approval_reasoning="   "),
            now=NOW,
        )

    assert excinfo.value.missing == ("approval_reasoning", "assigned_to_agent_id")


def test_approval_sets_assignment_and_timestamps() -> None:
    patch = plan_transition(
        task=_task(TaskStatus.SUGGESTED),
        to=TaskStatus.APPROVED,
        context=TransitionContext(
            changed_by="sam",
            approved_by="sam",
            approval_reasoning="Overdue",
            assigned_to_agent_id=3,
        ),
        now=NOW,
    )

    assert patch.status == TaskStatus.APPROVED
    assert patch.approved_by == "sam"
    assert patch.approval_reasoning == "Overdue"
    assert patch.assigned_to_agent_id == 3
    assert patch.approved_at == NOW
    assert patch.last_status_change_at == NOW
    assert patch.last_status_change_by == "sam"


def test_changed_by_defaults_to_system() -> None:
    patch = plan_transition(
        task=_task(TaskStatus.SUGGESTED),
        to=TaskStatus.REJECTED,
        context=TransitionContext(rejection_reasoning="Duplicate"),
        now=NOW,
    )

    assert patch.last_status_change_by == "system"
    assert patch.rejection_reasoning == "Duplicate"


def test_start_requires_execution() -> None:
    with pytest.raises(TransitionContextError) as excinfo:
        plan_transition(
            task=_task(TaskStatus.APPROVED),
            to=TaskStatus.IN_PROGRESS,
            context=TransitionContext(),
            now=NOW,
        )
    assert excinfo.value.missing == ("execution_id",)

    patch = plan_transition(
        task=_task(TaskStatus.APPROVED),
        to=TaskStatus.IN_PROGRESS,
        context=TransitionContext(execution_id=11),
        now=NOW,
    )
    assert patch.execution_id == 11
    assert patch.started_at == NOW


@pytest.mark.parametrize("paused", [TaskStatus.WAITING, TaskStatus.BLOCKED])
def test_pausing_records_reason(paused: TaskStatus) -> None:
    with pytest.raises(TransitionContextError):
        plan_transition(
            task=_task(TaskStatus.IN_PROGRESS),
            to=paused,
            context=TransitionContext(),
            now=NOW,
        )

    patch = plan_transition(
        task=_task(TaskStatus.IN_PROGRESS),
        to=paused,
        context=TransitionContext(blocked_reason="Waiting for reply"),
        now=NOW,
    )
    assert patch.blocked_reason == "Waiting for reply"
    assert patch.blocked_at == NOW


def test_resuming_clears_blocked_fields_and_keeps_start() -> None:
    task = _task(TaskStatus.WAITING, blocked_reason="Waiting for reply", blocked_at=NOW, execution_id=4)

    patch = plan_transition(task=task, to=TaskStatus.IN_PROGRESS, context=TransitionContext(), now=NOW)

    assert patch.blocked_reason is None
    assert patch.blocked_at is None
    assert {"blocked_reason", "blocked_at"} <= patch.model_fields_set
    assert "started_at" not in patch.model_fields_set
    assert "execution_id" not in patch.model_fields_set


def test_completion_requires_summary() -> None:
    with pytest.raises(TransitionContextError):
        plan_transition(
            task=_task(TaskStatus.IN_PROGRESS),
            to=TaskStatus.COMPLETED,
            context=TransitionContext(completion_summary=""),
            now=NOW,
        )

    patch = plan_transition(
        task=_task(TaskStatus.IN_PROGRESS),
        to=TaskStatus.COMPLETED,
        context=TransitionContext(completion_summary="Replied"),
        now=NOW,
    )
    assert patch.completion_summary == "Replied"
    assert patch.completed_at == NOW
