"""Records, status vocabularies and patch structures for the relational store.

The enum values are the wire vocabulary: the UI and the agent runtime match on
them, so they must not be renamed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AgentStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class RoutineStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class RoutineFrequency(str, Enum):
    MANUAL = "manual"
    DAILY = "daily"
    WEEKLY = "weekly"
    AUTO = "auto"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


ACTIVE_EXECUTION_STATUSES: tuple[ExecutionStatus, ...] = (
    ExecutionStatus.PENDING,
    ExecutionStatus.RUNNING,
)


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class TaskStatus(str, Enum):
    SUGGESTED = "suggested"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    BLOCKED = "blocked"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.REJECTED)


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Dispatch order for approved tasks (lower runs first).
PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 4,
}


ParentKind = Literal["agent", "routine"]


class ExecutionParent(BaseModel):
    """What an execution runs: a routine, or an agent directly (tasks, manual agent runs)."""

    kind: ParentKind
    id: int

    @classmethod
    def routine(cls, routine_id: int) -> ExecutionParent:
        return cls(kind="routine", id=routine_id)

    @classmethod
    def agent(cls, agent_id: int) -> ExecutionParent:
        return cls(kind="agent", id=agent_id)


class Agent(BaseModel):
    id: int
    owner_id: int
    name: str
    status: AgentStatus = AgentStatus.ACTIVE
    created_at: datetime


class Routine(BaseModel):
    id: int
    owner_id: int
    agent_id: int
    name: str
    description: str | None = None
    frequency: RoutineFrequency = RoutineFrequency.MANUAL
    status: RoutineStatus = RoutineStatus.ACTIVE
    config: dict[str, Any] = Field(default_factory=dict)

    # None means "never run": due immediately for scheduled frequencies.
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    created_at: datetime
    updated_at: datetime


class Execution(BaseModel):
    id: int
    owner_id: int
    agent_id: int
    routine_id: int | None = None
    status: ExecutionStatus
    trigger_type: TriggerType

    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Only meaningful once terminal.
    duration_ms: int | None = None
    cost_usd: float | None = None
    error_message: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def parent(self) -> ExecutionParent:
        if self.routine_id is not None:
            return ExecutionParent.routine(self.routine_id)
        return ExecutionParent.agent(self.agent_id)


class LogLine(BaseModel):
    id: int
    execution_id: int
    owner_id: int
    level: LogLevel = LogLevel.INFO
    stage: str | None = None
    message: str
    metadata: dict[str, Any] | None = None
    created_at: datetime


class Task(BaseModel):
    id: int
    owner_id: int
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.SUGGESTED

    suggestion_reasoning: str | None = None
    approval_reasoning: str | None = None
    rejection_reasoning: str | None = None
    completion_summary: str | None = None
    blocked_reason: str | None = None

    proposed_by_agent_id: int | None = None
    assigned_to_agent_id: int | None = None
    approved_by: str | None = None
    execution_id: int | None = None

    approved_at: datetime | None = None
    started_at: datetime | None = None
    blocked_at: datetime | None = None
    completed_at: datetime | None = None

    last_status_change_at: datetime | None = None
    last_status_change_by: str | None = None

    created_at: datetime
    updated_at: datetime


# Patch structures: only fields that were explicitly set are written.


class RoutinePatch(BaseModel):
    status: RoutineStatus | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class ExecutionPatch(BaseModel):
    status: ExecutionStatus | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None
    error_message: str | None = None
    metadata: dict[str, Any] | None = None


class TaskPatch(BaseModel):
    status: TaskStatus | None = None
    approval_reasoning: str | None = None
    rejection_reasoning: str | None = None
    completion_summary: str | None = None
    blocked_reason: str | None = None
    assigned_to_agent_id: int | None = None
    approved_by: str | None = None
    execution_id: int | None = None
    approved_at: datetime | None = None
    started_at: datetime | None = None
    blocked_at: datetime | None = None
    completed_at: datetime | None = None
    last_status_change_at: datetime | None = None
    last_status_change_by: str | None = None


def patch_values(patch: BaseModel) -> dict[str, Any]:
    """Column values for the explicitly-set fields of a patch.

    An explicitly-set ``None`` clears the column.
    """

    values: dict[str, Any] = {}
    for name in patch.model_fields_set:
        value = getattr(patch, name)
        values[name] = value.value if isinstance(value, Enum) else value
    return values
