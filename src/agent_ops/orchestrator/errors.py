"""Typed failures raised by the scheduling and lifecycle subsystem.

Every store mutation either succeeds and is observable, or raises one of these.
Callers decide on retries by type:

- :class:`NotFound` and :class:`InvalidTransition` are never retried.
- :class:`StoreError` is transient; the scheduler retries the affected item on the next tick.
"""

from __future__ import annotations

from dataclasses import dataclass


class OrchestratorError(Exception):
    """Base class for every error raised by this package."""


@dataclass(eq=False)
class NotFound(OrchestratorError):
    """The entity does not exist, or is not owned by the caller."""

    entity: str
    entity_id: int

    def __str__(self) -> str:
        return f"{self.entity} {self.entity_id} not found"


@dataclass(eq=False)
class InvalidTransition(OrchestratorError):
    """A status change that is not permitted from the current status."""

    entity: str
    entity_id: int
    from_status: str
    to_status: str

    def __str__(self) -> str:
        return (
            f"Invalid {self.entity} transition for {self.entity} {self.entity_id}: "
            f"{self.from_status} -> {self.to_status}"
        )


@dataclass(eq=False)
class TransitionContextError(OrchestratorError):
    """A permitted transition was requested without its required context."""

    to_status: str
    missing: tuple[str, ...]

    def __str__(self) -> str:
        return f"Transition to {self.to_status} requires: {', '.join(self.missing)}"


@dataclass(eq=False)
class ExecutionAlreadyActive(OrchestratorError):
    """The parent already has a pending or running execution."""

    parent_kind: str
    parent_id: int
    active_execution_id: int | None = None

    def __str__(self) -> str:
        suffix = f" (execution {self.active_execution_id})" if self.active_execution_id else ""
        return f"{self.parent_kind} {self.parent_id} already has an active execution{suffix}"


@dataclass(eq=False)
class ExecutionFinalized(OrchestratorError):
    """Log lines cannot be appended to a terminal execution."""

    execution_id: int
    status: str

    def __str__(self) -> str:
        return f"Execution {self.execution_id} is already {self.status}"


@dataclass(eq=False)
class EntityDisabled(OrchestratorError):
    """A routine or agent is disabled and cannot be run."""

    entity: str
    entity_id: int

    def __str__(self) -> str:
        return f"{self.entity} {self.entity_id} is disabled"


class StoreError(OrchestratorError):
    """Transient failure of the relational store (connection, lock timeout, ...)."""
