"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agent_ops.orchestrator.store.models import Execution, TaskPriority, TaskStatus


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    database: str
    scheduler_running: bool


class RunAgentRequest(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)


class WaitResponse(BaseModel):
    execution: Execution
    completion: str
    timed_out: bool


class ProposeTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    suggestion_reasoning: str | None = None
    proposed_by_agent_id: int | None = None


class TransitionTaskRequest(BaseModel):
    status: TaskStatus

    changed_by: str | None = None
    approved_by: str | None = None
    approval_reasoning: str | None = None
    assigned_to_agent_id: int | None = None
    rejection_reasoning: str | None = None
    execution_id: int | None = None
    blocked_reason: str | None = None
    completion_summary: str | None = None
