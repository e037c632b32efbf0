"""Task approval workflow (suggest -> approve -> run -> complete)."""

from agent_ops.orchestrator.workflow.state_machine import (
    TASK_TRANSITIONS,
    TransitionContext,
    plan_transition,
)
from agent_ops.orchestrator.workflow.task_engine import TaskEngine, TaskStats

__all__ = ["TASK_TRANSITIONS", "TaskEngine", "TaskStats", "TransitionContext", "plan_transition"]
