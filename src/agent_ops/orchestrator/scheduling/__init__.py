"""Scheduling: the tick loop, execution hand-off and completion waits."""

from agent_ops.orchestrator.scheduling.completion import CompletionWaitResult, wait_for_completion
from agent_ops.orchestrator.scheduling.runner import ExecutionRunner
from agent_ops.orchestrator.scheduling.scheduler import Scheduler, TickReport

__all__ = [
    "CompletionWaitResult",
    "ExecutionRunner",
    "Scheduler",
    "TickReport",
    "wait_for_completion",
]
