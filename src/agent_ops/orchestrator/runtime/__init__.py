"""Agent runtime boundary."""

from agent_ops.orchestrator.runtime.dry_run import DryRunRuntime
from agent_ops.orchestrator.runtime.factory import RuntimeFactory
from agent_ops.orchestrator.runtime.provider import AgentRuntime, ExecutionReporter, RunRequest
from agent_ops.orchestrator.runtime.reporter import StoreReporter

__all__ = [
    "AgentRuntime",
    "DryRunRuntime",
    "ExecutionReporter",
    "RunRequest",
    "RuntimeFactory",
    "StoreReporter",
]
