"""Runtime that performs no agent work.

Used as the default so that scheduling, logging and streaming can be run end
to end without an agent backend configured.
"""

import logging

from agent_ops.orchestrator.runtime.provider import AgentRuntime, ExecutionReporter, RunRequest
from agent_ops.orchestrator.store.models import LogLevel

logger = logging.getLogger(__name__)


class DryRunRuntime(AgentRuntime):
    """Logs what it was asked to do and completes at zero cost."""

    def run(self, request: RunRequest, reporter: ExecutionReporter) -> None:
        logger.debug(
            "Dry run",
            extra={"execution_id": request.execution_id, "agent_id": request.agent_id},
        )
        reporter.log("Dry run started", stage="start")
        if request.config:
            reporter.log(
                f"Routine config keys: {', '.join(sorted(request.config))}",
                level=LogLevel.DEBUG,
                stage="config",
                metadata={"config": request.config},
            )
        if request.task_id is not None:
            reporter.log(f"Working on task {request.task_id}", stage="task")
        reporter.log("Dry run finished", stage="finish")

        summary = (
            f"Dry run for task {request.task_id}"
            if request.task_id is not None
            else f"Dry run for agent {request.agent_id}"
        )
        reporter.complete(cost_usd=0.0, metadata={"summary": summary, "dry_run": True})
