"""Background hand-off of a pending execution to the agent runtime."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from agent_ops.orchestrator.errors import InvalidTransition, OrchestratorError
from agent_ops.orchestrator.logging import log_context
from agent_ops.orchestrator.runtime.provider import AgentRuntime, RunRequest
from agent_ops.orchestrator.runtime.reporter import StoreReporter
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.models import Execution, ExecutionStatus

logger = logging.getLogger(__name__)

UNREPORTED_COMPLETION = "runtime returned without reporting completion"


@dataclass
class ExecutionRunner:
    executions: ExecutionStore
    logs: LogStore
    runtime: AgentRuntime

    def dispatch(
        self,
        execution: Execution,
        *,
        config: dict[str, Any] | None = None,
        task_id: int | None = None,
    ) -> threading.Thread:
        """Run ``execution`` on its own daemon thread and return immediately."""

        thread = threading.Thread(
            target=self.run,
            name=f"execution-{execution.id}",
            daemon=True,
            args=(execution,),
            kwargs={"config": config, "task_id": task_id},
        )
        thread.start()
        return thread

    def run(
        self,
        execution: Execution,
        *,
        config: dict[str, Any] | None = None,
        task_id: int | None = None,
    ) -> Execution:
        """Mark the execution running, call the runtime, and make sure it ends terminal."""

        with log_context(
            owner_id=execution.owner_id,
            execution_id=execution.id,
            agent_id=execution.agent_id,
            routine_id=execution.routine_id,
            task_id=task_id,
        ):
            return self._run(execution, config=config, task_id=task_id)

    def _run(
        self,
        execution: Execution,
        *,
        config: dict[str, Any] | None,
        task_id: int | None,
    ) -> Execution:
        owner_id = execution.owner_id
        try:
            self.executions.mark_running(owner_id, execution.id)
        except OrchestratorError:
            logger.exception(
                "Could not start execution",
                extra={"execution_id": execution.id, "owner_id": owner_id},
            )
            return self.executions.get(owner_id, execution.id)

        request = RunRequest(
            execution_id=execution.id,
            owner_id=owner_id,
            agent_id=execution.agent_id,
            routine_id=execution.routine_id,
            task_id=task_id,
            trigger_type=execution.trigger_type,
            config=config or {},
        )
        reporter = StoreReporter(
            owner_id=owner_id,
            execution_id=execution.id,
            executions=self.executions,
            logs=self.logs,
        )

        try:
            self.runtime.run(request, reporter)
        except Exception as e:
            logger.exception(
                "Agent runtime failed",
                extra={"execution_id": execution.id, "owner_id": owner_id},
            )
            self._fail_if_running(owner_id, execution.id, str(e) or type(e).__name__)
        else:
            self._fail_if_running(owner_id, execution.id, UNREPORTED_COMPLETION)

        return self.executions.get(owner_id, execution.id)

    def _fail_if_running(self, owner_id: int, execution_id: int, error_message: str) -> None:
        current = self.executions.get(owner_id, execution_id)
        if current.status != ExecutionStatus.RUNNING:
            return
        try:
            self.executions.fail(owner_id, execution_id, error_message=error_message)
        except InvalidTransition:
            # The runtime finished it concurrently.
            return
        logger.warning(
            "Execution failed by runner",
            extra={"execution_id": execution_id, "error_message": error_message},
        )
