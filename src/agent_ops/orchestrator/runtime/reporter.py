"""Store-backed :class:`ExecutionReporter`."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from agent_ops.orchestrator.runtime.provider import ExecutionReporter
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.models import LogLevel


@dataclass
class StoreReporter(ExecutionReporter):
    owner_id: int
    execution_id: int
    executions: ExecutionStore
    logs: LogStore

    def log(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.logs.append(
            self.owner_id,
            self.execution_id,
            message,
            level=level,
            stage=stage,
            metadata=metadata,
        )

    def complete(
        self,
        cost_usd: float,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.executions.complete(
            self.owner_id,
            self.execution_id,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    def fail(self, error_message: str) -> None:
        self.executions.fail(self.owner_id, self.execution_id, error_message=error_message)
