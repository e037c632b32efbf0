"""Events carried by progress streams.

A stream carries log lines and, as a distinct type, the terminal
completion of an execution. Consumers never have to infer completion from
the content of a log line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from agent_ops.orchestrator.store.models import Execution, ExecutionStatus, LogLine


@dataclass(frozen=True, slots=True)
class LogEvent:
    line: LogLine

    @property
    def id(self) -> int:
        return self.line.id

    def to_sse(self) -> dict[str, Any]:
        return {"event": "log", "id": str(self.line.id), "data": self.line.model_dump_json()}


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    execution_id: int
    owner_id: int
    status: ExecutionStatus
    error_message: str | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None

    @staticmethod
    def from_execution(execution: Execution) -> CompletionEvent:
        return CompletionEvent(
            execution_id=execution.id,
            owner_id=execution.owner_id,
            status=execution.status,
            error_message=execution.error_message,
            duration_ms=execution.duration_ms,
            cost_usd=execution.cost_usd,
        )

    def to_json(self) -> dict[str, object]:
        return {
            "type": "completion",
            "execution_id": self.execution_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "cost_usd": self.cost_usd,
        }

    def to_sse(self) -> dict[str, Any]:
        return {"event": "completion", "data": json.dumps(self.to_json())}


StreamEvent = LogEvent | CompletionEvent
