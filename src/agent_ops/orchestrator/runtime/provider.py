"""Abstract base class for agent runtimes."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from agent_ops.orchestrator.store.models import LogLevel, TriggerType


class RunRequest(BaseModel):
    """Everything a runtime is told about the run it is asked to perform."""

    execution_id: int
    owner_id: int
    agent_id: int
    routine_id: int | None = None
    task_id: int | None = None
    trigger_type: TriggerType
    config: dict[str, Any] = Field(default_factory=dict)


class ExecutionReporter(ABC):
    """Channel a runtime uses to report progress on the execution it runs."""

    @abstractmethod
    def log(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a log line to the execution.

        Args:
            message: Human-readable progress message.
            level: Severity of the line.
            stage: Optional phase name (for example ``"fetch"`` or ``"summarize"``).
            metadata: Optional structured payload.
        """
        pass

    @abstractmethod
    def complete(
        self,
        cost_usd: float,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Finish the execution successfully.

        Args:
            cost_usd: Cost of the run.
            duration_ms: Run time; measured by the store when omitted.
            metadata: Result payload. A ``summary`` key is used as the
                completion summary of a linked task.
        """
        pass

    @abstractmethod
    def fail(self, error_message: str) -> None:
        """Finish the execution as failed.

        Args:
            error_message: Why the run failed.
        """
        pass


class AgentRuntime(ABC):
    """Abstract base class for agent runtimes.

    This interface allows pluggable agent backends. A runtime must finish every
    run through ``reporter.complete`` or ``reporter.fail``; raising an
    exception fails the execution with the exception message.
    """

    @abstractmethod
    def run(self, request: RunRequest, reporter: ExecutionReporter) -> None:
        """Perform one run.

        Args:
            request: What to run.
            reporter: Where to report progress and the outcome.
        """
        pass
