"""Bounded polling for an execution to reach a terminal status.

The terminal stream event is the primary completion signal; this is for
callers that cannot hold a stream open (CLI ``--wait``, the ``/wait``
endpoint). Timing out stops the wait, not the run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.models import Execution

logger = logging.getLogger(__name__)

MAX_WAIT_SECONDS = 600.0


@dataclass(frozen=True, slots=True)
class CompletionWaitResult:
    """Last observed state of the execution, and whether the wait gave up."""

    execution: Execution
    timed_out: bool

    @property
    def completion(self) -> str:
        return "timeout" if self.timed_out else self.execution.status.value


def wait_for_completion(
    executions: ExecutionStore,
    *,
    owner_id: int,
    execution_id: int,
    poll_interval_seconds: float = 2.0,
    timeout_seconds: float = MAX_WAIT_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> CompletionWaitResult:
    """Poll until the execution is completed or failed, or the timeout elapses.

    ``timeout_seconds`` is capped at :data:`MAX_WAIT_SECONDS`; ``0`` checks once.

    Raises:
        NotFound: Unknown execution, or owned by someone else.
        ValueError: Non-positive poll interval or negative timeout.
    """

    if poll_interval_seconds <= 0:
        raise ValueError("poll_interval_seconds must be > 0")
    if timeout_seconds < 0:
        raise ValueError("timeout_seconds must be >= 0")
    timeout_seconds = min(timeout_seconds, MAX_WAIT_SECONDS)

    started = time.monotonic()
    while True:
        execution = executions.get(owner_id, execution_id)
        if execution.status.is_terminal:
            return CompletionWaitResult(execution=execution, timed_out=False)

        elapsed = time.monotonic() - started
        if elapsed >= timeout_seconds:
            logger.info(
                "Timed out waiting for execution",
                extra={
                    "execution_id": execution_id,
                    "status": execution.status.value,
                    "timeout_seconds": timeout_seconds,
                },
            )
            return CompletionWaitResult(execution=execution, timed_out=True)

        sleep(min(poll_interval_seconds, timeout_seconds - elapsed))
