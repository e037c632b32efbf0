"""In-process pub/sub for execution progress.

Publishers are runtime threads (log appends, terminal transitions); consumers
are either blocking iterators (CLI) or coroutines on an asyncio loop (SSE).
Subscriber queues are unbounded so that a slow consumer delays, but never
loses, lines. A subscriber whose event loop has closed is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections import defaultdict

from agent_ops.orchestrator.store.models import Execution, LogLine
from agent_ops.orchestrator.streaming.events import CompletionEvent, LogEvent, StreamEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's queue of stream events.

    Created by :class:`ProgressBroadcaster`; pass ``loop`` to consume from a
    coroutine with :meth:`get_async`, otherwise consume with :meth:`get`.
    """

    def __init__(self, scope: str, key: int, loop: asyncio.AbstractEventLoop | None) -> None:
        self.scope = scope
        self.key = key
        self._loop = loop
        self._sync_queue: queue.Queue[StreamEvent] | None = None
        self._async_queue: asyncio.Queue[StreamEvent] | None = None
        if loop is None:
            self._sync_queue = queue.Queue()
        else:
            self._async_queue = asyncio.Queue()

    def put(self, event: StreamEvent) -> None:
        """Enqueue from any thread. Raises RuntimeError if the consumer's loop is closed."""

        if self._sync_queue is not None:
            self._sync_queue.put(event)
            return
        assert self._loop is not None and self._async_queue is not None
        self._loop.call_soon_threadsafe(self._async_queue.put_nowait, event)

    def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""

        if self._sync_queue is None:
            raise RuntimeError("Subscription is bound to an event loop; use get_async()")
        try:
            return self._sync_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    async def get_async(self, timeout: float | None = None) -> StreamEvent | None:
        if self._async_queue is None:
            raise RuntimeError("Subscription is not bound to an event loop; use get()")
        try:
            return await asyncio.wait_for(self._async_queue.get(), timeout=timeout)
        except TimeoutError:
            return None


class ProgressBroadcaster:
    """Fans log lines and completions out to execution and owner subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_execution: dict[int, set[Subscription]] = defaultdict(set)
        self._by_owner: dict[int, set[Subscription]] = defaultdict(set)

    def subscribe_execution(
        self, execution_id: int, *, loop: asyncio.AbstractEventLoop | None = None
    ) -> Subscription:
        sub = Subscription("execution", execution_id, loop)
        with self._lock:
            self._by_execution[execution_id].add(sub)
        return sub

    def subscribe_owner(
        self, owner_id: int, *, loop: asyncio.AbstractEventLoop | None = None
    ) -> Subscription:
        sub = Subscription("owner", owner_id, loop)
        with self._lock:
            self._by_owner[owner_id].add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        registry = self._by_execution if sub.scope == "execution" else self._by_owner
        with self._lock:
            subs = registry.get(sub.key)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del registry[sub.key]

    def subscriber_count(
        self, *, execution_id: int | None = None, owner_id: int | None = None
    ) -> int:
        with self._lock:
            if execution_id is not None:
                return len(self._by_execution.get(execution_id, ()))
            if owner_id is not None:
                return len(self._by_owner.get(owner_id, ()))
            return sum(len(s) for s in self._by_execution.values()) + sum(
                len(s) for s in self._by_owner.values()
            )

    def publish_log(self, line: LogLine) -> None:
        self._deliver(line.execution_id, line.owner_id, LogEvent(line))

    def publish_completion(self, execution: Execution) -> None:
        self._deliver(execution.id, execution.owner_id, CompletionEvent.from_execution(execution))

    def _deliver(self, execution_id: int, owner_id: int, event: StreamEvent) -> None:
        with self._lock:
            targets = list(self._by_execution.get(execution_id, ())) + list(
                self._by_owner.get(owner_id, ())
            )
        for sub in targets:
            try:
                sub.put(event)
            except RuntimeError:
                logger.warning(
                    "Dropping subscriber with closed event loop",
                    extra={"scope": sub.scope, "key": sub.key},
                )
                self.unsubscribe(sub)
