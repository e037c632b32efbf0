"""Resumable progress streams.

Resume protocol, shared by every iterator here:

1. Subscribe first, so nothing published from now on is missed.
2. Replay from the store everything after the caller's cursor.
3. Forward live events whose id is beyond the cursor (duplicates of the
   replay are dropped by id).
4. When nothing arrives for ``idle_poll_seconds``, catch up from the store
   and re-check the execution status. This covers a publisher in another
   process and any missed wake-up.

Execution streams end right after the terminal :class:`CompletionEvent`; if
the execution is already terminal when the stream opens, the completion
follows the replay. Owner streams never end on their own.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timedelta

from starlette.concurrency import run_in_threadpool

from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.models import utc_now
from agent_ops.orchestrator.streaming.broadcaster import ProgressBroadcaster
from agent_ops.orchestrator.streaming.events import CompletionEvent, LogEvent, StreamEvent

DEFAULT_IDLE_POLL_SECONDS = 1.0
OWNER_STREAM_LOOKBACK = timedelta(seconds=30)


def iter_execution_stream(
    *,
    broadcaster: ProgressBroadcaster,
    logs: LogStore,
    executions: ExecutionStore,
    owner_id: int,
    execution_id: int,
    since_id: int = 0,
    idle_poll_seconds: float = DEFAULT_IDLE_POLL_SECONDS,
) -> Iterator[StreamEvent]:
    """Blocking stream of one execution's lines, ending with its completion.

    Raises:
        NotFound: Unknown execution, or owned by someone else (raised on first ``next()``).
    """

    executions.get(owner_id, execution_id)
    sub = broadcaster.subscribe_execution(execution_id)
    cursor = since_id
    try:
        while True:
            for line in logs.list_since(owner_id, execution_id, cursor):
                cursor = line.id
                yield LogEvent(line)

            execution = executions.get(owner_id, execution_id)
            if execution.status.is_terminal:
                # Appends are rejected once terminal, so this read is final.
                for line in logs.list_since(owner_id, execution_id, cursor):
                    cursor = line.id
                    yield LogEvent(line)
                yield CompletionEvent.from_execution(execution)
                return

            while True:
                event = sub.get(timeout=idle_poll_seconds)
                if event is None:
                    break
                if isinstance(event, LogEvent):
                    if event.id > cursor:
                        cursor = event.id
                        yield event
                    continue
                # Terminal: let the outer loop drain the store and finish.
                break
    finally:
        broadcaster.unsubscribe(sub)


async def aiter_execution_stream(
    *,
    broadcaster: ProgressBroadcaster,
    logs: LogStore,
    executions: ExecutionStore,
    owner_id: int,
    execution_id: int,
    since_id: int = 0,
    idle_poll_seconds: float = DEFAULT_IDLE_POLL_SECONDS,
) -> AsyncIterator[StreamEvent]:
    """Async counterpart of :func:`iter_execution_stream` for the SSE endpoints.

    Store reads run in the threadpool so the event loop is never blocked.
    """

    await run_in_threadpool(executions.get, owner_id, execution_id)
    sub = broadcaster.subscribe_execution(execution_id, loop=asyncio.get_running_loop())
    cursor = since_id
    try:
        while True:
            for line in await run_in_threadpool(logs.list_since, owner_id, execution_id, cursor):
                cursor = line.id
                yield LogEvent(line)

            execution = await run_in_threadpool(executions.get, owner_id, execution_id)
            if execution.status.is_terminal:
                for line in await run_in_threadpool(
                    logs.list_since, owner_id, execution_id, cursor
                ):
                    cursor = line.id
                    yield LogEvent(line)
                yield CompletionEvent.from_execution(execution)
                return

            while True:
                event = await sub.get_async(timeout=idle_poll_seconds)
                if event is None:
                    break
                if isinstance(event, LogEvent):
                    if event.id > cursor:
                        cursor = event.id
                        yield event
                    continue
                break
    finally:
        broadcaster.unsubscribe(sub)


async def aiter_owner_stream(
    *,
    broadcaster: ProgressBroadcaster,
    logs: LogStore,
    owner_id: int,
    since_id: int | None = None,
    idle_poll_seconds: float = DEFAULT_IDLE_POLL_SECONDS,
    lookback: timedelta = OWNER_STREAM_LOOKBACK,
) -> AsyncIterator[StreamEvent]:
    """Company-wide stream: every line of every execution the owner has.

    ``since_id=None`` starts at the newest existing line (live only).
    Completion events of the owner's executions are forwarded as they happen.
    Lines are always read back from the store, so each read comes out in id
    order even when several executions write concurrently.

    A line whose id committed after a higher one is still delivered, as long
    as it lands within ``lookback`` of its creation; it then follows the
    higher id. Lines at or below ``since_id`` are never sent.
    """

    sub = broadcaster.subscribe_owner(owner_id, loop=asyncio.get_running_loop())
    try:
        floor = since_id
        if floor is None:
            floor = await run_in_threadpool(logs.latest_id, owner_id)
        cursor = floor
        # Sent lines the lookback read can still return, by creation time.
        delivered: dict[int, datetime] = {}

        while True:
            horizon = utc_now() - lookback
            lines = await run_in_threadpool(
                logs.list_since_for_owner, owner_id, cursor, created_since=horizon
            )
            for line in lines:
                if line.id <= floor or line.id in delivered:
                    continue
                delivered[line.id] = line.created_at
                cursor = max(cursor, line.id)
                yield LogEvent(line)
            delivered = {i: at for i, at in delivered.items() if at >= horizon}

            while True:
                event = await sub.get_async(timeout=idle_poll_seconds)
                if event is None:
                    break
                if isinstance(event, CompletionEvent):
                    yield event
                    continue
                if event.id > floor and event.id not in delivered:
                    break
    finally:
        broadcaster.unsubscribe(sub)
