"""Live progress: broadcaster and resumable stream iterators."""

from agent_ops.orchestrator.streaming.broadcaster import ProgressBroadcaster, Subscription
from agent_ops.orchestrator.streaming.events import CompletionEvent, LogEvent, StreamEvent
from agent_ops.orchestrator.streaming.stream import (
    aiter_execution_stream,
    aiter_owner_stream,
    iter_execution_stream,
)

__all__ = [
    "CompletionEvent",
    "LogEvent",
    "ProgressBroadcaster",
    "StreamEvent",
    "Subscription",
    "aiter_execution_stream",
    "aiter_owner_stream",
    "iter_execution_stream",
]
