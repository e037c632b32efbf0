"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Records about an
execution carry its ids as top-level fields (``owner_id``, ``execution_id``,
...), taken from ``extra=`` or from an enclosing :func:`log_context`, so one
run's lines can be filtered out of the interleaved output of many threads.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

CORRELATION_FIELDS: tuple[str, ...] = (
    "owner_id",
    "execution_id",
    "routine_id",
    "agent_id",
    "task_id",
)

_context: ContextVar[dict[str, Any]] = ContextVar("agent_ops_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach correlation ids to every record logged inside the block.

    Nests; inner values win. ``None`` values are ignored. The context is
    per thread (and per asyncio task), so each execution thread sets its own.
    """

    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


class JsonFormatter(logging.Formatter):
    """JSON formatter for logging records.

    Correlation ids are lifted to the top level; other ``extra=`` values go
    under ``"extra"``. Values that are not JSON types (datetimes, enums) are
    rendered with ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        correlation = dict(_context.get())
        correlation.update({k: extra.pop(k) for k in CORRELATION_FIELDS if k in extra})
        for key in CORRELATION_FIELDS:
            if correlation.get(key) is not None:
                payload[key] = correlation[key]
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # SQL echo and per-request access lines drown out execution events.
    logging.getLogger("sqlalchemy.engine").setLevel(max(root.level, logging.WARNING))
    logging.getLogger("uvicorn.access").setLevel(max(root.level, logging.INFO))
