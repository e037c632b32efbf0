"""Append-only execution log lines with cursor reads.

Ids come from a single global sequence, so "everything after id N" is a
cursor for both per-execution and per-owner readers. Across executions a
sequence id can commit after a higher one (PostgreSQL), so owner readers
also re-read a short window of recent lines.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import insert, or_, select
from sqlalchemy.engine import Connection

from agent_ops.orchestrator.errors import ExecutionFinalized, NotFound
from agent_ops.orchestrator.store.database import Database, execution_logs, executions
from agent_ops.orchestrator.store.models import ExecutionStatus, LogLevel, LogLine, utc_now

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000

LogListener = Callable[[LogLine], None]


def _log_line(row: Any) -> LogLine:
    data = dict(row._mapping)
    data["metadata"] = data.pop("metadata_json")
    return LogLine.model_validate(data)


@dataclass
class LogStore:
    db: Database

    def __post_init__(self) -> None:
        self._listeners: list[LogListener] = []
        self._listeners_lock = threading.Lock()

    def add_listener(self, listener: LogListener) -> None:
        """Call ``listener(line)`` after every append commits."""

        with self._listeners_lock:
            self._listeners.append(listener)

    def append(
        self,
        owner_id: int,
        execution_id: int,
        message: str,
        *,
        level: LogLevel = LogLevel.INFO,
        stage: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LogLine:
        """Append one line to a pending or running execution.

        Raises:
            NotFound: Unknown execution, or owned by someone else.
            ExecutionFinalized: The execution is already completed or failed.
        """

        with self.db.transaction() as conn:
            status = self._execution_status(conn, owner_id, execution_id)
            if ExecutionStatus(status).is_terminal:
                raise ExecutionFinalized(execution_id, status)
            row = conn.execute(
                insert(execution_logs)
                .values(
                    execution_id=execution_id,
                    owner_id=owner_id,
                    level=LogLevel(level).value,
                    stage=stage,
                    message=message,
                    metadata_json=metadata,
                    created_at=utc_now(),
                )
                .returning(*execution_logs.c)
            ).one()

        line = _log_line(row)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(line)
            except Exception:
                logger.exception(
                    "Log listener failed",
                    extra={"execution_id": execution_id, "log_id": line.id},
                )
        return line

    @staticmethod
    def _execution_status(conn: Connection, owner_id: int, execution_id: int) -> str:
        status = conn.execute(
            select(executions.c.status).where(
                executions.c.id == execution_id, executions.c.owner_id == owner_id
            )
        ).scalar_one_or_none()
        if status is None:
            raise NotFound("execution", execution_id)
        return status

    def list_all(
        self, owner_id: int, execution_id: int, *, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[LogLine]:
        """The first ``limit`` lines of an execution, oldest first."""

        with self.db.transaction() as conn:
            self._execution_status(conn, owner_id, execution_id)
            rows = conn.execute(
                select(execution_logs)
                .where(
                    execution_logs.c.execution_id == execution_id,
                    execution_logs.c.owner_id == owner_id,
                )
                .order_by(execution_logs.c.id.asc())
                .limit(limit)
            ).all()
        return [_log_line(r) for r in rows]

    def list_since(
        self,
        owner_id: int,
        execution_id: int,
        since_id: int,
        *,
        limit: int | None = None,
    ) -> list[LogLine]:
        """Lines of an execution with ``id > since_id``, oldest first."""

        stmt = (
            select(execution_logs)
            .where(
                execution_logs.c.execution_id == execution_id,
                execution_logs.c.owner_id == owner_id,
                execution_logs.c.id > since_id,
            )
            .order_by(execution_logs.c.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.transaction() as conn:
            self._execution_status(conn, owner_id, execution_id)
            rows = conn.execute(stmt).all()
        return [_log_line(r) for r in rows]

    def list_since_for_owner(
        self,
        owner_id: int,
        since_id: int,
        *,
        created_since: datetime | None = None,
        limit: int | None = None,
    ) -> list[LogLine]:
        """Lines across all of an owner's executions with ``id > since_id``, oldest first.

        With ``created_since``, lines created at or after it are included
        too, whatever their id.
        """

        newer = execution_logs.c.id > since_id
        if created_since is not None:
            newer = or_(newer, execution_logs.c.created_at >= created_since)
        stmt = (
            select(execution_logs)
            .where(execution_logs.c.owner_id == owner_id, newer)
            .order_by(execution_logs.c.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.transaction() as conn:
            rows = conn.execute(stmt).all()
        return [_log_line(r) for r in rows]

    def recent_for_owner(self, owner_id: int, *, limit: int = 5) -> list[LogLine]:
        """The owner's newest lines, newest first."""

        with self.db.transaction() as conn:
            rows = conn.execute(
                select(execution_logs)
                .where(execution_logs.c.owner_id == owner_id)
                .order_by(execution_logs.c.id.desc())
                .limit(limit)
            ).all()
        return [_log_line(r) for r in rows]

    def latest_id(self, owner_id: int) -> int:
        """Highest line id the owner can see, or 0 when there is none."""

        with self.db.transaction() as conn:
            latest = conn.execute(
                select(execution_logs.c.id)
                .where(execution_logs.c.owner_id == owner_id)
                .order_by(execution_logs.c.id.desc())
                .limit(1)
            ).scalar_one_or_none()
        return latest or 0
