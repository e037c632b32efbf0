"""Relational store handle and schema.

Supports two backends, chosen by ``DATABASE_URL``:

- SQLite (local development, default): WAL journal, foreign keys on, busy timeout.
- PostgreSQL via psycopg 3 (``postgresql+psycopg://...``).

The handle is explicit: build one :class:`Database` per process and pass it to
the stores. All cross-thread coordination goes through the store itself
(compare-and-set updates and the partial unique indexes below).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from agent_ops.orchestrator.errors import OrchestratorError, StoreError

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetimes, stored as UTC.

    SQLite drops the offset on write, so values are normalised to UTC before
    binding and re-tagged as UTC when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


metadata = MetaData()

agents = Table(
    "agents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("status", String(20), nullable=False, default="active"),
    Column("created_at", UTCDateTime, nullable=False),
)

routines = Table(
    "routines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("agent_id", Integer, ForeignKey("agents.id"), nullable=False),
    Column("name", String(200), nullable=False),
    Column("description", Text, nullable=True),
    Column("frequency", String(20), nullable=False, default="manual"),
    Column("status", String(20), nullable=False, default="active"),
    Column("config", JSON, nullable=False, default=dict),
    Column("last_run_at", UTCDateTime, nullable=True),
    Column("next_run_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_routines_due", "status", "frequency", "next_run_at"),
)

executions = Table(
    "executions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("agent_id", Integer, ForeignKey("agents.id"), nullable=False),
    Column("routine_id", Integer, ForeignKey("routines.id"), nullable=True),
    Column("status", String(20), nullable=False),
    Column("trigger_type", String(20), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("started_at", UTCDateTime, nullable=True),
    Column("completed_at", UTCDateTime, nullable=True),
    Column("duration_ms", Integer, nullable=True),
    Column("cost_usd", Float, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("metadata_json", JSON, nullable=False, default=dict),
    Index("ix_executions_routine_created", "routine_id", "created_at"),
    Index("ix_executions_agent_created", "agent_id", "created_at"),
    # At most one pending/running execution per routine, and per agent for
    # executions that run the agent directly.
    Index(
        "uq_executions_active_routine",
        "routine_id",
        unique=True,
        sqlite_where=text("routine_id IS NOT NULL AND status IN ('pending', 'running')"),
        postgresql_where=text("routine_id IS NOT NULL AND status IN ('pending', 'running')"),
    ),
    Index(
        "uq_executions_active_agent",
        "agent_id",
        unique=True,
        sqlite_where=text("routine_id IS NULL AND status IN ('pending', 'running')"),
        postgresql_where=text("routine_id IS NULL AND status IN ('pending', 'running')"),
    ),
)

# AUTOINCREMENT keeps SQLite from reusing the id of a deleted max row; the
# stream cursor relies on ids never going backwards.
execution_logs = Table(
    "execution_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("execution_id", Integer, ForeignKey("executions.id"), nullable=False),
    Column("owner_id", Integer, nullable=False),
    Column("level", String(20), nullable=False, default="info"),
    Column("stage", String(100), nullable=True),
    Column("message", Text, nullable=False),
    Column("metadata_json", JSON, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Index("ix_execution_logs_execution_id", "execution_id", "id"),
    Index("ix_execution_logs_owner_id", "owner_id", "id"),
    sqlite_autoincrement=True,
)

tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("priority", String(20), nullable=False, default="medium"),
    Column("status", String(20), nullable=False, default="suggested"),
    Column("suggestion_reasoning", Text, nullable=True),
    Column("approval_reasoning", Text, nullable=True),
    Column("rejection_reasoning", Text, nullable=True),
    Column("completion_summary", Text, nullable=True),
    Column("blocked_reason", Text, nullable=True),
    Column("proposed_by_agent_id", Integer, ForeignKey("agents.id"), nullable=True),
    Column("assigned_to_agent_id", Integer, ForeignKey("agents.id"), nullable=True),
    Column("approved_by", String(200), nullable=True),
    Column("execution_id", Integer, ForeignKey("executions.id"), nullable=True),
    Column("approved_at", UTCDateTime, nullable=True),
    Column("started_at", UTCDateTime, nullable=True),
    Column("blocked_at", UTCDateTime, nullable=True),
    Column("completed_at", UTCDateTime, nullable=True),
    Column("last_status_change_at", UTCDateTime, nullable=True),
    Column("last_status_change_by", String(200), nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_tasks_status_assignee", "status", "assigned_to_agent_id"),
    Index("ix_tasks_execution_id", "execution_id"),
)


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
    finally:
        cursor.close()


def _create_engine(url: str, *, echo: bool) -> Engine:
    if not _is_sqlite(url):
        return create_engine(url, echo=echo, pool_pre_ping=True, future=True)

    options: dict[str, Any] = {
        "echo": echo,
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    }
    database = make_url(url).database
    if database in (None, "", ":memory:"):
        # One shared connection, otherwise every thread sees its own empty database.
        options["poolclass"] = StaticPool
    else:
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **options)
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


class Database:
    """Explicit handle on the relational store.

    Example::

        db = Database("sqlite:///agent_state/orchestrator.db")
        db.create_schema()
        with db.transaction() as conn:
            conn.execute(...)
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine = _create_engine(url, echo=echo)

    @property
    def backend(self) -> str:
        return self.engine.dialect.name

    def create_schema(self) -> None:
        """Create tables and indexes that do not exist yet."""

        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create schema: {e}") from e
        logger.info("Database schema ready", extra={"backend": self.backend})

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction; commit on success, roll back on any exception.

        SQLAlchemy failures surface as :class:`StoreError`. Integrity violations
        are re-raised unchanged so that callers can translate them into a
        domain error (for example the one-active-execution guard).
        """

        try:
            with self.engine.begin() as conn:
                yield conn
        except (OrchestratorError, IntegrityError):
            raise
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def close(self) -> None:
        self.engine.dispose()
