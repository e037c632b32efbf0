"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from agent_ops.orchestrator.store.database import Database
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.models import Agent, Routine, RoutineFrequency
from agent_ops.orchestrator.store.routines import RoutineStore
from agent_ops.orchestrator.workflow.task_engine import TaskEngine

OWNER_ID = 1
OTHER_OWNER_ID = 2


class FrozenClock:
    """Settable clock for scheduler tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def owner_id() -> int:
    return OWNER_ID


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """Provide a fresh SQLite store with the schema created."""
    database = Database(f"sqlite:///{tmp_path / 'agent_state' / 'orchestrator.db'}")
    database.create_schema()
    yield database
    database.close()


@pytest.fixture
def routines(db: Database) -> RoutineStore:
    return RoutineStore(db)


@pytest.fixture
def executions(db: Database) -> ExecutionStore:
    return ExecutionStore(db)


@pytest.fixture
def logs(db: Database) -> LogStore:
    return LogStore(db)


@pytest.fixture
def tasks(db: Database) -> TaskEngine:
    return TaskEngine(db)


@pytest.fixture
def agent(routines: RoutineStore) -> Agent:
    """Provide an active agent owned by OWNER_ID."""
    return routines.create_agent(owner_id=OWNER_ID, name="Inbox triage")


@pytest.fixture
def daily_routine(routines: RoutineStore, agent: Agent) -> Routine:
    """Provide an active daily routine that has never run."""
    return routines.create_routine(
        owner_id=OWNER_ID,
        agent_id=agent.id,
        name="Morning digest",
        frequency=RoutineFrequency.DAILY,
        config={"mailbox": "inbox"},
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 10, 9, 0, tzinfo=UTC))


@pytest.fixture(autouse=True)
def _reset_sse_app_status() -> Iterator[None]:
    # sse-starlette keeps a module-level exit event bound to the first event loop.
    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield
