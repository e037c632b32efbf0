"""Unit tests for the CLI entrypoint and its exit codes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_ops.orchestrator.main import main
from agent_ops.orchestrator.store.database import Database
from agent_ops.orchestrator.store.models import Agent, RoutineFrequency
from agent_ops.orchestrator.store.routines import RoutineStore


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    # main() reconfigures the root logger onto the captured stdout.
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite:///{tmp_path / 'agent_state' / 'cli.db'}"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("AGENT_RUNTIME", "dry_run")
    monkeypatch.setenv("COMPLETION_POLL_SECONDS", "0.05")
    monkeypatch.delenv("SCHEDULER_TICK_SECONDS", raising=False)
    return url


@pytest.fixture
def seeded_agent(database_url: str) -> Agent:
    db = Database(database_url)
    try:
        db.create_schema()
        return RoutineStore(db).create_agent(owner_id=1, name="Inbox triage")
    finally:
        db.close()


def test_init_db(database_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == 0
    assert "Schema ready (sqlite)" in capsys.readouterr().out


def test_configuration_error_exits_2(
    database_url: str, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("SCHEDULER_TICK_SECONDS", "0")

    assert main(["init-db"]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_run_agent_waits_for_completion(
    seeded_agent: Agent, capsys: pytest.CaptureFixture[str]
) -> None:
    code = main(
        ["run-agent", "--owner-id", "1", "--agent-id", str(seeded_agent.id), "--timeout-seconds", "10"]
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "completion=completed" in out

    assert main(["logs", "--owner-id", "1", "--execution-id", "1"]) == 0
    logged = capsys.readouterr().out
    assert "Dry run started" in logged
    assert "Dry run finished" in logged

    assert main(["logs", "--owner-id", "1", "--execution-id", "1", "--follow"]) == 0
    assert "Execution #1 completed" in capsys.readouterr().out


def test_unknown_entities_exit_3(seeded_agent: Agent, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run-routine", "--owner-id", "1", "--routine-id", "42"]) == 3
    assert "routine 42 not found" in capsys.readouterr().err

    assert main(["run-agent", "--owner-id", "2", "--agent-id", str(seeded_agent.id)]) == 3


def test_tick_runs_due_routines(
    database_url: str, seeded_agent: Agent, capsys: pytest.CaptureFixture[str]
) -> None:
    db = Database(database_url)
    try:
        RoutineStore(db).create_routine(
            owner_id=1,
            agent_id=seeded_agent.id,
            name="Morning digest",
            frequency=RoutineFrequency.DAILY,
        )
    finally:
        db.close()

    assert main(["tick"]) == 0
    assert "Triggered 1 execution(s)" in capsys.readouterr().out

    assert main(["tick"]) == 0
    assert "Triggered 0 execution(s)" in capsys.readouterr().out


def test_task_commands(seeded_agent: Agent, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["propose-task", "--owner-id", "1", "--title", "Book dentist", "--priority", "high"]) == 0
    assert "Proposed task #1: Book dentist" in capsys.readouterr().out

    # Approval without its context is a typed error.
    assert (
        main(["transition-task", "--owner-id", "1", "--task-id", "1", "--status", "approved"]) == 3
    )
    assert "requires" in capsys.readouterr().err

    assert (
        main(
            [
                "transition-task",
                "--owner-id",
                "1",
                "--task-id",
                "1",
                "--status",
                "approved",
                "--approved-by",
                "sam",
                "--approval-reasoning",
                "Overdue",
                "--assign-to-agent-id",
                str(seeded_agent.id),
            ]
        )
        == 0
    )
    assert "Task #1 is now approved" in capsys.readouterr().out

    assert main(["tasks", "--owner-id", "1", "--status", "approved"]) == 0
    assert "#1 [approved] (high) Book dentist" in capsys.readouterr().out
