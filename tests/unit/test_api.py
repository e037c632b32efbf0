from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from agent_ops.orchestrator.config import OrchestratorSettings
from agent_ops.orchestrator.runtime.dry_run import DryRunRuntime
from agent_ops.orchestrator.services import ABANDONED_ON_RESTART, Services, build_services
from agent_ops.orchestrator.store.models import (
    Agent,
    ExecutionParent,
    Routine,
    RoutineFrequency,
    RoutineStatus,
    TriggerType,
)
from agent_ops.server.app import create_app

OWNER = {"X-Owner-Id": "1"}
OTHER_OWNER = {"X-Owner-Id": "2"}


@pytest.fixture
def services(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Services:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'agent_state' / 'api.db'}")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("STREAM_IDLE_POLL_SECONDS", "0.05")
    monkeypatch.setenv("COMPLETION_POLL_SECONDS", "0.05")
    return build_services(OrchestratorSettings(), runtime=DryRunRuntime())


@pytest.fixture
def client(services: Services) -> Iterator[TestClient]:
    with TestClient(create_app(services=services)) as c:
        yield c


@pytest.fixture
def agent(services: Services, client: TestClient) -> Agent:
    return services.routines.create_agent(owner_id=1, name="Inbox triage")


@pytest.fixture
def routine(services: Services, agent: Agent) -> Routine:
    return services.routines.create_routine(
        owner_id=1,
        agent_id=agent.id,
        name="Morning digest",
        frequency=RoutineFrequency.DAILY,
        config={"mailbox": "inbox"},
    )


def _run_and_wait(client: TestClient, routine: Routine) -> dict:
    started = client.post(f"/api/routines/{routine.id}/run", headers=OWNER)
    assert started.status_code == 202
    assert started.json()["trigger_type"] == "manual"

    waited = client.get(
        f"/api/executions/{started.json()['id']}/wait",
        params={"timeout_seconds": 10},
        headers=OWNER,
    )
    assert waited.status_code == 200
    return waited.json()


def test_health(client: TestClient) -> None:
    health = client.get("/api/health").json()

    assert health["status"] == "ok"
    assert health["database"] == "sqlite"
    assert health["scheduler_running"] is False
    assert "version" in health


def test_owner_header_is_required(client: TestClient) -> None:
    assert client.get("/api/executions").status_code == 401
    assert client.get("/api/executions", headers={"X-Owner-Id": "sam"}).status_code == 400
    assert client.get("/api/executions", headers=OWNER).json() == []


def test_run_routine_and_read_history(client: TestClient, routine: Routine) -> None:
    waited = _run_and_wait(client, routine)

    assert waited["completion"] == "completed"
    assert waited["timed_out"] is False
    execution = waited["execution"]
    assert execution["status"] == "completed"
    assert execution["cost_usd"] == 0.0
    assert execution["metadata"]["dry_run"] is True

    lines = client.get(f"/api/executions/{execution['id']}/logs", headers=OWNER).json()
    assert [line["stage"] for line in lines] == ["start", "config", "finish"]

    recent = client.get("/api/logs/recent", params={"limit": 2}, headers=OWNER).json()
    assert [line["id"] for line in recent] == [lines[2]["id"], lines[1]["id"]]

    by_routine = client.get(f"/api/routines/{routine.id}/executions", headers=OWNER).json()
    assert [e["id"] for e in by_routine] == [execution["id"]]
    by_agent = client.get(f"/api/agents/{routine.agent_id}/executions", headers=OWNER).json()
    assert [e["id"] for e in by_agent] == [execution["id"]]

    completed = client.get("/api/executions", params={"status": "completed"}, headers=OWNER)
    assert [e["id"] for e in completed.json()] == [execution["id"]]
    assert client.get("/api/executions", params={"status": "running"}, headers=OWNER).json() == []


def test_errors_map_to_status_codes(
    client: TestClient, services: Services, routine: Routine
) -> None:
    execution_id = _run_and_wait(client, routine)["execution"]["id"]

    missing = client.get("/api/executions/999", headers=OWNER)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "execution 999 not found"

    assert client.get(f"/api/executions/{execution_id}", headers=OTHER_OWNER).status_code == 404
    assert client.post(f"/api/routines/{routine.id}/run", headers=OTHER_OWNER).status_code == 404

    services.routines.set_routine_status(1, routine.id, RoutineStatus.DISABLED)
    disabled = client.post(f"/api/routines/{routine.id}/run", headers=OWNER)
    assert disabled.status_code == 409
    assert disabled.json()["detail"] == f"routine {routine.id} is disabled"

    busy = services.executions.create(
        owner_id=1, parent=ExecutionParent.agent(routine.agent_id), trigger_type=TriggerType.MANUAL
    )
    conflict = client.post(f"/api/agents/{routine.agent_id}/run", json={}, headers=OWNER)
    assert conflict.status_code == 409
    assert str(busy.id) in conflict.json()["detail"]


def test_stream_of_finished_execution_replays_and_closes(
    client: TestClient, routine: Routine
) -> None:
    execution_id = _run_and_wait(client, routine)["execution"]["id"]
    lines = client.get(f"/api/executions/{execution_id}/logs", headers=OWNER).json()

    with client.stream(
        "GET", f"/api/executions/{execution_id}/logs/stream", headers=OWNER
    ) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())

    assert body.count("event: log") == 3
    assert body.count("event: completion") == 1
    assert f"id: {lines[-1]['id']}" in body
    assert '"status": "completed"' in body
    assert body.index("event: completion") > body.rindex("event: log")


def test_stream_resumes_from_last_event_id(client: TestClient, routine: Routine) -> None:
    execution_id = _run_and_wait(client, routine)["execution"]["id"]
    lines = client.get(f"/api/executions/{execution_id}/logs", headers=OWNER).json()

    with client.stream(
        "GET",
        f"/api/executions/{execution_id}/logs/stream",
        headers={**OWNER, "Last-Event-ID": str(lines[1]["id"])},
    ) as response:
        body = "".join(response.iter_text())

    assert body.count("event: log") == 1
    assert f"id: {lines[2]['id']}" in body
    assert "event: completion" in body


def test_stream_of_foreign_execution_is_not_found(client: TestClient, routine: Routine) -> None:
    execution_id = _run_and_wait(client, routine)["execution"]["id"]

    response = client.get(f"/api/executions/{execution_id}/logs/stream", headers=OTHER_OWNER)

    assert response.status_code == 404


def test_task_workflow_over_http(client: TestClient, services: Services, agent: Agent) -> None:
    created = client.post(
        "/api/tasks",
        json={"title": "Book dentist", "priority": "high", "suggestion_reasoning": "Overdue"},
        headers=OWNER,
    )
    assert created.status_code == 201
    task = created.json()
    assert task["status"] == "suggested"

    incomplete = client.post(
        f"/api/tasks/{task['id']}/transition",
        json={"status": "approved", "approved_by": "sam"},
        headers=OWNER,
    )
    assert incomplete.status_code == 422

    skipped = client.post(
        f"/api/tasks/{task['id']}/transition",
        json={"status": "completed", "completion_summary": "done"},
        headers=OWNER,
    )
    assert skipped.status_code == 409

    approved = client.post(
        f"/api/tasks/{task['id']}/transition",
        json={
            "status": "approved",
            "changed_by": "sam",
            "approved_by": "sam",
            "approval_reasoning": "Teeth matter",
            "assigned_to_agent_id": agent.id,
        },
        headers=OWNER,
    )
    assert approved.status_code == 200
    assert approved.json()["assigned_to_agent_id"] == agent.id

    # Run the dispatched execution inline so the task outcome is settled on return.
    scheduler = dataclasses.replace(services.scheduler, dispatch=services.runner.run)
    assert scheduler.tick().tasks_dispatched == [task["id"]]

    done = client.get(f"/api/tasks/{task['id']}", headers=OWNER).json()
    assert done["status"] == "completed"
    assert done["completion_summary"] == f"Dry run for task {task['id']}"

    stats = client.get("/api/tasks/stats", headers=OWNER).json()
    assert stats["total"] == 1
    assert stats["by_status"]["completed"] == 1

    listed = client.get("/api/tasks", params={"status": "completed"}, headers=OWNER).json()
    assert [t["id"] for t in listed] == [task["id"]]
    assert client.get(f"/api/tasks/{task['id']}", headers=OTHER_OWNER).status_code == 404


def test_startup_fails_executions_left_in_flight(services: Services) -> None:
    services.db.create_schema()
    agent = services.routines.create_agent(owner_id=1, name="Inbox triage")
    stale = services.executions.create(
        owner_id=1, parent=ExecutionParent.agent(agent.id), trigger_type=TriggerType.SCHEDULED
    )

    with TestClient(create_app(services=services)) as client:
        execution = client.get(f"/api/executions/{stale.id}", headers=OWNER).json()

    assert execution["status"] == "failed"
    assert execution["error_message"] == ABANDONED_ON_RESTART
