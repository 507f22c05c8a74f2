# tests/test_api.py

from __future__ import annotations

from datetime import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import AlertType, RecurrenceKind, SubtaskStatus, TaskStatus, Weekday
from finops.domain import Subtask
from finops.interfaces import finops_router
from finops.interfaces.controllers import (
    get_activity_log,
    get_reason_repository,
    get_task_repository,
    get_timer_store,
)
from shared.api import register_exception_handlers

from .builders import make_task, overdue_subtask


@pytest.fixture()
def client(task_repo, reason_repo, timer_store, activity_log, dispatcher, config_provider, coordinator, clock):
    app = FastAPI()
    app.include_router(finops_router)
    register_exception_handlers(app)

    app.state.finops_config = config_provider
    app.state.coordinator = coordinator
    app.state.alert_client = dispatcher
    app.state.clock = clock

    app.dependency_overrides[get_task_repository] = lambda: task_repo
    app.dependency_overrides[get_reason_repository] = lambda: reason_repo
    app.dependency_overrides[get_timer_store] = lambda: timer_store
    app.dependency_overrides[get_activity_log] = lambda: activity_log

    with TestClient(app) as test_client:
        yield test_client


TASK_PAYLOAD = {
    "id": "T9",
    "task_name": "Month-end accruals",
    "client_name": "Globex",
    "reporting_managers": ["Vikram Iyer (vikram@example.com)"],
    "duration": "daily",
    "effective_from": "2024-01-01",
    "subtasks": [{"id": "1", "name": "Pull ledger", "start_time": "11:00"}],
}


# ========== Ingestion ==========

def test_ingest_creates_then_replaces(client, task_repo) -> None:
    first = client.post("/finops/tasks", json={"tasks": [TASK_PAYLOAD]})
    second = client.post("/finops/tasks", json={"tasks": [TASK_PAYLOAD]})

    assert first.status_code == 200
    assert first.json() == {"created": 1, "updated": 0, "failed": 0, "errors": []}
    assert second.json()["updated"] == 1
    assert task_repo.tasks["T9"].client.name == "Globex"


def test_reingest_cannot_move_an_overdue_subtask(client, task_repo, activity_log) -> None:
    task_repo.tasks["T1"] = make_task(subtasks=[
        overdue_subtask("S1"),
        Subtask(id="S2", name="Match transactions", position=1, start_time=time(10, 30)),
    ])
    payload = dict(TASK_PAYLOAD, id="T1", subtasks=[
        {"id": "S1", "name": "Download bank files", "start_time": "09:00", "status": "completed"},
        {"id": "S2", "name": "Match transactions", "position": 1, "start_time": "10:30"},
    ])

    response = client.post("/finops/tasks", json={"tasks": [payload]})

    assert response.json()["updated"] == 1
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.OVERDUE
    assert task_repo.tasks["T1"].status == TaskStatus.OVERDUE
    assert task_repo.tasks["T1"].client.name == "Globex"
    assert activity_log.entries == []


def test_ingest_rejects_invalid_weekly_task(client) -> None:
    payload = dict(TASK_PAYLOAD, duration="weekly", weekly_days=["monday", "tuesday", "friday"])

    response = client.post("/finops/tasks", json={"tasks": [payload]})

    assert response.status_code == 422


# ========== Listing ==========

def test_list_annotates_sla_for_today(client) -> None:
    response = client.get("/finops/tasks")

    assert response.status_code == 200
    body = response.json()
    assert body["on_date"] == "2024-01-15"
    [task] = body["tasks"]
    s1, s2 = task["subtasks"]
    assert (s1["sla_kind"], s1["sla_offset_minutes"], s1["sla_message"]) == ("overdue", 5, "Overdue by 5 min")
    assert s1["time_since_start"] == "need to start"
    assert s2["sla_kind"] == "none"
    assert s2["time_since_start"] == "Starts in 1h 25m"
    assert task["next_alert_in_seconds"] is None
    assert body["summary"]["total_tasks"] == 1
    assert body["summary"]["pending_subtasks"] == 2


def test_list_other_date_has_no_sla(client) -> None:
    body = client.get("/finops/tasks", params={"date": "2024-01-16"}).json()

    [task] = body["tasks"]
    assert {s["sla_kind"] for s in task["subtasks"]} == {"none"}
    assert {s["time_since_start"] for s in task["subtasks"]} == {"N/A"}


def test_list_filters_by_recurrence(client, task_repo) -> None:
    task_repo.tasks["T1"] = make_task(kind=RecurrenceKind.WEEKLY, weekdays=frozenset({Weekday.FRIDAY}))

    assert client.get("/finops/tasks").json()["tasks"] == []
    assert len(client.get("/finops/tasks", params={"date": "2024-01-19"}).json()["tasks"]) == 1


def test_get_unknown_task_is_404(client) -> None:
    response = client.get("/finops/tasks/NOPE")

    assert response.status_code == 404
    assert response.json()["code"] == "ResourceNotFoundException"


# ========== Transitions ==========

def test_status_change_round_trip(client, task_repo) -> None:
    response = client.put(
        "/finops/tasks/T1/subtasks/S2/status",
        json={"status": "in_progress", "actor": "asha"},
    )

    assert response.status_code == 200
    body = response.json()
    assert (body["previous_status"], body["new_status"], body["task_status"]) == (
        "pending", "in_progress", "pending"
    )
    assert task_repo.subtask("T1", "S2").status == SubtaskStatus.IN_PROGRESS


def test_delay_without_reason_is_422(client) -> None:
    response = client.put(
        "/finops/tasks/T1/subtasks/S2/status",
        json={"status": "delayed", "actor": "asha"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "missing_reason"
    assert body["details"]["prompt"] == "delay_reason"


def test_not_scheduled_today_is_409(client, task_repo) -> None:
    task_repo.tasks["T1"] = make_task(kind=RecurrenceKind.WEEKLY, weekdays=frozenset({Weekday.FRIDAY}))

    response = client.put(
        "/finops/tasks/T1/subtasks/S1/status",
        json={"status": "in_progress", "actor": "asha"},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "not_scheduled_today"


def test_unknown_subtask_is_404(client) -> None:
    response = client.put(
        "/finops/tasks/T1/subtasks/S9/status",
        json={"status": "in_progress", "actor": "asha"},
    )

    assert response.status_code == 404


def test_delay_notification_sent_after_response(client, task_repo, dispatcher) -> None:
    response = client.put(
        "/finops/tasks/T1/subtasks/S2/status",
        json={"status": "delayed", "actor": "asha", "delay_reason": "technical_issue"},
    )

    assert response.status_code == 200
    assert task_repo.subtask("T1", "S2").status == SubtaskStatus.DELAYED
    [alert] = dispatcher.of_type(AlertType.DELAY_REPORTED)
    assert alert.subtask_id == "S2"


def test_stale_expected_status_is_409(client) -> None:
    response = client.put(
        "/finops/tasks/T1/subtasks/S1/status",
        json={"status": "completed", "actor": "asha", "expected_status": "in_progress"},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "transition_conflict"


def test_overdue_exit_parks_until_reason_recorded(client, task_repo) -> None:
    cycle = client.post("/finops/monitor/run").json()
    assert [c["subtask_id"] for c in cycle["promoted"]] == ["S1"]

    rejected = client.put(
        "/finops/tasks/T1/subtasks/S1/status",
        json={"status": "completed", "actor": "asha"},
    )
    assert rejected.status_code == 422
    assert rejected.json()["code"] == "missing_reason"
    assert rejected.json()["details"]["parked"] is True

    recorded = client.post(
        "/finops/tasks/T1/subtasks/S1/overdue-reason",
        json={"reason": "client_delay", "actor": "asha"},
    )
    assert recorded.status_code == 200
    body = recorded.json()
    assert body["reason"] == "client_delay"
    assert body["resumed_transition"]["new_status"] == "completed"
    assert body["resumed_transition"]["overdue_reason"] == "client_delay"
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.COMPLETED


def test_overdue_reason_rejected_when_not_overdue(client) -> None:
    response = client.post(
        "/finops/tasks/T1/subtasks/S1/overdue-reason",
        json={"reason": "client_delay", "actor": "asha"},
    )

    assert response.status_code == 422


def test_activity_lists_newest_first(client) -> None:
    client.put("/finops/tasks/T1/subtasks/S2/status", json={"status": "in_progress", "actor": "asha"})
    client.put("/finops/tasks/T1/subtasks/S2/status", json={"status": "completed", "actor": "asha"})

    entries = client.get("/finops/tasks/T1/activity").json()

    assert [e["action"] for e in entries] == ["status_changed", "status_changed"]
    assert "to completed" in entries[0]["details"]
    assert entries[0]["actor"] == "asha"


# ========== Monitoring ==========

def test_monitor_run_starts_escalation_timer(client, clock) -> None:
    client.post("/finops/monitor/run")

    [timer] = client.get("/finops/escalations").json()
    assert timer["task_id"] == "T1"
    assert timer["seconds_remaining"] == 900
    assert timer["interval_minutes"] == 15

    clock.advance(minutes=10)
    task = client.get("/finops/tasks/T1").json()
    assert task["status"] == "overdue"
    assert task["next_alert_in_seconds"] == 300


def test_monitor_run_reports_skipped_cycle(client, task_repo) -> None:
    task_repo.fail_fetch = True

    body = client.post("/finops/monitor/run").json()

    assert body["skipped"] is True
    assert body["tasks_evaluated"] == 0
