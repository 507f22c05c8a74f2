# tests/test_transitions.py

from __future__ import annotations

import asyncio
from datetime import time, timedelta

import pytest

from config import ActivityAction, AlertType, RecurrenceKind, SubtaskStatus, TaskStatus, Weekday
from core import (
    InvalidReasonException,
    MissingReasonException,
    NotScheduledTodayException,
    ResourceNotFoundException,
    TransitionConflictException,
    ValidationException,
)
from finops.application import StatusTransitionService, TaskIngestionService
from finops.domain import EscalationTimer, Subtask, TransitionRequest

from .builders import make_task, overdue_subtask
from .fakes import FakeTaskRepository


def request(status: SubtaskStatus, subtask_id: str = "S1", **kwargs) -> TransitionRequest:
    return TransitionRequest(task_id="T1", subtask_id=subtask_id, new_status=status, actor="asha", **kwargs)


# ========== Entities ==========

def test_aggregate_status_precedence() -> None:
    task = make_task(subtasks=[
        Subtask(id="a", name="a", status=SubtaskStatus.COMPLETED),
        Subtask(id="b", name="b", status=SubtaskStatus.DELAYED, delay_reason="technical_issue"),
        Subtask(id="c", name="c", status=SubtaskStatus.OVERDUE),
    ])
    assert task.aggregate_status() == TaskStatus.OVERDUE

    task.subtasks[2].status = SubtaskStatus.PENDING
    assert task.aggregate_status() == TaskStatus.DELAYED

    task.subtasks[1].apply_status(SubtaskStatus.PENDING, None)
    assert task.aggregate_status() == TaskStatus.IN_PROGRESS

    for s in task.subtasks:
        s.status = SubtaskStatus.COMPLETED
    assert task.aggregate_status() == TaskStatus.COMPLETED


def test_task_without_subtasks_is_pending() -> None:
    assert make_task(subtasks=[]).aggregate_status() == TaskStatus.PENDING


def test_subtasks_sorted_by_position() -> None:
    task = make_task(subtasks=[
        Subtask(id="late", name="late", position=2),
        Subtask(id="early", name="early", position=0),
    ])
    assert [s.id for s in task.subtasks] == ["early", "late"]


def test_delay_reason_only_on_delayed_subtasks() -> None:
    with pytest.raises(ValueError):
        Subtask(id="x", name="x", status=SubtaskStatus.DELAYED)
    with pytest.raises(ValueError):
        Subtask(id="x", name="x", status=SubtaskStatus.PENDING, delay_reason="technical_issue")


def test_alert_recipients_are_deduplicated() -> None:
    names = [p.name for p in make_task().alert_recipients]
    assert names == ["Vikram Iyer", "Meera Nair"]


def test_escalation_timer_countdown(clock) -> None:
    timer = EscalationTimer.start("T1", clock(), timedelta(minutes=15))

    assert timer.seconds_remaining(clock()) == 900
    assert timer.seconds_remaining(clock() + timedelta(seconds=0.5)) == 900
    assert timer.seconds_remaining(clock() + timedelta(minutes=20)) == 0
    assert not timer.is_due(clock() + timedelta(minutes=14))
    assert timer.is_due(clock() + timedelta(minutes=15))


# ========== Status transitions ==========

@pytest.mark.asyncio
async def test_in_progress_then_completed(transitions, task_repo, activity_log) -> None:
    change = await transitions.transition(request(SubtaskStatus.IN_PROGRESS))

    assert change.previous_status == SubtaskStatus.PENDING
    assert change.new_status == SubtaskStatus.IN_PROGRESS
    started_at = task_repo.subtask("T1", "S1").started_at
    assert started_at is not None

    change = await transitions.transition(request(SubtaskStatus.COMPLETED))

    stored = task_repo.subtask("T1", "S1")
    assert stored.status == SubtaskStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.started_at == started_at
    assert change.task_status == TaskStatus.IN_PROGRESS
    assert task_repo.tasks["T1"].status == TaskStatus.IN_PROGRESS
    assert activity_log.actions() == [ActivityAction.STATUS_CHANGED.value] * 2


@pytest.mark.asyncio
async def test_started_at_set_only_once(transitions, task_repo, clock) -> None:
    await transitions.transition(request(SubtaskStatus.IN_PROGRESS))
    first = task_repo.subtask("T1", "S1").started_at

    clock.advance(minutes=10)
    await transitions.transition(request(SubtaskStatus.PENDING))
    await transitions.transition(request(SubtaskStatus.IN_PROGRESS))

    assert task_repo.subtask("T1", "S1").started_at == first


@pytest.mark.asyncio
async def test_same_status_is_a_noop(transitions, activity_log) -> None:
    change = await transitions.transition(request(SubtaskStatus.PENDING))

    assert change.is_noop
    assert activity_log.entries == []


@pytest.mark.asyncio
async def test_delayed_requires_reason(transitions, task_repo, coordinator) -> None:
    with pytest.raises(MissingReasonException) as exc:
        await transitions.transition(request(SubtaskStatus.DELAYED))

    assert exc.value.prompt == "delay_reason"
    assert not exc.value.parked
    assert "technical_issue" in exc.value.allowed_reasons
    assert coordinator.parked("T1", "S1") is None
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.PENDING


@pytest.mark.asyncio
async def test_delayed_rejects_unknown_reason(transitions) -> None:
    with pytest.raises(InvalidReasonException):
        await transitions.transition(request(SubtaskStatus.DELAYED, delay_reason="felt_like_it"))


@pytest.mark.asyncio
async def test_delayed_notifies_reporting_managers(transitions, task_repo, dispatcher) -> None:
    change = await transitions.transition(
        request(SubtaskStatus.DELAYED, delay_reason="data_unavailable", delay_notes="bank file late")
    )

    assert change.task_status == TaskStatus.DELAYED
    stored = task_repo.subtask("T1", "S1")
    assert stored.delay_reason == "data_unavailable"
    assert stored.delay_notes == "bank file late"

    [alert] = dispatcher.of_type(AlertType.DELAY_REPORTED)
    assert [p.name for p in alert.recipients] == ["Vikram Iyer"]
    assert "data_unavailable" in alert.message


@pytest.mark.asyncio
async def test_delay_notification_failure_does_not_block(transitions, task_repo, dispatcher) -> None:
    dispatcher.fail = True

    change = await transitions.transition(request(SubtaskStatus.DELAYED, delay_reason="technical_issue"))

    assert change.new_status == SubtaskStatus.DELAYED
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.DELAYED
    assert dispatcher.attempts == 1


@pytest.mark.asyncio
async def test_leaving_delayed_clears_reason(transitions, task_repo) -> None:
    await transitions.transition(request(SubtaskStatus.DELAYED, delay_reason="technical_issue"))
    await transitions.transition(request(SubtaskStatus.IN_PROGRESS))

    stored = task_repo.subtask("T1", "S1")
    assert stored.delay_reason is None
    assert stored.delay_notes is None


@pytest.mark.asyncio
async def test_not_scheduled_today_rejects_change(transitions, task_repo) -> None:
    await task_repo.upsert_task(make_task(
        kind=RecurrenceKind.WEEKLY,
        weekdays=frozenset({Weekday.TUESDAY}),
    ))

    with pytest.raises(NotScheduledTodayException) as exc:
        await transitions.transition(request(SubtaskStatus.IN_PROGRESS))

    assert exc.value.details["code"] == "not_scheduled_today"
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_task_or_subtask(transitions) -> None:
    with pytest.raises(ResourceNotFoundException):
        await transitions.transition(TransitionRequest("nope", "S1", SubtaskStatus.COMPLETED, "asha"))
    with pytest.raises(ResourceNotFoundException):
        await transitions.transition(request(SubtaskStatus.COMPLETED, subtask_id="nope"))


@pytest.mark.asyncio
async def test_stale_expected_status_conflicts(transitions, task_repo) -> None:
    await transitions.transition(request(SubtaskStatus.IN_PROGRESS))

    with pytest.raises(TransitionConflictException) as exc:
        await transitions.transition(
            request(SubtaskStatus.OVERDUE, expected_status=SubtaskStatus.PENDING)
        )

    assert exc.value.actual_status == "in_progress"
    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_optimistic_write_loses_race(
    task_repo, reason_repo, activity_log, config_provider, coordinator, clock
) -> None:
    """A concurrent writer outside this process changed the row after our read."""

    class RacingRepository(FakeTaskRepository):
        async def update_subtask_status(self, task_id, subtask, expected_status, actor):
            self.tasks[task_id].get_subtask(subtask.id).status = SubtaskStatus.COMPLETED
            await super().update_subtask_status(task_id, subtask, expected_status, actor)

    repo = RacingRepository([make_task()])
    service = StatusTransitionService(repo, reason_repo, activity_log, config_provider, coordinator, clock=clock)

    with pytest.raises(TransitionConflictException):
        await service.transition(request(SubtaskStatus.IN_PROGRESS))

    assert repo.subtask("T1", "S1").status == SubtaskStatus.COMPLETED
    assert activity_log.entries == []


# ========== Overdue exit ==========

@pytest.fixture()
def overdue_repo(task_repo):
    task_repo.tasks["T1"] = make_task(subtasks=[overdue_subtask(), Subtask(id="S2", name="Match", start_time=time(10, 30))])
    return task_repo


@pytest.mark.asyncio
async def test_overdue_exit_parks_until_reason_recorded(
    transitions, overdue_repo, reason_repo, coordinator, activity_log
) -> None:
    with pytest.raises(MissingReasonException) as exc:
        await transitions.transition(request(SubtaskStatus.COMPLETED))

    assert exc.value.prompt == "overdue_reason"
    assert exc.value.parked
    assert exc.value.details["parked"] is True
    assert overdue_repo.subtask("T1", "S1").status == SubtaskStatus.OVERDUE
    assert coordinator.parked("T1", "S1").new_status == SubtaskStatus.COMPLETED

    record, change = await transitions.record_overdue_reason("T1", "S1", "client_delay", "asha")

    assert record.reason == "client_delay"
    assert change is not None
    assert change.previous_status == SubtaskStatus.OVERDUE
    assert change.new_status == SubtaskStatus.COMPLETED
    assert change.overdue_reason == "client_delay"
    assert overdue_repo.subtask("T1", "S1").status == SubtaskStatus.COMPLETED
    assert coordinator.parked("T1", "S1") is None
    assert reason_repo.records[0].is_consumed
    assert activity_log.actions() == [
        ActivityAction.OVERDUE_REASON_PROVIDED.value,
        ActivityAction.STATUS_CHANGED.value,
    ]


@pytest.mark.asyncio
async def test_recorded_reason_authorizes_one_exit(transitions, overdue_repo) -> None:
    record, change = await transitions.record_overdue_reason("T1", "S1", "system_downtime", "asha")
    assert change is None

    await transitions.transition(request(SubtaskStatus.IN_PROGRESS))
    await transitions.transition(request(SubtaskStatus.OVERDUE))

    with pytest.raises(MissingReasonException):
        await transitions.transition(request(SubtaskStatus.COMPLETED))


@pytest.mark.asyncio
async def test_inline_overdue_reason(transitions, overdue_repo, reason_repo) -> None:
    change = await transitions.transition(
        request(SubtaskStatus.IN_PROGRESS, overdue_reason="other", overdue_reason_text="vendor outage")
    )

    assert change.overdue_reason == "other: vendor outage"
    assert reason_repo.records[0].is_consumed


@pytest.mark.asyncio
async def test_other_reason_requires_text(transitions, overdue_repo) -> None:
    with pytest.raises(InvalidReasonException):
        await transitions.record_overdue_reason("T1", "S1", "other", "asha")
    with pytest.raises(InvalidReasonException):
        await transitions.transition(request(SubtaskStatus.COMPLETED, overdue_reason="other"))


@pytest.mark.asyncio
async def test_reason_for_non_overdue_subtask_rejected(transitions, overdue_repo) -> None:
    with pytest.raises(ValidationException):
        await transitions.record_overdue_reason("T1", "S2", "client_delay", "asha")


@pytest.mark.asyncio
async def test_overdue_to_overdue_needs_no_reason(transitions, overdue_repo) -> None:
    change = await transitions.transition(request(SubtaskStatus.OVERDUE))

    assert change.is_noop


# ========== Coordination ==========

@pytest.mark.asyncio
async def test_task_lock_dropped_once_released(coordinator) -> None:
    entered = []

    async def second_writer():
        async with coordinator.locked("T1"):
            entered.append("second")

    async with coordinator.locked("T1"):
        waiter = asyncio.create_task(second_writer())
        await asyncio.sleep(0)
        assert coordinator.lock_count == 1
        assert entered == []

    await waiter
    assert entered == ["second"]
    assert coordinator.lock_count == 0


@pytest.mark.asyncio
async def test_transitions_leave_no_locks_behind(transitions, overdue_repo, coordinator) -> None:
    await transitions.transition(request(SubtaskStatus.IN_PROGRESS, subtask_id="S2"))
    with pytest.raises(MissingReasonException):
        await transitions.transition(request(SubtaskStatus.COMPLETED))
    await transitions.record_overdue_reason("T1", "S1", "client_delay", "asha")

    assert coordinator.lock_count == 0
    assert coordinator.parked_count == 0


@pytest.mark.asyncio
async def test_delay_notification_deferred_until_after_the_write(
    task_repo, reason_repo, activity_log, config_provider, coordinator, dispatcher, clock
) -> None:
    deferred = []
    service = StatusTransitionService(
        task_repo, reason_repo, activity_log, config_provider, coordinator,
        notifier=dispatcher, clock=clock, defer=lambda func, *args: deferred.append((func, args)),
    )

    await service.transition(request(SubtaskStatus.DELAYED, delay_reason="technical_issue"))

    assert task_repo.subtask("T1", "S1").status == SubtaskStatus.DELAYED
    assert dispatcher.sent == []

    [(func, args)] = deferred
    await func(*args)
    assert [a.alert_type for a in dispatcher.sent] == [AlertType.DELAY_REPORTED]


# ========== Ingestion ==========

@pytest.mark.asyncio
async def test_ingest_keeps_run_progress_of_existing_subtasks(overdue_repo, coordinator) -> None:
    service = TaskIngestionService(overdue_repo, coordinator)

    created = await service.ingest(make_task(subtasks=[
        Subtask(id="S1", name="Download statements", position=0, start_time=time(8, 45),
                status=SubtaskStatus.COMPLETED),
        Subtask(id="S2", name="Match", position=1, start_time=time(10, 30)),
        Subtask(id="S4", name="Sign off", position=2, start_time=time(16, 0),
                status=SubtaskStatus.IN_PROGRESS),
    ]))

    assert created is False
    stored = overdue_repo.tasks["T1"]
    assert [(s.id, s.status) for s in stored.subtasks] == [
        ("S1", SubtaskStatus.OVERDUE),
        ("S2", SubtaskStatus.PENDING),
        ("S4", SubtaskStatus.IN_PROGRESS),
    ]
    assert stored.get_subtask("S1").start_time == time(8, 45)
    assert stored.status == TaskStatus.OVERDUE
    assert coordinator.lock_count == 0


@pytest.mark.asyncio
async def test_ingest_drops_parked_exit_of_removed_subtask(transitions, overdue_repo, coordinator) -> None:
    with pytest.raises(MissingReasonException):
        await transitions.transition(request(SubtaskStatus.COMPLETED))
    service = TaskIngestionService(overdue_repo, coordinator)

    await service.ingest(make_task())
    assert coordinator.parked("T1", "S1") is not None

    await service.ingest(make_task(subtasks=[Subtask(id="S2", name="Match", start_time=time(10, 30))]))
    assert coordinator.parked("T1", "S1") is None
