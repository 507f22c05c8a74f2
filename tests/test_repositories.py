# tests/test_repositories.py

from __future__ import annotations

from datetime import date, time, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config import ActivityAction, SubtaskStatus, TaskStatus
from core import FetchFailureException, TransitionConflictException
from finops.application import TransitionCoordinator
from finops.domain import ActivityEntry, EscalationTimer, OverdueReasonRecord, Subtask
from finops.infrastructure import (
    SQLAlchemyActivityLog,
    SQLAlchemyEscalationTimerStore,
    SQLAlchemyOverdueReasonRepository,
    SQLAlchemyTaskRepository,
)
from finops.interfaces import build_monitor
from infrastructure.database import Base

from .builders import TODAY, at, make_task
from .fakes import FakeAlertDispatcher, FakeClock, StaticConfigProvider


@pytest_asyncio.fixture()
async def sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'finops.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


async def _seed(sessions, *tasks) -> None:
    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        for task in tasks:
            await repo.upsert_task(task)
        await session.commit()


# ========== Tasks ==========

@pytest.mark.asyncio
async def test_upsert_then_load_task(sessions) -> None:
    async with sessions() as session:
        assert await SQLAlchemyTaskRepository(session).upsert_task(make_task()) is True
        await session.commit()

    async with sessions() as session:
        task = await SQLAlchemyTaskRepository(session).get_task("T1")

    assert task.name == "Daily settlement reconciliation"
    assert task.client.name == "Acme Payments"
    assert [p.name for p in task.alert_recipients] == ["Vikram Iyer", "Meera Nair"]
    assert task.reporting_managers[0].email == "vikram@example.com"
    assert [(s.id, s.start_time) for s in task.subtasks] == [("S1", time(9, 0)), ("S2", time(10, 30))]
    assert task.status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_upsert_replaces_subtasks(sessions) -> None:
    await _seed(sessions, make_task())

    async with sessions() as session:
        created = await SQLAlchemyTaskRepository(session).upsert_task(make_task(subtasks=[
            Subtask(id="S1", name="Download bank statements", position=0, start_time=time(8, 30)),
            Subtask(id="S3", name="Post adjustments", position=1, start_time=time(12, 0)),
        ]))
        await session.commit()

    async with sessions() as session:
        task = await SQLAlchemyTaskRepository(session).get_task("T1")

    assert created is False
    assert [(s.id, s.name) for s in task.subtasks] == [
        ("S1", "Download bank statements"), ("S3", "Post adjustments")
    ]


@pytest.mark.asyncio
async def test_upsert_keeps_stored_progress(sessions) -> None:
    await _seed(sessions, make_task())
    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        task = await repo.get_task("T1")
        subtask = task.get_subtask("S1")
        subtask.apply_status(SubtaskStatus.OVERDUE, at(9, 5))
        await repo.update_subtask_status("T1", subtask, SubtaskStatus.PENDING, "system")
        await repo.update_task_status("T1", TaskStatus.OVERDUE)
        await session.commit()

    async with sessions() as session:
        await SQLAlchemyTaskRepository(session).upsert_task(make_task(subtasks=[
            Subtask(id="S1", name="Download bank statements", position=0, start_time=time(8, 45),
                    status=SubtaskStatus.COMPLETED),
            Subtask(id="S3", name="Post adjustments", position=1, start_time=time(12, 0),
                    status=SubtaskStatus.IN_PROGRESS),
        ]))
        await session.commit()

    async with sessions() as session:
        task = await SQLAlchemyTaskRepository(session).get_task("T1")

    s1, s3 = task.subtasks
    assert (s1.name, s1.start_time, s1.status) == ("Download bank statements", time(8, 45), SubtaskStatus.OVERDUE)
    assert s1.updated_at == at(9, 5)
    assert s3.status == SubtaskStatus.IN_PROGRESS
    assert task.status == TaskStatus.OVERDUE


@pytest.mark.asyncio
async def test_save_run_resets_progress_and_stamps_last_run(sessions) -> None:
    await _seed(sessions, make_task())
    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        task = await repo.get_task("T1")
        subtask = task.get_subtask("S1")
        subtask.apply_status(SubtaskStatus.IN_PROGRESS, at(9, 1))
        await repo.update_subtask_status("T1", subtask, SubtaskStatus.PENDING, "asha")
        subtask.apply_status(SubtaskStatus.DELAYED, at(9, 2), delay_reason="technical_issue")
        await repo.update_subtask_status("T1", subtask, SubtaskStatus.IN_PROGRESS, "asha")
        await repo.update_task_status("T1", TaskStatus.DELAYED)
        await session.commit()

    next_day = TODAY + timedelta(days=1)
    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        task = await repo.get_task("T1")
        assert task.last_run is None
        task.start_run(next_day, at(8, 0, on=next_day))
        await repo.save_run(task)
        await session.commit()

    async with sessions() as session:
        task = await SQLAlchemyTaskRepository(session).get_task("T1")

    s1 = task.get_subtask("S1")
    assert s1.status == SubtaskStatus.PENDING
    assert (s1.started_at, s1.completed_at, s1.delay_reason) == (None, None, None)
    assert s1.updated_at == at(8, 0, on=next_day)
    assert task.status == TaskStatus.PENDING
    assert task.last_run == next_day


@pytest.mark.asyncio
async def test_get_missing_task_returns_none(sessions) -> None:
    async with sessions() as session:
        assert await SQLAlchemyTaskRepository(session).get_task("NOPE") is None


@pytest.mark.asyncio
async def test_fetch_skips_inactive_and_future_tasks(sessions) -> None:
    await _seed(
        sessions,
        make_task("T1"),
        make_task("T2", is_active=False),
        make_task("T3", effective_from=date(2024, 2, 1)),
    )

    async with sessions() as session:
        tasks = await SQLAlchemyTaskRepository(session).fetch_tasks(TODAY)

    assert [t.id for t in tasks] == ["T1"]


@pytest.mark.asyncio
async def test_fetch_failure_is_wrapped(tmp_path) -> None:
    # No tables created
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        async with async_sessionmaker(engine)() as session:
            with pytest.raises(FetchFailureException):
                await SQLAlchemyTaskRepository(session).fetch_tasks(TODAY)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_subtask_write_is_optimistic(sessions) -> None:
    await _seed(sessions, make_task())

    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        task = await repo.get_task("T1")
        subtask = task.get_subtask("S1")
        subtask.apply_status(SubtaskStatus.OVERDUE, at(9, 5))
        await repo.update_subtask_status("T1", subtask, SubtaskStatus.PENDING, "system")
        await repo.update_task_status("T1", TaskStatus.OVERDUE)
        await session.commit()

    async with sessions() as session:
        repo = SQLAlchemyTaskRepository(session)
        task = await repo.get_task("T1")
        assert task.status == TaskStatus.OVERDUE
        assert task.get_subtask("S1").status == SubtaskStatus.OVERDUE
        assert task.get_subtask("S1").updated_at == at(9, 5)

        stale = task.get_subtask("S1")
        stale.apply_status(SubtaskStatus.IN_PROGRESS, at(9, 6))
        with pytest.raises(TransitionConflictException) as exc_info:
            await repo.update_subtask_status("T1", stale, SubtaskStatus.PENDING, "asha")

    assert exc_info.value.actual_status == "overdue"


# ========== Overdue reasons ==========

@pytest.mark.asyncio
async def test_reason_is_consumed_once(sessions) -> None:
    async with sessions() as session:
        repo = SQLAlchemyOverdueReasonRepository(session)
        await repo.record(OverdueReasonRecord("T1", "S1", "technical_issue", "asha", at(9, 10)))
        latest = await repo.record(OverdueReasonRecord(
            "T1", "S1", "other", "asha", at(9, 20), reason_text="bank portal down"
        ))
        await session.commit()

    assert latest.id is not None

    async with sessions() as session:
        repo = SQLAlchemyOverdueReasonRepository(session)
        found = await repo.get_unconsumed("T1", "S1")
        assert found.id == latest.id
        assert found.description == "other: bank portal down"
        assert found.recorded_at == at(9, 20)

        await repo.consume(found.id, at(9, 25))
        await session.commit()

    async with sessions() as session:
        remaining = await SQLAlchemyOverdueReasonRepository(session).get_unconsumed("T1", "S1")

    assert remaining.reason == "technical_issue"
    assert await _unconsumed_for(sessions, "T1", "S2") is None


async def _unconsumed_for(sessions, task_id: str, subtask_id: str):
    async with sessions() as session:
        return await SQLAlchemyOverdueReasonRepository(session).get_unconsumed(task_id, subtask_id)


@pytest.mark.asyncio
async def test_discard_unconsumed_retires_only_that_task(sessions) -> None:
    async with sessions() as session:
        repo = SQLAlchemyOverdueReasonRepository(session)
        await repo.record(OverdueReasonRecord("T1", "S1", "client_delay", "asha", at(9, 10)))
        await repo.record(OverdueReasonRecord("T1", "S2", "technical_issue", "asha", at(9, 11)))
        await repo.record(OverdueReasonRecord("T2", "S1", "client_delay", "asha", at(9, 12)))
        await repo.discard_unconsumed("T1", at(9, 30))
        await session.commit()

    assert await _unconsumed_for(sessions, "T1", "S1") is None
    assert await _unconsumed_for(sessions, "T1", "S2") is None
    assert (await _unconsumed_for(sessions, "T2", "S1")).reason == "client_delay"


# ========== Escalation timers ==========

@pytest.mark.asyncio
async def test_timer_store_round_trip(sessions) -> None:
    async with sessions() as session:
        store = SQLAlchemyEscalationTimerStore(session)
        await store.persist(EscalationTimer.start("T1", at(9, 5), timedelta(minutes=15)))
        await session.commit()

    async with sessions() as session:
        store = SQLAlchemyEscalationTimerStore(session)
        timer = await store.get("T1")
        assert timer.next_alert_at == at(9, 20)
        assert timer.interval == timedelta(minutes=15)

        timer.advance(at(9, 20))
        await store.persist(timer)
        await session.commit()

    async with sessions() as session:
        store = SQLAlchemyEscalationTimerStore(session)
        [timer] = await store.list_timers()
        assert timer.next_alert_at == at(9, 35)

        await store.delete("T1")
        await store.delete("T1")
        await session.commit()

    async with sessions() as session:
        assert await SQLAlchemyEscalationTimerStore(session).list_timers() == []


# ========== Activity log ==========

@pytest.mark.asyncio
async def test_activity_log_newest_first(sessions) -> None:
    async with sessions() as session:
        log = SQLAlchemyActivityLog(session)
        for minute in (1, 2, 3):
            await log.log(ActivityEntry(
                action=ActivityAction.STATUS_CHANGED.value,
                task_id="T1",
                subtask_id="S1",
                actor="asha",
                details=f"change {minute}",
                created_at=at(9, minute),
            ))
        await log.log(ActivityEntry(
            action=ActivityAction.ALERT_SENT.value, task_id="T2", actor="system",
            details="other task", created_at=at(9, 4),
        ))
        await session.commit()

    async with sessions() as session:
        entries = await SQLAlchemyActivityLog(session).list_for_task("T1", limit=2)

    assert [e.details for e in entries] == ["change 3", "change 2"]
    assert entries[0].created_at == at(9, 3)


# ========== Monitoring over the database ==========

@pytest.mark.asyncio
async def test_monitor_cycle_persists_promotion_and_timer(sessions) -> None:
    await _seed(sessions, make_task())
    clock = FakeClock(at(9, 5))
    dispatcher = FakeAlertDispatcher()
    coordinator = TransitionCoordinator()

    async with sessions() as session:
        monitor = build_monitor(session, StaticConfigProvider(), coordinator, dispatcher, clock)
        result = await monitor.run_cycle()
        await session.commit()

    assert [c.subtask_id for c in result.promoted] == ["S1"]

    async with sessions() as session:
        task = await SQLAlchemyTaskRepository(session).get_task("T1")
        timer = await SQLAlchemyEscalationTimerStore(session).get("T1")
        activity = await SQLAlchemyActivityLog(session).list_for_task("T1")

    assert task.get_subtask("S1").status == SubtaskStatus.OVERDUE
    assert task.status == TaskStatus.OVERDUE
    assert timer.next_alert_at == at(9, 20)
    assert sorted(e.action for e in activity) == [
        ActivityAction.RUN_STARTED.value, ActivityAction.STATUS_CHANGED.value
    ]
    assert {e.actor for e in activity} == {"system"}
    assert task.last_run == TODAY

    clock.advance(minutes=15)
    async with sessions() as session:
        result = await build_monitor(
            session, StaticConfigProvider(), coordinator, dispatcher, clock
        ).run_cycle()
        await session.commit()

    assert result.alerts_dispatched == 1
    assert [a.subtask_id for a in dispatcher.sent] == ["S1"]
