"""
FinOps Infrastructure Repositories
==================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import RecurrenceKind, SubtaskStatus, TaskStatus, Weekday, SYSTEM_ACTOR
from core import FetchFailureException, ResourceNotFoundException, TransitionConflictException
from finops.application.services import (
    IActivityLog,
    IEscalationTimerStore,
    IOverdueReasonRepository,
    ITaskRepository,
)
from finops.domain import (
    ActivityEntry,
    ClientRef,
    EscalationTimer,
    OverdueReasonRecord,
    PersonRef,
    Recurrence,
    Subtask,
    Task,
)
from finops.infrastructure.models import (
    ActivityLogModel,
    EscalationTimerModel,
    OverdueReasonModel,
    SubtaskModel,
    TaskModel,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without timezone support hand back naive UTC values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _people_to_json(people: List[PersonRef]) -> list:
    return [{"id": p.id, "name": p.name, "email": p.email} for p in people]


def _people_from_json(data: Optional[list]) -> List[PersonRef]:
    return [PersonRef(id=p.get("id"), name=p["name"], email=p.get("email")) for p in data or []]


def _subtask_to_domain(model: SubtaskModel) -> Subtask:
    return Subtask(
        id=model.id,
        name=model.name,
        position=model.position,
        start_time=model.start_time,
        status=SubtaskStatus(model.status),
        started_at=_from_db(model.started_at),
        completed_at=_from_db(model.completed_at),
        delay_reason=model.delay_reason,
        delay_notes=model.delay_notes,
        updated_at=_from_db(model.updated_at)
    )


def _task_to_domain(model: TaskModel) -> Task:
    return Task(
        id=model.id,
        name=model.task_name,
        client=ClientRef(id=model.client_id, name=model.client_name),
        recurrence=Recurrence(
            kind=RecurrenceKind(model.duration),
            effective_from=model.effective_from,
            weekdays=frozenset(Weekday(d) for d in model.weekly_days or [])
        ),
        is_active=model.is_active,
        assignees=_people_from_json(model.assigned_to),
        reporting_managers=_people_from_json(model.reporting_managers),
        escalation_managers=_people_from_json(model.escalation_managers),
        subtasks=[_subtask_to_domain(s) for s in model.subtasks],
        status=TaskStatus(model.status),
        last_run=model.last_run
    )


class SQLAlchemyTaskRepository(ITaskRepository):
    """
    SQLAlchemy implementation of the task repository.

    Subtask status writes are optimistic: the UPDATE only matches while the
    row still holds the status the caller read.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def fetch_tasks(self, on: date) -> List[Task]:
        """Load every active task; schedule filtering happens in the domain."""
        stmt = (
            select(TaskModel)
            .where(TaskModel.is_active.is_(True))
            .where(TaskModel.effective_from <= on)
            .order_by(TaskModel.id)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self._session.execute(stmt)
            models = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch tasks", extra={"on_date": on.isoformat(), "error": str(e)})
            raise FetchFailureException(f"Could not load tasks for {on.isoformat()}", {"error": str(e)})

        return [_task_to_domain(m) for m in models]

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get a single task with its subtasks."""
        model = await self._get_model(task_id)
        return _task_to_domain(model) if model else None

    async def update_subtask_status(
        self,
        task_id: str,
        subtask: Subtask,
        expected_status: SubtaskStatus,
        actor: str
    ) -> None:
        stmt = (
            update(SubtaskModel)
            .where(
                SubtaskModel.id == subtask.id,
                SubtaskModel.task_id == task_id,
                SubtaskModel.status == expected_status.value
            )
            .values(
                status=subtask.status.value,
                started_at=_to_utc(subtask.started_at),
                completed_at=_to_utc(subtask.completed_at),
                delay_reason=subtask.delay_reason,
                delay_notes=subtask.delay_notes,
                updated_by=actor,
                updated_at=_to_utc(subtask.updated_at)
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount == 0:
            current = await self._session.scalar(
                select(SubtaskModel.status).where(
                    SubtaskModel.id == subtask.id, SubtaskModel.task_id == task_id
                )
            )
            raise TransitionConflictException(task_id, subtask.id, expected_status.value, current)

    async def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        await self._session.execute(
            update(TaskModel)
            .where(TaskModel.id == task_id)
            .values(status=status.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def upsert_task(self, task: Task) -> bool:
        """
        Create or redefine a task and its subtasks.

        Existing subtasks keep their stored status, timestamps and delay
        fields; only name, position and start time follow the new definition.
        """
        model = await self._get_model(task.id)
        created = model is None
        now = datetime.now(timezone.utc)

        if created:
            model = TaskModel(id=task.id, created_at=now)
            self._session.add(model)
        else:
            task.keep_progress_from(_task_to_domain(model))

        model.task_name = task.name
        model.client_id = task.client.id
        model.client_name = task.client.name
        model.assigned_to = _people_to_json(task.assignees)
        model.reporting_managers = _people_to_json(task.reporting_managers)
        model.escalation_managers = _people_to_json(task.escalation_managers)
        model.duration = task.recurrence.kind.value
        model.weekly_days = sorted(d.value for d in task.recurrence.weekdays)
        model.effective_from = task.recurrence.effective_from
        model.is_active = task.is_active
        model.status = task.status.value
        model.updated_at = now

        # Sync subtasks by id so unchanged rows are updated in place
        existing = {} if created else {s.id: s for s in model.subtasks}
        subtask_models = []
        for s in task.subtasks:
            sub = existing.get(s.id) or SubtaskModel(id=s.id, task_id=task.id)
            sub.name = s.name
            sub.position = s.position
            sub.start_time = s.start_time
            sub.status = s.status.value
            sub.started_at = _to_utc(s.started_at)
            sub.completed_at = _to_utc(s.completed_at)
            sub.delay_reason = s.delay_reason
            sub.delay_notes = s.delay_notes
            sub.updated_at = _to_utc(s.updated_at)
            subtask_models.append(sub)
        model.subtasks = subtask_models

        await self._session.flush()
        return created

    async def save_run(self, task: Task) -> None:
        """Persist a started run: every subtask's progress, the task status and ``last_run``."""
        model = await self._get_model(task.id)
        if model is None:
            raise ResourceNotFoundException("Task", task.id)

        subtasks = {s.id: s for s in task.subtasks}
        for sub in model.subtasks:
            s = subtasks.get(sub.id)
            if s is None:
                continue
            sub.status = s.status.value
            sub.started_at = _to_utc(s.started_at)
            sub.completed_at = _to_utc(s.completed_at)
            sub.delay_reason = s.delay_reason
            sub.delay_notes = s.delay_notes
            sub.updated_by = SYSTEM_ACTOR
            sub.updated_at = _to_utc(s.updated_at)

        model.status = task.status.value
        model.last_run = task.last_run
        model.updated_at = datetime.now(timezone.utc)
        await self._session.flush()

    async def _get_model(self, task_id: str) -> Optional[TaskModel]:
        stmt = (
            select(TaskModel)
            .where(TaskModel.id == task_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class SQLAlchemyOverdueReasonRepository(IOverdueReasonRepository):
    """SQLAlchemy implementation of the overdue reason store."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, record: OverdueReasonRecord) -> OverdueReasonRecord:
        model = OverdueReasonModel(
            id=uuid4() if not record.id else UUID(record.id),
            task_id=record.task_id,
            subtask_id=record.subtask_id,
            reason=record.reason,
            reason_text=record.reason_text,
            created_by=record.actor,
            created_at=_to_utc(record.recorded_at),
            consumed_at=_to_utc(record.consumed_at)
        )
        self._session.add(model)
        await self._session.flush()

        record.id = str(model.id)
        return record

    async def get_unconsumed(self, task_id: str, subtask_id: str) -> Optional[OverdueReasonRecord]:
        stmt = (
            select(OverdueReasonModel)
            .where(
                OverdueReasonModel.task_id == task_id,
                OverdueReasonModel.subtask_id == subtask_id,
                OverdueReasonModel.consumed_at.is_(None)
            )
            .order_by(OverdueReasonModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            return None

        return OverdueReasonRecord(
            id=str(model.id),
            task_id=model.task_id,
            subtask_id=model.subtask_id,
            reason=model.reason,
            reason_text=model.reason_text,
            actor=model.created_by,
            recorded_at=_from_db(model.created_at),
            consumed_at=None
        )

    async def consume(self, record_id: str, consumed_at: datetime) -> None:
        await self._session.execute(
            update(OverdueReasonModel)
            .where(OverdueReasonModel.id == UUID(record_id))
            .values(consumed_at=_to_utc(consumed_at))
            .execution_options(synchronize_session=False)
        )

    async def discard_unconsumed(self, task_id: str, discarded_at: datetime) -> None:
        await self._session.execute(
            update(OverdueReasonModel)
            .where(
                OverdueReasonModel.task_id == task_id,
                OverdueReasonModel.consumed_at.is_(None)
            )
            .values(consumed_at=_to_utc(discarded_at))
            .execution_options(synchronize_session=False)
        )


class SQLAlchemyEscalationTimerStore(IEscalationTimerStore):
    """Escalation timers persisted one row per task."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_timers(self) -> List[EscalationTimer]:
        result = await self._session.execute(
            select(EscalationTimerModel).execution_options(populate_existing=True)
        )
        return [self._to_domain(m) for m in result.scalars().all()]

    async def get(self, task_id: str) -> Optional[EscalationTimer]:
        model = await self._session.get(EscalationTimerModel, task_id, populate_existing=True)
        return self._to_domain(model) if model else None

    async def persist(self, timer: EscalationTimer) -> None:
        model = await self._session.get(EscalationTimerModel, timer.task_id)
        if model is None:
            model = EscalationTimerModel(task_id=timer.task_id)
            self._session.add(model)

        model.next_alert_at = _to_utc(timer.next_alert_at)
        model.interval_seconds = int(timer.interval.total_seconds())
        model.updated_at = datetime.now(timezone.utc)
        await self._session.flush()

    async def delete(self, task_id: str) -> None:
        await self._session.execute(
            delete(EscalationTimerModel)
            .where(EscalationTimerModel.task_id == task_id)
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    def _to_domain(model: EscalationTimerModel) -> EscalationTimer:
        return EscalationTimer(
            task_id=model.task_id,
            next_alert_at=_from_db(model.next_alert_at),
            interval=timedelta(seconds=model.interval_seconds)
        )


class SQLAlchemyActivityLog(IActivityLog):
    """Append-only activity log table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def log(self, entry: ActivityEntry) -> None:
        self._session.add(ActivityLogModel(
            id=uuid4(),
            task_id=entry.task_id,
            subtask_id=entry.subtask_id,
            action=entry.action,
            user_name=entry.actor,
            details=entry.details,
            timestamp=_to_utc(entry.created_at)
        ))
        await self._session.flush()

    async def list_for_task(self, task_id: str, limit: int = 100) -> List[ActivityEntry]:
        """Most recent entries for a task."""
        result = await self._session.execute(
            select(ActivityLogModel)
            .where(ActivityLogModel.task_id == task_id)
            .order_by(ActivityLogModel.timestamp.desc())
            .limit(limit)
        )
        return [
            ActivityEntry(
                action=m.action,
                task_id=m.task_id,
                subtask_id=m.subtask_id,
                actor=m.user_name,
                details=m.details,
                created_at=_from_db(m.timestamp)
            )
            for m in result.scalars().all()
        ]
