"""
FinOps Application Services
===========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

The StatusTransitionService is the only mutation entry point for subtask
status. Every caller (HTTP handlers and the background sweep) goes through it,
and it serializes work per task.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from config import (
    ActivityAction, AlertType, SLAKind, SubtaskStatus, TaskStatus,
    SYSTEM_ACTOR, settings,
)
from core.exceptions import (
    DispatchFailureException,
    DomainException,
    FetchFailureException,
    MissingReasonException,
    ResourceNotFoundException,
    TransitionConflictException,
    ValidationException,
)
from finops.domain import (
    ActivityEntry,
    EscalationTimer,
    FinOpsConfig,
    OverdueReasonRecord,
    PersonRef,
    ScheduleEvaluator,
    SLAClassifier,
    StatusChange,
    Subtask,
    SubtaskStateMachine,
    Task,
    TransitionRequest,
)
from shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    """Current wall-clock time in the configured timezone."""
    return datetime.now(ZoneInfo(settings.timezone))


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITaskRepository(ABC):
    """Interface for task data access."""

    @abstractmethod
    async def fetch_tasks(self, on: date) -> List[Task]:
        """
        Load the task snapshot for one evaluation pass.

        Raises:
            FetchFailureException: if the store is unavailable
        """

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get a single task with its subtasks."""

    @abstractmethod
    async def update_subtask_status(
        self,
        task_id: str,
        subtask: Subtask,
        expected_status: SubtaskStatus,
        actor: str
    ) -> None:
        """
        Persist a subtask's new status and timestamps.

        Raises:
            TransitionConflictException: if the stored status is no longer
                ``expected_status``
        """

    @abstractmethod
    async def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        """Persist the aggregate task status."""

    @abstractmethod
    async def upsert_task(self, task: Task) -> bool:
        """
        Create or redefine a task. Returns True when created.

        Existing subtasks keep their run progress (status, timestamps, delay
        fields); only their definition is replaced.
        """

    @abstractmethod
    async def save_run(self, task: Task) -> None:
        """Persist a task whose run was just started, including ``last_run``."""


class IOverdueReasonRepository(ABC):
    """Interface for overdue reason side records."""

    @abstractmethod
    async def record(self, record: OverdueReasonRecord) -> OverdueReasonRecord:
        """Store a reason; returns it with its generated id."""

    @abstractmethod
    async def get_unconsumed(self, task_id: str, subtask_id: str) -> Optional[OverdueReasonRecord]:
        """Latest reason not yet used by a transition."""

    @abstractmethod
    async def consume(self, record_id: str, consumed_at: datetime) -> None:
        """Mark a reason as used."""

    @abstractmethod
    async def discard_unconsumed(self, task_id: str, discarded_at: datetime) -> None:
        """Retire every unused reason of a task, e.g. when a new run starts."""


class IEscalationTimerStore(ABC):
    """Durable key-value store of escalation timers keyed by task id."""

    @abstractmethod
    async def list_timers(self) -> List[EscalationTimer]:
        """All persisted timers."""

    @abstractmethod
    async def get(self, task_id: str) -> Optional[EscalationTimer]:
        """Timer for one task."""

    @abstractmethod
    async def persist(self, timer: EscalationTimer) -> None:
        """Create or update a timer."""

    @abstractmethod
    async def delete(self, task_id: str) -> None:
        """Remove a timer (no-op if absent)."""


class IActivityLog(ABC):
    """Interface for the audit trail."""

    @abstractmethod
    async def log(self, entry: ActivityEntry) -> None:
        """Append an entry."""

    @abstractmethod
    async def list_for_task(self, task_id: str, limit: int = 100) -> List[ActivityEntry]:
        """Most recent entries for a task, newest first."""


class IAlertDispatcher(ABC):
    """Interface for delivering alerts and notifications."""

    @abstractmethod
    async def dispatch_alert(
        self,
        task_id: str,
        subtask_id: str,
        alert_type: AlertType,
        message: str,
        recipients: List[PersonRef]
    ) -> None:
        """
        Deliver one alert.

        Raises:
            DispatchFailureException: on any delivery failure, timeouts included
        """


class IFinOpsConfigProvider(ABC):
    """Interface for FinOps configuration access."""

    @abstractmethod
    def get_config(self) -> FinOpsConfig:
        """Get current FinOps configuration."""


# ========== Transition coordination ==========

@dataclass
class _TaskLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TransitionCoordinator:
    """
    Process-wide serialization point for subtask transitions.

    Holds one lock per task and the requests parked while waiting for an
    overdue reason. Shared by every StatusTransitionService instance.

    A task's lock only exists while someone holds or waits for it, and a
    parked request only lives while its subtask is overdue.
    """

    def __init__(self):
        self._locks: Dict[str, _TaskLock] = {}
        self._parked: Dict[Tuple[str, str], TransitionRequest] = {}

    @asynccontextmanager
    async def locked(self, task_id: str) -> AsyncIterator[None]:
        """Serialize work on one task."""
        entry = self._locks.get(task_id)
        if entry is None:
            entry = self._locks[task_id] = _TaskLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[task_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @property
    def parked_count(self) -> int:
        return len(self._parked)

    def park(self, request: TransitionRequest) -> None:
        self._parked[request.key] = request

    def parked(self, task_id: str, subtask_id: str) -> Optional[TransitionRequest]:
        return self._parked.get((task_id, subtask_id))

    def take_parked(self, task_id: str, subtask_id: str) -> Optional[TransitionRequest]:
        return self._parked.pop((task_id, subtask_id), None)

    def evict_parked(self, task_id: str, keep: Iterable[str] = ()) -> int:
        """Drop a task's parked requests, except for the subtask ids in ``keep``."""
        keep = set(keep)
        stale = [key for key in self._parked if key[0] == task_id and key[1] not in keep]
        for key in stale:
            del self._parked[key]
        return len(stale)

    def retain_parked(self, tasks: List[Task]) -> int:
        """Keep only parked requests whose subtask is overdue in ``tasks``."""
        overdue = {(task.id, s.id) for task in tasks for s in task.overdue_subtasks}
        stale = [key for key in self._parked if key not in overdue]
        for key in stale:
            del self._parked[key]
        if stale:
            logger.info("Dropped stale parked transitions", extra={"count": len(stale)})
        return len(stale)


# ========== Application Services ==========

class StatusTransitionService:
    """
    Validates and executes subtask status transitions.

    Every transition runs under the task's lock, re-reads the task, checks
    the state machine rules, then writes optimistically against the status
    it read.
    """

    def __init__(
        self,
        task_repository: ITaskRepository,
        reason_repository: IOverdueReasonRepository,
        activity_log: IActivityLog,
        config_provider: IFinOpsConfigProvider,
        coordinator: TransitionCoordinator,
        notifier: Optional[IAlertDispatcher] = None,
        clock: Clock = local_now,
        defer: Optional[Callable[..., None]] = None
    ):
        """
        Args:
            defer: Schedules a coroutine function with its arguments to run
                after the caller's unit of work commits (FastAPI's
                ``BackgroundTasks.add_task``). Delay notifications are awaited
                inline when not given.
        """
        self._task_repo = task_repository
        self._reason_repo = reason_repository
        self._activity_log = activity_log
        self._config_provider = config_provider
        self._coordinator = coordinator
        self._notifier = notifier
        self._clock = clock
        self._defer = defer

    async def transition(self, request: TransitionRequest) -> StatusChange:
        """
        Move a subtask to a new status.

        Args:
            request: The transition to perform

        Returns:
            StatusChange describing what happened (``is_noop`` when the
            subtask already had the requested status)

        Raises:
            ResourceNotFoundException: unknown task or subtask
            NotScheduledTodayException: task not active today
            MissingReasonException: reason required; overdue exits are parked
            InvalidReasonException: reason outside the taxonomy
            TransitionConflictException: lost a race with another writer
        """
        machine = SubtaskStateMachine(self._config_provider.get_config())

        async with self._coordinator.locked(request.task_id):
            now = self._clock()
            task, subtask = await self._load(request.task_id, request.subtask_id)

            if request.expected_status is not None and subtask.status != request.expected_status:
                raise TransitionConflictException(
                    task.id, subtask.id,
                    request.expected_status.value, subtask.status.value
                )

            captured = None
            if machine.requires_overdue_reason(subtask, request) and not request.overdue_reason:
                captured = await self._reason_repo.get_unconsumed(task.id, subtask.id)

            try:
                machine.check(task, subtask, request, now.date(), captured)
            except MissingReasonException as e:
                if e.prompt == "overdue_reason":
                    self._coordinator.park(request)
                    e.parked = True
                    e.details["parked"] = True
                    logger.info(
                        "Overdue exit parked until a reason is recorded",
                        extra={"task_id": task.id, "subtask_id": subtask.id,
                               "requested_status": request.new_status.value}
                    )
                raise

            if request.new_status == subtask.status:
                return machine.apply(task, subtask, request, now)

            change = await self._commit(machine, task, subtask, request, now, captured)

        if change.new_status == SubtaskStatus.DELAYED:
            if self._defer is not None:
                self._defer(self._notify_delay, task, subtask, change)
            else:
                await self._notify_delay(task, subtask, change)

        return change

    async def record_overdue_reason(
        self,
        task_id: str,
        subtask_id: str,
        reason: str,
        actor: str,
        reason_text: Optional[str] = None
    ) -> Tuple[OverdueReasonRecord, Optional[StatusChange]]:
        """
        Capture the reason an overdue subtask is being moved on.

        If a transition was parked waiting for this reason, it is resumed.

        Returns:
            The stored record and the resumed StatusChange (None if nothing
            was parked)
        """
        machine = SubtaskStateMachine(self._config_provider.get_config())

        async with self._coordinator.locked(task_id):
            now = self._clock()
            task, subtask = await self._load(task_id, subtask_id)
            if subtask.status != SubtaskStatus.OVERDUE:
                raise ValidationException(
                    f"Subtask {subtask_id} is not overdue",
                    {"task_id": task_id, "subtask_id": subtask_id, "status": subtask.status.value}
                )
            reason = machine.validate_overdue_reason(reason, reason_text)
            record = await self._store_reason(task, subtask, reason, reason_text, actor, now)

        parked = self._coordinator.take_parked(task_id, subtask_id)
        if parked is None:
            return record, None

        logger.info(
            "Resuming parked overdue exit",
            extra={"task_id": task_id, "subtask_id": subtask_id,
                   "requested_status": parked.new_status.value}
        )
        try:
            change = await self.transition(parked)
        except (DomainException, ValidationException, ResourceNotFoundException) as e:
            # The reason stays recorded for the caller's next attempt
            logger.warning(
                "Parked overdue exit could not be resumed",
                extra={"task_id": task_id, "subtask_id": subtask_id, "error": e.message}
            )
            return record, None
        return record, change

    def parked_request(self, task_id: str, subtask_id: str) -> Optional[TransitionRequest]:
        return self._coordinator.parked(task_id, subtask_id)

    def retain_parked(self, tasks: List[Task]) -> int:
        return self._coordinator.retain_parked(tasks)

    async def start_run(self, task_id: str, on: date) -> Optional[Task]:
        """
        Open the run of a recurring task for ``on``.

        Every subtask goes back to pending with the previous run's
        timestamps and delay fields cleared. Unused overdue reasons are
        retired and parked requests dropped.

        Returns:
            The reset task, or None when it is unknown or already ran on ``on``
        """
        async with self._coordinator.locked(task_id):
            now = self._clock()
            task = await self._task_repo.get_task(task_id)
            if task is None or not task.needs_run(on):
                return None

            task.start_run(on, now)
            await self._task_repo.save_run(task)
            await self._reason_repo.discard_unconsumed(task.id, now)
            self._coordinator.evict_parked(task.id)

            await self._activity_log.log(ActivityEntry(
                action=ActivityAction.RUN_STARTED.value,
                task_id=task.id,
                actor=SYSTEM_ACTOR,
                details=f"{task.recurrence.kind.value.capitalize()} task execution started for {on.isoformat()}",
                created_at=now
            ))

        logger.info(
            "Task run started",
            extra={"task_id": task.id, "run_date": on.isoformat(),
                   "recurrence": task.recurrence.kind.value}
        )
        return task

    async def _load(self, task_id: str, subtask_id: str) -> Tuple[Task, Subtask]:
        task = await self._task_repo.get_task(task_id)
        if task is None:
            raise ResourceNotFoundException("Task", task_id)
        subtask = task.get_subtask(subtask_id)
        if subtask is None:
            raise ResourceNotFoundException("Subtask", subtask_id)
        return task, subtask

    async def _store_reason(
        self,
        task: Task,
        subtask: Subtask,
        reason: str,
        reason_text: Optional[str],
        actor: str,
        now: datetime
    ) -> OverdueReasonRecord:
        record = await self._reason_repo.record(OverdueReasonRecord(
            task_id=task.id,
            subtask_id=subtask.id,
            reason=reason,
            reason_text=reason_text.strip() if reason_text else None,
            actor=actor,
            recorded_at=now
        ))
        await self._activity_log.log(ActivityEntry(
            action=ActivityAction.OVERDUE_REASON_PROVIDED.value,
            task_id=task.id,
            subtask_id=subtask.id,
            actor=actor,
            details=f"Overdue reason provided: {record.description}",
            created_at=now
        ))
        return record

    async def _commit(
        self,
        machine: SubtaskStateMachine,
        task: Task,
        subtask: Subtask,
        request: TransitionRequest,
        now: datetime,
        captured: Optional[OverdueReasonRecord]
    ) -> StatusChange:
        overdue_reason = None
        if machine.requires_overdue_reason(subtask, request):
            if request.overdue_reason:
                reason = machine.validate_overdue_reason(
                    request.overdue_reason, request.overdue_reason_text
                )
                captured = await self._store_reason(
                    task, subtask, reason, request.overdue_reason_text, request.actor, now
                )
            overdue_reason = captured.description

        expected = subtask.status
        change = machine.apply(task, subtask, request, now, overdue_reason)

        await self._task_repo.update_subtask_status(task.id, subtask, expected, request.actor)
        if overdue_reason is not None:
            await self._reason_repo.consume(captured.id, now)
        await self._task_repo.update_task_status(task.id, change.task_status)

        self._coordinator.take_parked(task.id, subtask.id)

        await self._activity_log.log(ActivityEntry(
            action=ActivityAction.STATUS_CHANGED.value,
            task_id=task.id,
            subtask_id=subtask.id,
            actor=request.actor,
            details=change.describe(subtask.name),
            created_at=now
        ))

        logger.info(
            "Subtask status changed",
            extra={
                "task_id": task.id,
                "subtask_id": subtask.id,
                "previous_status": change.previous_status.value,
                "new_status": change.new_status.value,
                "task_status": change.task_status.value,
                "actor": request.actor
            }
        )
        return change

    async def _notify_delay(self, task: Task, subtask: Subtask, change: StatusChange) -> None:
        """Tell reporting managers about a delay; failures never affect the transition."""
        if self._notifier is None or not task.reporting_managers:
            return

        message = (
            f'Subtask "{subtask.name}" of task "{task.name}" for client '
            f'{task.client.name} was marked delayed by {change.actor}. '
            f"Reason: {change.delay_reason}"
        )
        if change.delay_notes:
            message += f". Notes: {change.delay_notes}"

        try:
            await self._notifier.dispatch_alert(
                task.id, subtask.id, AlertType.DELAY_REPORTED, message, task.reporting_managers
            )
        except DispatchFailureException as e:
            logger.error(
                "Delay notification failed",
                extra={"task_id": task.id, "subtask_id": subtask.id, "error": str(e)}
            )


class TaskIngestionService:
    """Creates and redefines tasks without touching their run progress."""

    def __init__(self, task_repository: ITaskRepository, coordinator: TransitionCoordinator):
        self._task_repo = task_repository
        self._coordinator = coordinator

    async def ingest(self, task: Task) -> bool:
        """
        Store a task definition under the task's lock.

        Parked requests for subtasks that were removed from the task are
        dropped.

        Returns:
            True when the task was created
        """
        async with self._coordinator.locked(task.id):
            created = await self._task_repo.upsert_task(task)
            self._coordinator.evict_parked(task.id, keep=(s.id for s in task.overdue_subtasks))
        return created


class AutoPromotionSweep:
    """
    Promotes breached pending subtasks to overdue.

    The system actor is the only one that moves subtasks into overdue
    automatically. Running twice on an unchanged snapshot is a no-op the
    second time because promoted subtasks are no longer pending.
    """

    def __init__(
        self,
        transition_service: StatusTransitionService,
        config_provider: IFinOpsConfigProvider
    ):
        self._transitions = transition_service
        self._config_provider = config_provider

    async def run(self, tasks: List[Task], now: datetime) -> List[StatusChange]:
        """
        Sweep a snapshot of active tasks.

        The snapshot is updated in place for every promoted subtask.

        Returns:
            Transitions that were applied
        """
        config = self._config_provider.get_config()
        classifier = SLAClassifier(config.sla_warning_window_minutes)
        promoted = []

        for task in tasks:
            for subtask in task.subtasks:
                if subtask.status != SubtaskStatus.PENDING or subtask.start_time is None:
                    continue

                reading = classifier.classify(subtask.start_time, subtask.status, now)
                if reading.kind != SLAKind.OVERDUE:
                    continue

                try:
                    change = await self._transitions.transition(TransitionRequest(
                        task_id=task.id,
                        subtask_id=subtask.id,
                        new_status=SubtaskStatus.OVERDUE,
                        actor=SYSTEM_ACTOR,
                        expected_status=SubtaskStatus.PENDING
                    ))
                except (DomainException, ResourceNotFoundException) as e:
                    logger.info(
                        "Skipped automatic overdue promotion",
                        extra={"task_id": task.id, "subtask_id": subtask.id, "reason": e.message}
                    )
                    continue

                subtask.apply_status(change.new_status, change.changed_at)
                task.status = change.task_status
                promoted.append(change)
                logger.warning(
                    "Subtask promoted to overdue",
                    extra={"task_id": task.id, "subtask_id": subtask.id,
                           "overdue_minutes": reading.offset_minutes}
                )

        return promoted


class EscalationScheduler:
    """
    Drives the repeating overdue alert cadence.

    One timer per task with at least one overdue subtask. The persisted
    ``next_alert_at`` is authoritative, so the cadence survives restarts.
    """

    def __init__(
        self,
        timer_store: IEscalationTimerStore,
        dispatcher: IAlertDispatcher,
        config_provider: IFinOpsConfigProvider,
        activity_log: Optional[IActivityLog] = None
    ):
        self._store = timer_store
        self._dispatcher = dispatcher
        self._config_provider = config_provider
        self._activity_log = activity_log

    async def reconcile(self, tasks: List[Task], now: datetime) -> Dict[str, EscalationTimer]:
        """
        Create timers for newly overdue tasks and drop timers for recovered ones.

        Tasks missing from the snapshot lose their timer as well.
        """
        config = self._config_provider.get_config()
        timers = {t.task_id: t for t in await self._store.list_timers()}
        overdue_ids = {task.id for task in tasks if task.has_overdue}

        for task_id in sorted(overdue_ids - timers.keys()):
            timer = EscalationTimer.start(task_id, now, config.escalation_interval)
            await self._store.persist(timer)
            timers[task_id] = timer
            logger.info(
                "Escalation timer started",
                extra={"task_id": task_id, "next_alert_at": timer.next_alert_at.isoformat()}
            )

        for task_id in sorted(timers.keys() - overdue_ids):
            await self._store.delete(task_id)
            del timers[task_id]
            logger.info("Escalation timer cleared", extra={"task_id": task_id})

        return timers

    async def fire_due(
        self,
        tasks: List[Task],
        now: datetime,
        timers: Optional[Dict[str, EscalationTimer]] = None
    ) -> int:
        """
        Dispatch alerts for every task whose timer has elapsed.

        Each overdue subtask gets one alert; the timer is then pushed one
        interval forward whether or not delivery succeeded.

        Returns:
            Number of alerts delivered
        """
        config = self._config_provider.get_config()
        if timers is None:
            timers = {t.task_id: t for t in await self._store.list_timers()}

        delivered = 0
        for task in tasks:
            timer = timers.get(task.id)
            if timer is None or not timer.is_due(now):
                continue

            for subtask in task.overdue_subtasks:
                if await self._dispatch(config, task, subtask, now):
                    delivered += 1

            timer.interval = config.escalation_interval
            timer.advance(now)
            await self._store.persist(timer)

        return delivered

    async def clear(self, task_id: str) -> None:
        """Drop a task's timer so its next overdue period starts a fresh interval."""
        await self._store.delete(task_id)

    async def countdowns(self, now: datetime) -> List[Tuple[EscalationTimer, int]]:
        """Timers with seconds remaining, soonest first."""
        timers = sorted(await self._store.list_timers(), key=lambda t: t.next_alert_at)
        return [(timer, timer.seconds_remaining(now)) for timer in timers]

    async def _dispatch(self, config: FinOpsConfig, task: Task, subtask: Subtask, now: datetime) -> bool:
        message = config.build_alert_message(subtask.name, task.name, task.client.name)
        try:
            await self._dispatcher.dispatch_alert(
                task.id, subtask.id, AlertType.SLA_OVERDUE, message, task.alert_recipients
            )
        except DispatchFailureException as e:
            logger.error(
                "Overdue alert dispatch failed",
                extra={"task_id": task.id, "subtask_id": subtask.id, "error": str(e)}
            )
            await self._log(ActivityAction.ALERT_FAILED, task, subtask, f"{message} ({e.message})", now)
            return False

        await self._log(ActivityAction.ALERT_SENT, task, subtask, message, now)
        return True

    async def _log(self, action: ActivityAction, task: Task, subtask: Subtask, details: str, now: datetime) -> None:
        if self._activity_log is None:
            return
        await self._activity_log.log(ActivityEntry(
            action=action.value,
            task_id=task.id,
            subtask_id=subtask.id,
            actor=SYSTEM_ACTOR,
            details=details,
            created_at=now
        ))


@dataclass
class CycleResult:
    """Summary of one monitoring cycle."""
    started_at: datetime
    tasks_evaluated: int = 0
    runs_started: List[str] = field(default_factory=list)
    promoted: List[StatusChange] = field(default_factory=list)
    alerts_dispatched: int = 0
    active_timers: int = 0
    skipped: bool = False


class FinOpsMonitor:
    """
    Runs the single coordinated monitoring tick.

    fetch -> filter to today's active tasks -> start today's runs ->
    auto-promotion sweep -> escalation reconcile -> fire due alerts.
    """

    def __init__(
        self,
        task_repository: ITaskRepository,
        transitions: StatusTransitionService,
        sweep: AutoPromotionSweep,
        escalation: EscalationScheduler,
        config_provider: IFinOpsConfigProvider,
        clock: Clock = local_now
    ):
        self._task_repo = task_repository
        self._transitions = transitions
        self._sweep = sweep
        self._escalation = escalation
        self._config_provider = config_provider
        self._clock = clock

    async def active_tasks(self, on: date) -> List[Task]:
        """Tasks flagged active whose recurrence schedules them on ``on``."""
        evaluator = ScheduleEvaluator(self._config_provider.get_config().monthly_rule)
        tasks = await self._task_repo.fetch_tasks(on)
        return [t for t in tasks if t.is_active and evaluator.is_active_on(t, on)]

    async def run_cycle(self) -> CycleResult:
        """
        Evaluate all active tasks once.

        The first cycle of each scheduled day starts the task's run: its
        subtasks go back to pending and any timer left from the previous run
        is dropped. A fetch failure skips the cycle without touching
        escalation timers.
        """
        now = self._clock()
        result = CycleResult(started_at=now)

        try:
            tasks = await self.active_tasks(now.date())
        except FetchFailureException as e:
            logger.warning(
                "Task fetch failed, skipping monitoring cycle",
                extra={"error": e.message}
            )
            result.skipped = True
            return result

        with log_latency(logger, "finops_monitoring_cycle", tasks=len(tasks)):
            result.tasks_evaluated = len(tasks)
            result.runs_started = await self._start_runs(tasks, now.date())
            result.promoted = await self._sweep.run(tasks, now)
            timers = await self._escalation.reconcile(tasks, now)
            result.alerts_dispatched = await self._escalation.fire_due(tasks, now, timers)
            result.active_timers = len(timers)
            self._transitions.retain_parked(tasks)

        return result

    async def _start_runs(self, tasks: List[Task], on: date) -> List[str]:
        """Reset tasks whose run for ``on`` has not started; the snapshot is updated in place."""
        started = []
        for i, task in enumerate(tasks):
            if not task.needs_run(on):
                continue
            fresh = await self._transitions.start_run(task.id, on)
            if fresh is None:
                continue
            await self._escalation.clear(task.id)
            tasks[i] = fresh
            started.append(task.id)
        return started
