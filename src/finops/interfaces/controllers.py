"""
FinOps Controllers (API Routes)
===============================

FastAPI routes for FinOps monitoring endpoints.

Controllers are thin - they delegate to application services. Shared,
process-wide collaborators (config manager, transition coordinator, alert
client, clock) live on ``app.state``; repositories are built per request
from the request's database session.
"""

import time
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import SLAKind, SubtaskStatus, TaskStatus
from core import ApplicationException, ResourceNotFoundException
from infrastructure.database import get_session
from finops.application import (
    ActivityResponse,
    AutoPromotionSweep,
    CycleResponse,
    EscalationResponse,
    EscalationScheduler,
    FinOpsMonitor,
    IActivityLog,
    IAlertDispatcher,
    IEscalationTimerStore,
    IFinOpsConfigProvider,
    IngestResponse,
    IOverdueReasonRepository,
    ITaskRepository,
    OverdueReasonRequest,
    OverdueReasonResponse,
    StatusChangeResponse,
    StatusTransitionService,
    StatusUpdateRequest,
    SubtaskSLAResponse,
    TaskIngestionService,
    TaskIngestRequest,
    TaskListResponse,
    TaskSLAResponse,
    TaskSummary,
    TransitionCoordinator,
    local_now,
)
from finops.application.services import Clock
from finops.domain import SLAClassifier, SLAReading, Task
from finops.infrastructure import (
    SQLAlchemyActivityLog,
    SQLAlchemyEscalationTimerStore,
    SQLAlchemyOverdueReasonRepository,
    SQLAlchemyTaskRepository,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/finops", tags=["FinOps Monitoring"])


# ========== Example payloads for Swagger ==========

TASK_CREATE_EXAMPLE = {
    "id": "TASK-001",
    "task_name": "Daily settlement reconciliation",
    "client_name": "Acme Payments",
    "assigned_to": ["Asha Rao (asha@example.com)"],
    "reporting_managers": [{"name": "Vikram Iyer", "email": "vikram@example.com"}],
    "escalation_managers": ["Meera Nair (meera@example.com)"],
    "duration": "daily",
    "effective_from": "2024-01-01",
    "subtasks": [
        {"id": "1", "name": "Download bank files", "position": 0, "start_time": "09:00"},
        {"id": "2", "name": "Match transactions", "position": 1, "start_time": "10:30"}
    ]
}

MISSING_REASON_EXAMPLE = {
    "detail": "A overdue reason is required for subtask 1",
    "code": "missing_reason",
    "details": {
        "code": "missing_reason",
        "task_id": "TASK-001",
        "subtask_id": "1",
        "prompt": "overdue_reason",
        "allowed_reasons": ["technical_issue", "client_delay", "other"],
        "parked": True
    },
    "correlation_id": "a1b2c3"
}


# ========== Dependencies ==========

def get_config_provider(request: Request) -> IFinOpsConfigProvider:
    """Hot-reloaded FinOps configuration."""
    return request.app.state.finops_config


def get_coordinator(request: Request) -> TransitionCoordinator:
    """Process-wide transition locks and parked requests."""
    return request.app.state.coordinator


def get_alert_dispatcher(request: Request) -> IAlertDispatcher:
    return request.app.state.alert_client


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", local_now)


async def get_task_repository(session: AsyncSession = Depends(get_session)) -> ITaskRepository:
    return SQLAlchemyTaskRepository(session)


async def get_reason_repository(session: AsyncSession = Depends(get_session)) -> IOverdueReasonRepository:
    return SQLAlchemyOverdueReasonRepository(session)


async def get_timer_store(session: AsyncSession = Depends(get_session)) -> IEscalationTimerStore:
    return SQLAlchemyEscalationTimerStore(session)


async def get_activity_log(session: AsyncSession = Depends(get_session)) -> IActivityLog:
    return SQLAlchemyActivityLog(session)


async def get_transition_service(
    background_tasks: BackgroundTasks,
    task_repo: ITaskRepository = Depends(get_task_repository),
    reason_repo: IOverdueReasonRepository = Depends(get_reason_repository),
    activity_log: IActivityLog = Depends(get_activity_log),
    config_provider: IFinOpsConfigProvider = Depends(get_config_provider),
    coordinator: TransitionCoordinator = Depends(get_coordinator),
    dispatcher: IAlertDispatcher = Depends(get_alert_dispatcher),
    clock: Clock = Depends(get_clock)
) -> StatusTransitionService:
    """
    Get status transition service instance.

    Delay notifications run as background tasks, after the request's
    session has committed.
    """
    return StatusTransitionService(
        task_repo, reason_repo, activity_log, config_provider, coordinator,
        notifier=dispatcher, clock=clock, defer=background_tasks.add_task
    )


async def get_ingestion_service(
    task_repo: ITaskRepository = Depends(get_task_repository),
    coordinator: TransitionCoordinator = Depends(get_coordinator)
) -> TaskIngestionService:
    return TaskIngestionService(task_repo, coordinator)


async def get_escalation_scheduler(
    timer_store: IEscalationTimerStore = Depends(get_timer_store),
    dispatcher: IAlertDispatcher = Depends(get_alert_dispatcher),
    config_provider: IFinOpsConfigProvider = Depends(get_config_provider),
    activity_log: IActivityLog = Depends(get_activity_log)
) -> EscalationScheduler:
    return EscalationScheduler(timer_store, dispatcher, config_provider, activity_log)


async def get_monitor(
    task_repo: ITaskRepository = Depends(get_task_repository),
    transitions: StatusTransitionService = Depends(get_transition_service),
    escalation: EscalationScheduler = Depends(get_escalation_scheduler),
    config_provider: IFinOpsConfigProvider = Depends(get_config_provider),
    clock: Clock = Depends(get_clock)
) -> FinOpsMonitor:
    """Get monitoring cycle instance."""
    sweep = AutoPromotionSweep(transitions, config_provider)
    return FinOpsMonitor(task_repo, transitions, sweep, escalation, config_provider, clock)


def build_monitor(
    session: AsyncSession,
    config_provider: IFinOpsConfigProvider,
    coordinator: TransitionCoordinator,
    dispatcher: IAlertDispatcher,
    clock: Clock = local_now
) -> FinOpsMonitor:
    """Wire a monitor outside a request, for the background scheduler job."""
    task_repo = SQLAlchemyTaskRepository(session)
    activity_log = SQLAlchemyActivityLog(session)
    transitions = StatusTransitionService(
        task_repo,
        SQLAlchemyOverdueReasonRepository(session),
        activity_log,
        config_provider,
        coordinator,
        notifier=dispatcher,
        clock=clock
    )
    escalation = EscalationScheduler(
        SQLAlchemyEscalationTimerStore(session), dispatcher, config_provider, activity_log
    )
    sweep = AutoPromotionSweep(transitions, config_provider)
    return FinOpsMonitor(task_repo, transitions, sweep, escalation, config_provider, clock)


# ========== Response builders ==========

def _task_view(
    task: Task,
    classifier: SLAClassifier,
    now: datetime,
    on: date,
    countdown: Optional[int]
) -> TaskSLAResponse:
    """Annotate a task's subtasks; SLA readings only apply to today."""
    is_today = on == now.date()
    subtasks = []
    for s in task.subtasks:
        if is_today:
            reading = classifier.classify(s.start_time, s.status, now)
            since = classifier.time_since_start(s.start_time, now)
        else:
            reading = SLAReading(kind=SLAKind.NONE)
            since = "N/A"
        subtasks.append(SubtaskSLAResponse(
            id=s.id,
            name=s.name,
            position=s.position,
            start_time=s.start_time,
            status=s.status.value,
            sla_kind=reading.kind.value,
            sla_offset_minutes=reading.offset_minutes,
            sla_message=reading.message,
            time_since_start=since,
            started_at=s.started_at,
            completed_at=s.completed_at,
            delay_reason=s.delay_reason,
            delay_notes=s.delay_notes
        ))

    return TaskSLAResponse(
        id=task.id,
        task_name=task.name,
        client_name=task.client.name,
        duration=task.recurrence.kind.value,
        status=task.aggregate_status().value,
        subtasks=subtasks,
        next_alert_in_seconds=countdown
    )


def _summarize(tasks: List[Task]) -> TaskSummary:
    summary = TaskSummary(total_tasks=len(tasks))
    for task in tasks:
        task_status = task.aggregate_status()
        if task_status == TaskStatus.COMPLETED:
            summary.completed_tasks += 1
        elif task_status == TaskStatus.OVERDUE:
            summary.overdue_tasks += 1
        elif task_status == TaskStatus.DELAYED:
            summary.delayed_tasks += 1

        for s in task.subtasks:
            summary.total_subtasks += 1
            if s.status == SubtaskStatus.PENDING:
                summary.pending_subtasks += 1
            elif s.status == SubtaskStatus.IN_PROGRESS:
                summary.in_progress_subtasks += 1
            elif s.status == SubtaskStatus.COMPLETED:
                summary.completed_subtasks += 1
            elif s.status == SubtaskStatus.DELAYED:
                summary.delayed_subtasks += 1
            elif s.status == SubtaskStatus.OVERDUE:
                summary.overdue_subtasks += 1
    return summary


# ========== Route Handlers ==========

@router.post(
    "/tasks",
    response_model=IngestResponse,
    summary="Ingest FinOps tasks",
    description="""
    Create or replace a batch of recurring FinOps tasks.

    **Idempotent**: tasks are identified by `id`; re-sending a task replaces
    its definition and subtask list. Subtasks that already exist keep their
    current status, timestamps and delay fields; status only changes through
    the status endpoint.

    **Recurrence**: `daily`, `weekly` (with at most two `weekly_days`),
    `monthly` (anchored on `effective_from`).

    **People**: objects `{"name", "email"}` or legacy `"Name (email)"` strings.
    """,
    responses={200: {"description": "Tasks ingested", "content": {
        "application/json": {"example": {"created": 1, "updated": 0, "failed": 0, "errors": []}}
    }}},
    openapi_extra={"requestBody": {"content": {"application/json": {
        "example": {"tasks": [TASK_CREATE_EXAMPLE]}
    }}}}
)
async def ingest_tasks(
    request: TaskIngestRequest,
    service: TaskIngestionService = Depends(get_ingestion_service)
):
    start_time = time.perf_counter()

    created = 0
    updated = 0
    failed = 0
    errors = []

    for task_dto in request.tasks:
        try:
            task = task_dto.to_domain()
            if await service.ingest(task):
                created += 1
            else:
                updated += 1
        except (ValueError, ApplicationException) as e:
            failed += 1
            errors.append(f"{task_dto.id}: {e}")
            logger.error("Failed to ingest task", extra={"task_id": task_dto.id, "error": str(e)})

    logger.info(
        "Task ingestion complete",
        extra={
            "tasks_created": created,
            "tasks_updated": updated,
            "tasks_failed": failed,
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000)
        }
    )

    return IngestResponse(created=created, updated=updated, failed=failed, errors=errors)


@router.get(
    "/tasks",
    response_model=TaskListResponse,
    summary="List tasks active on a date",
    description="""
    Tasks whose recurrence schedules them on `date` (default: today), with
    per-subtask SLA annotations, aggregate task status, escalation countdown
    and summary counts.

    **SLA kinds**: `none`, `warning` (start time within the warning window),
    `overdue` (start time passed while pending).
    """
)
async def list_tasks(
    on_date: Optional[date] = Query(None, alias="date", description="Date to evaluate (YYYY-MM-DD)"),
    monitor: FinOpsMonitor = Depends(get_monitor),
    escalation: EscalationScheduler = Depends(get_escalation_scheduler),
    config_provider: IFinOpsConfigProvider = Depends(get_config_provider),
    clock: Clock = Depends(get_clock)
):
    now = clock()
    on = on_date or now.date()
    config = config_provider.get_config()
    classifier = SLAClassifier(config.sla_warning_window_minutes)

    tasks = await monitor.active_tasks(on)
    countdowns = {timer.task_id: seconds for timer, seconds in await escalation.countdowns(now)}

    return TaskListResponse(
        on_date=on,
        tasks=[_task_view(t, classifier, now, on, countdowns.get(t.id)) for t in tasks],
        summary=_summarize(tasks)
    )


@router.get(
    "/tasks/{task_id}",
    response_model=TaskSLAResponse,
    summary="Get a task with SLA annotations",
    responses={404: {"description": "Task not found"}}
)
async def get_task(
    task_id: str,
    task_repo: ITaskRepository = Depends(get_task_repository),
    escalation: EscalationScheduler = Depends(get_escalation_scheduler),
    config_provider: IFinOpsConfigProvider = Depends(get_config_provider),
    clock: Clock = Depends(get_clock)
):
    task = await task_repo.get_task(task_id)
    if task is None:
        raise ResourceNotFoundException("Task", task_id)

    now = clock()
    classifier = SLAClassifier(config_provider.get_config().sla_warning_window_minutes)
    countdowns = {timer.task_id: seconds for timer, seconds in await escalation.countdowns(now)}
    return _task_view(task, classifier, now, now.date(), countdowns.get(task.id))


@router.put(
    "/tasks/{task_id}/subtasks/{subtask_id}/status",
    response_model=StatusChangeResponse,
    summary="Change a subtask's status",
    description="""
    Run a subtask transition through the state machine.

    - `delayed` requires `delay_reason` from the delay taxonomy.
    - Leaving `overdue` requires an overdue reason, either inline
      (`overdue_reason`) or recorded beforehand. Without one the request is
      parked and a `422 missing_reason` is returned; recording the reason
      resumes it.
    - Tasks not scheduled today reject changes with `409 not_scheduled_today`.
    - `expected_status` turns a stale write into `409 transition_conflict`.
    """,
    responses={
        404: {"description": "Task or subtask not found"},
        409: {"description": "Not scheduled today or concurrent change"},
        422: {"description": "Reason required", "content": {
            "application/json": {"example": MISSING_REASON_EXAMPLE}
        }}
    }
)
async def update_subtask_status(
    task_id: str,
    subtask_id: str,
    request: StatusUpdateRequest,
    service: StatusTransitionService = Depends(get_transition_service)
):
    change = await service.transition(request.to_domain(task_id, subtask_id))
    return StatusChangeResponse.from_domain(change)


@router.post(
    "/tasks/{task_id}/subtasks/{subtask_id}/overdue-reason",
    response_model=OverdueReasonResponse,
    summary="Record why an overdue subtask is moving on",
    description="""
    Store an overdue reason for an overdue subtask. If a status change was
    parked waiting for this reason, it is applied and returned as
    `resumed_transition`. Reason `other` requires `reason_text`.
    """,
    responses={404: {"description": "Task or subtask not found"}}
)
async def record_overdue_reason(
    task_id: str,
    subtask_id: str,
    request: OverdueReasonRequest,
    service: StatusTransitionService = Depends(get_transition_service)
):
    record, change = await service.record_overdue_reason(
        task_id, subtask_id, request.reason, request.actor, request.reason_text
    )
    return OverdueReasonResponse(
        id=record.id,
        task_id=record.task_id,
        subtask_id=record.subtask_id,
        reason=record.reason,
        reason_text=record.reason_text,
        actor=record.actor,
        recorded_at=record.recorded_at,
        resumed_transition=StatusChangeResponse.from_domain(change) if change else None
    )


@router.get(
    "/tasks/{task_id}/activity",
    response_model=List[ActivityResponse],
    summary="Activity log for a task"
)
async def get_task_activity(
    task_id: str,
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries"),
    activity_log: IActivityLog = Depends(get_activity_log)
):
    entries = await activity_log.list_for_task(task_id, limit)
    return [
        ActivityResponse(
            action=e.action,
            task_id=e.task_id,
            subtask_id=e.subtask_id,
            actor=e.actor,
            details=e.details,
            created_at=e.created_at
        )
        for e in entries
    ]


@router.get(
    "/escalations",
    response_model=List[EscalationResponse],
    summary="Escalation timers with countdown",
    description="Tasks with overdue subtasks and the seconds until their next alert, soonest first."
)
async def list_escalations(
    escalation: EscalationScheduler = Depends(get_escalation_scheduler),
    clock: Clock = Depends(get_clock)
):
    now = clock()
    return [
        EscalationResponse(
            task_id=timer.task_id,
            next_alert_at=timer.next_alert_at,
            seconds_remaining=seconds,
            interval_minutes=int(timer.interval.total_seconds() // 60)
        )
        for timer, seconds in await escalation.countdowns(now)
    ]


@router.post(
    "/monitor/run",
    response_model=CycleResponse,
    summary="Run one monitoring cycle now",
    description="Start today's runs, auto-promote breached subtasks and fire due escalation alerts immediately."
)
async def run_monitor(monitor: FinOpsMonitor = Depends(get_monitor)):
    result = await monitor.run_cycle()
    return CycleResponse(
        started_at=result.started_at,
        skipped=result.skipped,
        tasks_evaluated=result.tasks_evaluated,
        promoted=[StatusChangeResponse.from_domain(c) for c in result.promoted],
        alerts_dispatched=result.alerts_dispatched,
        active_timers=result.active_timers,
        runs_started=result.runs_started
    )


# Export router for inclusion in main app
finops_router = router
