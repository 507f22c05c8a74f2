"""
Subtask Status State Machine
============================

Legal subtask transitions:

    pending ──> in_progress ──> completed
       │             │
       ├──> overdue ─┼──> (any, reason required)
       └──> delayed ─┘    (entering delayed requires a reason)

Every state may be revisited. Two transitions carry obligations:

- entering ``delayed`` requires a delay reason from the delay taxonomy;
- leaving ``overdue`` requires an overdue reason from the overdue taxonomy
  (``other`` additionally requires free text).

Nothing moves on a day the parent task is not scheduled.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from config import OTHER_REASON, SubtaskStatus
from core.exceptions import (
    InvalidReasonException,
    MissingReasonException,
    NotScheduledTodayException,
)
from finops.domain.entities import OverdueReasonRecord, StatusChange, Subtask, Task
from finops.domain.value_objects import FinOpsConfig, ScheduleEvaluator


@dataclass(frozen=True)
class TransitionRequest:
    """A request to move one subtask to a new status."""
    task_id: str
    subtask_id: str
    new_status: SubtaskStatus
    actor: str
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None
    overdue_reason: Optional[str] = None
    overdue_reason_text: Optional[str] = None
    expected_status: Optional[SubtaskStatus] = None

    @property
    def key(self) -> tuple:
        return (self.task_id, self.subtask_id)


class SubtaskStateMachine:
    """
    Validates and applies subtask transitions.

    Stateless apart from its configuration; the caller provides the task
    snapshot, today's date and any previously captured overdue reason.
    """

    def __init__(self, config: FinOpsConfig, evaluator: Optional[ScheduleEvaluator] = None):
        self._config = config
        self._evaluator = evaluator or ScheduleEvaluator(config.monthly_rule)

    def check_scheduled(self, task: Task, today: date) -> None:
        if not self._evaluator.is_active_on(task, today):
            raise NotScheduledTodayException(task.id, today.isoformat())

    def validate_delay_reason(self, task_id: str, subtask_id: str, reason: Optional[str]) -> str:
        if not reason or not reason.strip():
            raise MissingReasonException(
                task_id, subtask_id, "delay_reason", self._config.delay_reasons
            )
        reason = reason.strip()
        if reason not in self._config.delay_reasons:
            raise InvalidReasonException(reason, self._config.delay_reasons)
        return reason

    def validate_overdue_reason(self, reason: str, reason_text: Optional[str]) -> str:
        """Check an overdue reason against the taxonomy; returns the normalized key."""
        reason = (reason or "").strip()
        if reason not in self._config.overdue_reasons:
            raise InvalidReasonException(reason, self._config.overdue_reasons)
        if reason == OTHER_REASON and not (reason_text and reason_text.strip()):
            raise InvalidReasonException(
                reason,
                self._config.overdue_reasons,
                "Please specify the reason when selecting 'other'"
            )
        return reason

    def requires_overdue_reason(self, subtask: Subtask, request: TransitionRequest) -> bool:
        return (
            subtask.status == SubtaskStatus.OVERDUE
            and request.new_status != SubtaskStatus.OVERDUE
        )

    def check(
        self,
        task: Task,
        subtask: Subtask,
        request: TransitionRequest,
        today: date,
        captured_reason: Optional[OverdueReasonRecord] = None
    ) -> None:
        """
        Validate ``request`` against the current snapshot.

        Raises:
            NotScheduledTodayException: task not active today
            MissingReasonException: delayed without reason, or overdue exit
                without inline or captured reason
            InvalidReasonException: reason outside the taxonomy
        """
        self.check_scheduled(task, today)

        if request.new_status == subtask.status:
            return

        if request.new_status == SubtaskStatus.DELAYED:
            self.validate_delay_reason(task.id, subtask.id, request.delay_reason)

        if self.requires_overdue_reason(subtask, request):
            if request.overdue_reason:
                self.validate_overdue_reason(request.overdue_reason, request.overdue_reason_text)
            elif captured_reason is None or captured_reason.is_consumed:
                raise MissingReasonException(
                    task.id, subtask.id, "overdue_reason", self._config.overdue_reasons
                )

    def apply(
        self,
        task: Task,
        subtask: Subtask,
        request: TransitionRequest,
        now: datetime,
        overdue_reason: Optional[str] = None
    ) -> StatusChange:
        """Mutate the snapshot and return the resulting change. Call ``check`` first."""
        previous = subtask.status
        if request.new_status != previous:
            subtask.apply_status(
                request.new_status,
                now,
                delay_reason=request.delay_reason.strip() if request.delay_reason else None,
                delay_notes=request.delay_notes
            )
            task.status = task.aggregate_status()

        return StatusChange(
            task_id=task.id,
            subtask_id=subtask.id,
            previous_status=previous,
            new_status=subtask.status,
            actor=request.actor,
            changed_at=now,
            task_status=task.status,
            delay_reason=subtask.delay_reason,
            delay_notes=subtask.delay_notes,
            overdue_reason=overdue_reason
        )
