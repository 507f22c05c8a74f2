"""
FinOps Value Objects
====================

Immutable value objects and stateless calculators for the FinOps domain.

Value objects are defined by their attributes rather than an identity.
The evaluators here are pure and safe to call from any number of readers.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator

from config import (
    MonthlyRule, RecurrenceKind, SLAKind, SubtaskStatus, Weekday,
    DEFAULT_DELAY_REASONS, DEFAULT_OVERDUE_REASONS, OTHER_REASON,
)


@dataclass(frozen=True)
class PersonRef:
    """A person referenced by a task (assignee, reporting or escalation manager)."""
    id: Optional[str]
    name: str
    email: Optional[str] = None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ClientRef:
    """The client owning a task."""
    id: Optional[str]
    name: str


@dataclass(frozen=True)
class Recurrence:
    """Recurrence rule of a task."""
    kind: RecurrenceKind
    effective_from: date
    weekdays: FrozenSet[Weekday] = field(default_factory=frozenset)


@dataclass(frozen=True)
class SLAReading:
    """Result of classifying a subtask against its start time."""
    kind: SLAKind
    offset_minutes: int = 0

    @property
    def message(self) -> str:
        if self.kind == SLAKind.OVERDUE:
            return f"Overdue by {self.offset_minutes} min"
        if self.kind == SLAKind.WARNING:
            return f"SLA Warning - {self.offset_minutes} min remaining"
        return ""


NO_SLA = SLAReading(kind=SLAKind.NONE)


class ScheduleEvaluator:
    """
    Decides whether a task is scheduled on a given calendar date.

    Monthly recurrences match the exact ``effective_from`` date unless the
    evaluator is built with ``MonthlyRule.DAY_OF_MONTH``.
    """

    def __init__(self, monthly_rule: MonthlyRule = MonthlyRule.EXACT_DATE):
        self.monthly_rule = MonthlyRule(monthly_rule)

    def is_active_on(self, task, on: date) -> bool:
        """
        Check whether ``task`` is active on ``on``.

        Args:
            task: A Task entity or a bare Recurrence
            on: Calendar date to evaluate

        Returns:
            True if the recurrence schedules the task on that date
        """
        recurrence: Recurrence = getattr(task, "recurrence", task)

        if recurrence.kind == RecurrenceKind.DAILY:
            return on >= recurrence.effective_from

        if recurrence.kind == RecurrenceKind.WEEKLY:
            if not recurrence.weekdays:
                return False
            return on >= recurrence.effective_from and weekday_of(on) in recurrence.weekdays

        if self.monthly_rule == MonthlyRule.DAY_OF_MONTH:
            if on < recurrence.effective_from:
                return False
            last_day = calendar.monthrange(on.year, on.month)[1]
            return on.day == min(recurrence.effective_from.day, last_day)

        return on == recurrence.effective_from


def weekday_of(on: date) -> Weekday:
    """Map a date to its Weekday enum."""
    return list(Weekday)[on.weekday()]


class SLAClassifier:
    """
    Pure functions for SLA classification of subtasks.

    A subtask breaches its SLA the minute its configured daily start time
    passes while it is still pending. Minutes are floored, never rounded up.
    """

    def __init__(self, warning_window_minutes: int = 15):
        self.warning_window_minutes = warning_window_minutes

    @staticmethod
    def minutes_since_start(start_time: time, now: datetime) -> int:
        """Whole minutes from today's start time to ``now`` (negative before)."""
        started = datetime.combine(now.date(), start_time, tzinfo=now.tzinfo)
        return (now - started) // timedelta(minutes=1)

    def classify(
        self,
        start_time: Optional[time],
        status: SubtaskStatus,
        now: datetime
    ) -> SLAReading:
        """
        Classify a subtask.

        Args:
            start_time: Configured daily start time, None if unset
            status: Current subtask status
            now: Current wall-clock time (its date is "today")

        Returns:
            SLAReading with kind none, warning or overdue
        """
        if status == SubtaskStatus.COMPLETED or start_time is None:
            return NO_SLA

        delta = self.minutes_since_start(start_time, now)

        if delta > 0 and status in (SubtaskStatus.PENDING, SubtaskStatus.OVERDUE):
            return SLAReading(kind=SLAKind.OVERDUE, offset_minutes=delta)
        if -self.warning_window_minutes <= delta <= 0 and status == SubtaskStatus.PENDING:
            return SLAReading(kind=SLAKind.WARNING, offset_minutes=abs(delta))
        return NO_SLA

    def time_since_start(self, start_time: Optional[time], now: datetime) -> str:
        """Display label; anything within the warning window reads "need to start"."""
        if start_time is None:
            return "N/A"
        delta = self.minutes_since_start(start_time, now)
        if abs(delta) <= self.warning_window_minutes:
            return "need to start"
        return _format_offset(delta)

    def time_since_start_strict(self, start_time: Optional[time], now: datetime) -> str:
        """Display label without the "need to start" collapse."""
        if start_time is None:
            return ""
        return _format_offset(self.minutes_since_start(start_time, now))


def _format_offset(delta: int) -> str:
    if delta < 0:
        hours, minutes = divmod(abs(delta), 60)
        return f"Starts in {hours}h {minutes}m" if hours > 0 else f"Starts in {minutes}m"
    if delta < 60:
        return f"{delta} min ago"
    hours, minutes = divmod(delta, 60)
    return f"{hours}h {minutes}m ago"


class FinOpsConfig(BaseModel):
    """
    FinOps monitoring configuration loaded from YAML.

    This is a value object - replaced wholesale on reload, never mutated.
    """
    escalation_interval_minutes: int = Field(
        default=15, ge=1,
        description="Minutes between repeated overdue alerts for a task"
    )
    sla_warning_window_minutes: int = Field(
        default=15, ge=0,
        description="Minutes before start time during which a warning applies"
    )
    monthly_rule: MonthlyRule = Field(
        default=MonthlyRule.EXACT_DATE,
        description="How monthly recurrences match calendar dates"
    )
    delay_reasons: List[str] = Field(
        default_factory=lambda: list(DEFAULT_DELAY_REASONS),
        description="Reason taxonomy for entering delayed"
    )
    overdue_reasons: List[str] = Field(
        default_factory=lambda: list(DEFAULT_OVERDUE_REASONS),
        description="Reason taxonomy for leaving overdue"
    )
    alert_message_template: str = Field(
        default=(
            "Kindly take prompt action on the overdue subtask {subtask} "
            "from the task {task} for the client {client}."
        ),
        description="Overdue alert message; placeholders: subtask, task, client"
    )

    @field_validator("delay_reasons", "overdue_reasons")
    @classmethod
    def ensure_other(cls, v: List[str]) -> List[str]:
        """Every taxonomy keeps an ``other`` escape hatch."""
        reasons = [r.strip() for r in v if r and r.strip()]
        if OTHER_REASON not in reasons:
            reasons.append(OTHER_REASON)
        return reasons

    @property
    def escalation_interval(self) -> timedelta:
        return timedelta(minutes=self.escalation_interval_minutes)

    def build_alert_message(self, subtask: str, task: str, client: Optional[str]) -> str:
        return self.alert_message_template.format(
            subtask=subtask,
            task=task,
            client=client or "Unknown Client"
        )
