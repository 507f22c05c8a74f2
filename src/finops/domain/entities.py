"""
FinOps Domain Entities
======================

Pure Python domain entities for FinOps subtask monitoring.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from config import SubtaskStatus, TaskStatus
from finops.domain.value_objects import ClientRef, PersonRef, Recurrence


@dataclass
class Subtask:
    """
    A recurring operational step of a task with a daily start time.

    ``delay_reason`` is set if and only if the status is delayed.
    """

    id: str
    name: str
    position: int = 0
    start_time: Optional[time] = None
    status: SubtaskStatus = SubtaskStatus.PENDING

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate subtask on initialization."""
        self.status = SubtaskStatus(self.status)
        if (self.status == SubtaskStatus.DELAYED) != bool(self.delay_reason):
            raise ValueError("delay_reason must be set if and only if status is delayed")

    @property
    def is_overdue(self) -> bool:
        return self.status == SubtaskStatus.OVERDUE

    def apply_status(
        self,
        status: SubtaskStatus,
        at: datetime,
        delay_reason: Optional[str] = None,
        delay_notes: Optional[str] = None
    ) -> None:
        """Move to ``status``, keeping timestamps and delay fields consistent."""
        if status == SubtaskStatus.IN_PROGRESS and self.started_at is None:
            self.started_at = at
        if status == SubtaskStatus.COMPLETED:
            self.completed_at = at

        if status == SubtaskStatus.DELAYED:
            self.delay_reason = delay_reason
            self.delay_notes = delay_notes
        else:
            self.delay_reason = None
            self.delay_notes = None

        self.status = status
        self.updated_at = at

    def reset(self, at: datetime) -> None:
        """Back to pending for a new run, dropping the previous run's progress."""
        self.status = SubtaskStatus.PENDING
        self.started_at = None
        self.completed_at = None
        self.delay_reason = None
        self.delay_notes = None
        self.updated_at = at


@dataclass
class Task:
    """
    Task entity: a recurring FinOps job for a client made of ordered subtasks.
    """

    id: str
    name: str
    client: ClientRef
    recurrence: Recurrence
    is_active: bool = True

    assignees: List[PersonRef] = field(default_factory=list)
    reporting_managers: List[PersonRef] = field(default_factory=list)
    escalation_managers: List[PersonRef] = field(default_factory=list)
    subtasks: List[Subtask] = field(default_factory=list)

    status: TaskStatus = TaskStatus.PENDING
    last_run: Optional[date] = None

    def __post_init__(self):
        self.subtasks.sort(key=lambda s: s.position)

    def needs_run(self, on: date) -> bool:
        """True until the task's run for ``on`` has been started."""
        return self.last_run is None or self.last_run < on

    def start_run(self, on: date, at: datetime) -> None:
        """Reset every subtask to pending and stamp ``on`` as the last run."""
        for subtask in self.subtasks:
            subtask.reset(at)
        self.status = TaskStatus.PENDING
        self.last_run = on

    def keep_progress_from(self, stored: "Task") -> None:
        """
        Carry run progress over from the stored version of this task.

        Subtasks matched by id keep their status, timestamps and delay
        fields; only new subtasks take the values they were defined with.
        Status changes go through the state machine, never through a
        redefinition of the task.
        """
        for subtask in self.subtasks:
            previous = stored.get_subtask(subtask.id)
            if previous is None:
                continue
            subtask.status = previous.status
            subtask.started_at = previous.started_at
            subtask.completed_at = previous.completed_at
            subtask.delay_reason = previous.delay_reason
            subtask.delay_notes = previous.delay_notes
            subtask.updated_at = previous.updated_at
        self.last_run = stored.last_run
        self.status = self.aggregate_status()

    def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    @property
    def overdue_subtasks(self) -> List[Subtask]:
        return [s for s in self.subtasks if s.is_overdue]

    @property
    def has_overdue(self) -> bool:
        return any(s.is_overdue for s in self.subtasks)

    @property
    def alert_recipients(self) -> List[PersonRef]:
        """Reporting managers followed by escalation managers, without duplicates."""
        recipients: List[PersonRef] = []
        for person in self.reporting_managers + self.escalation_managers:
            if person not in recipients:
                recipients.append(person)
        return recipients

    def aggregate_status(self) -> TaskStatus:
        """
        Derive the task status from its subtasks.

        Precedence: overdue, delayed, completed (all done), in_progress
        (some done), pending.
        """
        statuses = [s.status for s in self.subtasks]
        if SubtaskStatus.OVERDUE in statuses:
            return TaskStatus.OVERDUE
        if SubtaskStatus.DELAYED in statuses:
            return TaskStatus.DELAYED
        if statuses and all(s == SubtaskStatus.COMPLETED for s in statuses):
            return TaskStatus.COMPLETED
        if SubtaskStatus.COMPLETED in statuses:
            return TaskStatus.IN_PROGRESS
        return TaskStatus.PENDING


@dataclass
class EscalationTimer:
    """
    Per-task escalation clock.

    Exists while the task has at least one overdue subtask; persisted so a
    restart resumes from ``next_alert_at`` instead of a full interval.
    """

    task_id: str
    next_alert_at: datetime
    interval: timedelta = timedelta(minutes=15)

    @classmethod
    def start(cls, task_id: str, now: datetime, interval: timedelta) -> "EscalationTimer":
        return cls(task_id=task_id, next_alert_at=now + interval, interval=interval)

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_alert_at

    def seconds_remaining(self, now: datetime) -> int:
        """Countdown for display, one-second resolution."""
        return max(0, math.ceil((self.next_alert_at - now).total_seconds()))

    def advance(self, now: datetime) -> None:
        self.next_alert_at = now + self.interval


@dataclass
class OverdueReasonRecord:
    """
    Reason captured when a subtask leaves overdue.

    An unconsumed record authorizes one ``overdue -> X`` transition.
    """

    task_id: str
    subtask_id: str
    reason: str
    actor: str
    recorded_at: datetime
    reason_text: Optional[str] = None
    id: Optional[str] = None
    consumed_at: Optional[datetime] = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    @property
    def description(self) -> str:
        if self.reason_text:
            return f"{self.reason}: {self.reason_text}"
        return self.reason


@dataclass
class StatusChange:
    """Outcome of a successful subtask transition."""

    task_id: str
    subtask_id: str
    previous_status: SubtaskStatus
    new_status: SubtaskStatus
    actor: str
    changed_at: datetime
    task_status: TaskStatus
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None
    overdue_reason: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.previous_status == self.new_status

    def describe(self, subtask_name: str) -> str:
        details = f'Subtask "{subtask_name}" status changed from {self.previous_status.value} to {self.new_status.value}'
        if self.delay_reason:
            details += f". Delay reason: {self.delay_reason}"
        if self.overdue_reason:
            details += f". Overdue reason: {self.overdue_reason}"
        return details


@dataclass
class ActivityEntry:
    """Audit trail entry."""

    action: str
    task_id: str
    actor: str
    details: str
    created_at: datetime
    subtask_id: Optional[str] = None
