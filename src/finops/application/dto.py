"""
FinOps Application DTOs
=======================

Data Transfer Objects for the FinOps API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Ingestion is the one place raw records are
coerced: status strings are normalized, unknown values rejected, and people
are resolved into PersonRef values once.
"""

import re
from datetime import date, datetime, time
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config import (
    RecurrenceKind, SubtaskStatus, Weekday, MAX_WEEKLY_DAYS,
)


# ========== Type Aliases for Literals ==========
SubtaskStatusStr = Literal["pending", "in_progress", "completed", "delayed", "overdue"]
TaskStatusStr = Literal["pending", "in_progress", "completed", "delayed", "overdue"]
RecurrenceKindStr = Literal["daily", "weekly", "monthly"]
WeekdayStr = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
SLAKindStr = Literal["none", "warning", "overdue"]

# "Jane Doe (jane@example.com)" as produced by the legacy people pickers
_NAME_WITH_EMAIL = re.compile(r"^\s*(?P<name>.+?)\s*\((?P<email>[^()\s]+@[^()\s]+)\)\s*$")


def _normalize_token(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().lower().replace(" ", "_").replace("-", "_")
    return v


# ========== Request DTOs ==========

class PersonDTO(BaseModel):
    """A person reference; accepts an object or a legacy "Name (email)" string."""
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    email: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def parse_legacy_string(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        match = _NAME_WITH_EMAIL.match(v)
        if match:
            return {"name": match.group("name"), "email": match.group("email")}
        return {"name": v.strip()}

    def to_domain(self):
        from finops.domain import PersonRef
        return PersonRef(id=self.id, name=self.name, email=self.email)


class SubtaskCreateDTO(BaseModel):
    """DTO for a subtask inside an ingested task."""
    id: str = Field(..., min_length=1, description="Unique subtask ID")
    name: str = Field(..., min_length=1, description="Subtask name")
    position: int = Field(default=0, ge=0, description="Order within the task")
    start_time: Optional[time] = Field(None, description="Daily start time (HH:MM)")
    status: SubtaskStatusStr = Field(default="pending", description="Subtask status")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None

    @field_validator("start_time", mode="before")
    @classmethod
    def blank_start_time(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_token(v)

    @model_validator(mode="after")
    def check_delay_reason(self) -> "SubtaskCreateDTO":
        """delay_reason belongs to delayed subtasks only."""
        if self.status == "delayed":
            if not self.delay_reason:
                raise ValueError("delayed subtasks require a delay_reason")
        else:
            self.delay_reason = None
            self.delay_notes = None
        return self

    def to_domain(self):
        from finops.domain import Subtask
        return Subtask(
            id=self.id,
            name=self.name,
            position=self.position,
            start_time=self.start_time,
            status=SubtaskStatus(self.status),
            started_at=self.started_at,
            completed_at=self.completed_at,
            delay_reason=self.delay_reason,
            delay_notes=self.delay_notes
        )


class TaskCreateDTO(BaseModel):
    """DTO for creating or replacing a single task."""
    id: str = Field(..., min_length=1, description="Unique task ID")
    task_name: str = Field(..., min_length=1, description="Task name")
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    assigned_to: List[PersonDTO] = Field(default_factory=list)
    reporting_managers: List[PersonDTO] = Field(default_factory=list)
    escalation_managers: List[PersonDTO] = Field(default_factory=list)
    duration: RecurrenceKindStr = Field(..., description="Recurrence kind")
    weekly_days: List[WeekdayStr] = Field(default_factory=list, description="Weekly task days (max 2)")
    effective_from: date = Field(..., description="First scheduled date")
    is_active: bool = True
    subtasks: List[SubtaskCreateDTO] = Field(default_factory=list)

    @field_validator("duration", mode="before")
    @classmethod
    def normalize_duration(cls, v: Any) -> Any:
        return _normalize_token(v)

    @field_validator("weekly_days", mode="before")
    @classmethod
    def normalize_weekdays(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [_normalize_token(d) for d in v]
        return v

    @field_validator("assigned_to", "reporting_managers", "escalation_managers", mode="before")
    @classmethod
    def single_person(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, dict)):
            return [v]
        return v

    @model_validator(mode="after")
    def check_weekdays(self) -> "TaskCreateDTO":
        if self.duration != "weekly":
            self.weekly_days = []
        elif len(set(self.weekly_days)) > MAX_WEEKLY_DAYS:
            raise ValueError(f"weekly tasks run on at most {MAX_WEEKLY_DAYS} days")
        ids = [s.id for s in self.subtasks]
        if len(ids) != len(set(ids)):
            raise ValueError("subtask ids must be unique within a task")
        return self

    def to_domain(self):
        """Convert to domain entity."""
        from finops.domain import ClientRef, Recurrence, Task

        task = Task(
            id=self.id,
            name=self.task_name,
            client=ClientRef(id=self.client_id, name=self.client_name or "Unknown Client"),
            recurrence=Recurrence(
                kind=RecurrenceKind(self.duration),
                effective_from=self.effective_from,
                weekdays=frozenset(Weekday(d) for d in self.weekly_days)
            ),
            is_active=self.is_active,
            assignees=[p.to_domain() for p in self.assigned_to],
            reporting_managers=[p.to_domain() for p in self.reporting_managers],
            escalation_managers=[p.to_domain() for p in self.escalation_managers],
            subtasks=[s.to_domain() for s in self.subtasks]
        )
        task.status = task.aggregate_status()
        return task


class TaskIngestRequest(BaseModel):
    """Request model for task ingestion."""
    tasks: List[TaskCreateDTO] = Field(..., description="List of tasks to ingest")


class StatusUpdateRequest(BaseModel):
    """Request model for a subtask status change."""
    status: SubtaskStatusStr
    actor: str = Field(..., min_length=1, description="Who is making the change")
    delay_reason: Optional[str] = Field(None, description="Required when status is delayed")
    delay_notes: Optional[str] = None
    overdue_reason: Optional[str] = Field(
        None, description="Reason for leaving overdue, if not recorded beforehand"
    )
    overdue_reason_text: Optional[str] = Field(None, description="Required when overdue_reason is 'other'")
    expected_status: Optional[SubtaskStatusStr] = Field(
        None, description="Status the caller last saw; mismatches are rejected as conflicts"
    )

    @field_validator("status", "expected_status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _normalize_token(v)

    def to_domain(self, task_id: str, subtask_id: str):
        from finops.domain import TransitionRequest
        return TransitionRequest(
            task_id=task_id,
            subtask_id=subtask_id,
            new_status=SubtaskStatus(self.status),
            actor=self.actor,
            delay_reason=self.delay_reason,
            delay_notes=self.delay_notes,
            overdue_reason=self.overdue_reason,
            overdue_reason_text=self.overdue_reason_text,
            expected_status=SubtaskStatus(self.expected_status) if self.expected_status else None
        )


class OverdueReasonRequest(BaseModel):
    """Request model for recording an overdue reason."""
    reason: str = Field(..., min_length=1)
    reason_text: Optional[str] = None
    actor: str = Field(..., min_length=1)


# ========== Response DTOs ==========

class IngestResponse(BaseModel):
    """Response model for task ingestion."""
    created: int = Field(..., description="Number of new tasks created")
    updated: int = Field(..., description="Number of existing tasks replaced")
    failed: int = Field(default=0, description="Number of failed ingestions")
    errors: List[str] = Field(default_factory=list, description="Error messages")


class StatusChangeResponse(BaseModel):
    """Response model for a subtask transition."""
    task_id: str
    subtask_id: str
    previous_status: SubtaskStatusStr
    new_status: SubtaskStatusStr
    task_status: TaskStatusStr
    actor: str
    changed_at: datetime
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None
    overdue_reason: Optional[str] = None

    @classmethod
    def from_domain(cls, change: Any) -> "StatusChangeResponse":
        return cls(
            task_id=change.task_id,
            subtask_id=change.subtask_id,
            previous_status=change.previous_status.value,
            new_status=change.new_status.value,
            task_status=change.task_status.value,
            actor=change.actor,
            changed_at=change.changed_at,
            delay_reason=change.delay_reason,
            delay_notes=change.delay_notes,
            overdue_reason=change.overdue_reason
        )


class OverdueReasonResponse(BaseModel):
    """Response model for a recorded overdue reason."""
    id: Optional[str]
    task_id: str
    subtask_id: str
    reason: str
    reason_text: Optional[str] = None
    actor: str
    recorded_at: datetime
    resumed_transition: Optional[StatusChangeResponse] = Field(
        None, description="Parked transition applied after recording the reason"
    )


class SubtaskSLAResponse(BaseModel):
    """Response model for a subtask with its SLA annotation."""
    id: str
    name: str
    position: int
    start_time: Optional[time]
    status: SubtaskStatusStr
    sla_kind: SLAKindStr
    sla_offset_minutes: int
    sla_message: str
    time_since_start: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delay_reason: Optional[str] = None
    delay_notes: Optional[str] = None


class TaskSLAResponse(BaseModel):
    """Response model for a task with SLA-annotated subtasks."""
    id: str
    task_name: str
    client_name: str
    duration: RecurrenceKindStr
    status: TaskStatusStr
    subtasks: List[SubtaskSLAResponse]
    next_alert_in_seconds: Optional[int] = Field(
        None, description="Countdown to the next escalation alert, if overdue"
    )


class TaskSummary(BaseModel):
    """Summary statistics for the task list."""
    total_tasks: int = 0
    completed_tasks: int = 0
    overdue_tasks: int = 0
    delayed_tasks: int = 0
    total_subtasks: int = 0
    pending_subtasks: int = 0
    in_progress_subtasks: int = 0
    completed_subtasks: int = 0
    delayed_subtasks: int = 0
    overdue_subtasks: int = 0


class TaskListResponse(BaseModel):
    """Response model for tasks active on a date."""
    on_date: date
    tasks: List[TaskSLAResponse]
    summary: TaskSummary


class EscalationResponse(BaseModel):
    """Response model for an escalation timer."""
    task_id: str
    next_alert_at: datetime
    seconds_remaining: int
    interval_minutes: int


class CycleResponse(BaseModel):
    """Response model for a manually triggered monitoring cycle."""
    started_at: datetime
    skipped: bool
    tasks_evaluated: int
    promoted: List[StatusChangeResponse]
    alerts_dispatched: int
    active_timers: int
    runs_started: List[str] = []


class ActivityResponse(BaseModel):
    """Response model for an activity log entry."""
    action: str
    task_id: str
    subtask_id: Optional[str] = None
    actor: str
    details: str
    created_at: datetime
