"""
FinOps Infrastructure Models
============================

SQLAlchemy ORM models for the FinOps module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import date, datetime, time, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Time, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from infrastructure.database import Base
from config import SubtaskStatus, TaskStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskModel(Base):
    """
    Database model for Task entity.

    Maps to the 'finops_tasks' table. People are stored as JSON lists of
    ``{"id", "name", "email"}`` objects.
    """
    __tablename__ = "finops_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_name: Mapped[str] = mapped_column(String(255), nullable=False)

    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)

    assigned_to: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reporting_managers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    escalation_managers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Recurrence
    duration: Mapped[str] = mapped_column(String(20), nullable=False)
    weekly_days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    # Day the current run was started by the monitoring cycle
    last_run: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    subtasks: Mapped[List["SubtaskModel"]] = relationship(
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="SubtaskModel.position",
        lazy="selectin",
    )


class SubtaskModel(Base):
    """
    Database model for Subtask entity.

    Maps to the 'finops_subtasks' table. Subtask ids are unique per task.
    """
    __tablename__ = "finops_subtasks"

    task_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("finops_tasks.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubtaskStatus.PENDING.value)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delay_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    delay_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    task: Mapped[TaskModel] = relationship(back_populates="subtasks")


class OverdueReasonModel(Base):
    """
    Database model for overdue reasons.

    Maps to the 'finops_overdue_reasons' table.
    """
    __tablename__ = "finops_overdue_reasons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subtask_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    reason_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EscalationTimerModel(Base):
    """
    Database model for escalation timers.

    Maps to the 'finops_escalation_timers' table, one row per task.
    """
    __tablename__ = "finops_escalation_timers"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    next_alert_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=900)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ActivityLogModel(Base):
    """
    Database model for the activity log.

    Maps to the 'finops_activity_log' table.
    """
    __tablename__ = "finops_activity_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subtask_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
