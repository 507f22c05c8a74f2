"""
FinOps Domain Layer
===================

Domain layer for FinOps subtask monitoring.

Contains:
- Entities: Task, Subtask, EscalationTimer, OverdueReasonRecord, StatusChange
- Value Objects: PersonRef, ClientRef, Recurrence, SLAReading, FinOpsConfig
- Domain Services: ScheduleEvaluator, SLAClassifier, SubtaskStateMachine

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from finops.domain.entities import (
    ActivityEntry,
    EscalationTimer,
    OverdueReasonRecord,
    StatusChange,
    Subtask,
    Task,
)
from finops.domain.value_objects import (
    ClientRef,
    FinOpsConfig,
    PersonRef,
    Recurrence,
    ScheduleEvaluator,
    SLAClassifier,
    SLAReading,
    weekday_of,
)
from finops.domain.state_machine import SubtaskStateMachine, TransitionRequest

__all__ = [
    # Entities
    "ActivityEntry",
    "EscalationTimer",
    "OverdueReasonRecord",
    "StatusChange",
    "Subtask",
    "Task",
    # Value Objects & Services
    "ClientRef",
    "FinOpsConfig",
    "PersonRef",
    "Recurrence",
    "ScheduleEvaluator",
    "SLAClassifier",
    "SLAReading",
    "SubtaskStateMachine",
    "TransitionRequest",
    "weekday_of",
]
