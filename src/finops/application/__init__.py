"""
FinOps Application Layer
========================

Application layer for FinOps subtask monitoring.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from finops.application.dto import (
    ActivityResponse,
    CycleResponse,
    EscalationResponse,
    IngestResponse,
    OverdueReasonRequest,
    OverdueReasonResponse,
    PersonDTO,
    StatusChangeResponse,
    StatusUpdateRequest,
    SubtaskCreateDTO,
    SubtaskSLAResponse,
    TaskCreateDTO,
    TaskIngestRequest,
    TaskListResponse,
    TaskSLAResponse,
    TaskSummary,
)
from finops.application.services import (
    AutoPromotionSweep,
    CycleResult,
    EscalationScheduler,
    FinOpsMonitor,
    IActivityLog,
    IAlertDispatcher,
    IEscalationTimerStore,
    IFinOpsConfigProvider,
    IOverdueReasonRepository,
    ITaskRepository,
    StatusTransitionService,
    TaskIngestionService,
    TransitionCoordinator,
    local_now,
)

__all__ = [
    # DTOs
    "ActivityResponse",
    "CycleResponse",
    "EscalationResponse",
    "IngestResponse",
    "OverdueReasonRequest",
    "OverdueReasonResponse",
    "PersonDTO",
    "StatusChangeResponse",
    "StatusUpdateRequest",
    "SubtaskCreateDTO",
    "SubtaskSLAResponse",
    "TaskCreateDTO",
    "TaskIngestRequest",
    "TaskListResponse",
    "TaskSLAResponse",
    "TaskSummary",
    # Services
    "AutoPromotionSweep",
    "CycleResult",
    "EscalationScheduler",
    "FinOpsMonitor",
    "StatusTransitionService",
    "TaskIngestionService",
    "TransitionCoordinator",
    "local_now",
    # Repository Interfaces
    "IActivityLog",
    "IAlertDispatcher",
    "IEscalationTimerStore",
    "IFinOpsConfigProvider",
    "IOverdueReasonRepository",
    "ITaskRepository",
]
