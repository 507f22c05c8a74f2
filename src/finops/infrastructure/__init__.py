"""
FinOps Infrastructure Layer
===========================

Infrastructure implementations for FinOps monitoring:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: External service integrations (alert webhook, config watcher, scheduler)
"""

from finops.infrastructure.models import (
    ActivityLogModel,
    EscalationTimerModel,
    OverdueReasonModel,
    SubtaskModel,
    TaskModel,
)
from finops.infrastructure.repositories import (
    SQLAlchemyActivityLog,
    SQLAlchemyEscalationTimerStore,
    SQLAlchemyOverdueReasonRepository,
    SQLAlchemyTaskRepository,
)
from finops.infrastructure.external import (
    AlertWebhookClient,
    CircuitBreaker,
    FinOpsConfigManager,
    MonitorScheduler,
)

__all__ = [
    "ActivityLogModel",
    "EscalationTimerModel",
    "OverdueReasonModel",
    "SubtaskModel",
    "TaskModel",
    "SQLAlchemyActivityLog",
    "SQLAlchemyEscalationTimerStore",
    "SQLAlchemyOverdueReasonRepository",
    "SQLAlchemyTaskRepository",
    "AlertWebhookClient",
    "CircuitBreaker",
    "FinOpsConfigManager",
    "MonitorScheduler",
]
