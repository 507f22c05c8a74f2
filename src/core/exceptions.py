"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional, List


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


# ========== Status transition errors ==========

class NotScheduledTodayException(DomainException):
    """Raised when a subtask status change is attempted on a non-active day."""

    def __init__(self, task_id: str, on_date: str):
        self.task_id = task_id
        self.on_date = on_date
        super().__init__(
            f"Task {task_id} is not scheduled on {on_date}",
            {"code": "not_scheduled_today", "task_id": task_id, "date": on_date}
        )


class MissingReasonException(DomainException):
    """
    Raised when a transition needs a reason the caller did not supply.

    ``prompt`` tells the caller which reason to collect ("delay_reason" or
    "overdue_reason"); ``allowed_reasons`` is the taxonomy to offer.
    """

    def __init__(
        self,
        task_id: str,
        subtask_id: str,
        prompt: str,
        allowed_reasons: List[str],
        parked: bool = False
    ):
        self.task_id = task_id
        self.subtask_id = subtask_id
        self.prompt = prompt
        self.allowed_reasons = allowed_reasons
        self.parked = parked
        super().__init__(
            f"A {prompt.replace('_', ' ')} is required for subtask {subtask_id}",
            {
                "code": "missing_reason",
                "task_id": task_id,
                "subtask_id": subtask_id,
                "prompt": prompt,
                "allowed_reasons": allowed_reasons,
                "parked": parked,
            }
        )


class TransitionConflictException(DomainException):
    """Raised when a concurrent change already moved the subtask on."""

    def __init__(
        self,
        task_id: str,
        subtask_id: str,
        expected_status: str,
        actual_status: Optional[str] = None
    ):
        self.task_id = task_id
        self.subtask_id = subtask_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Subtask {subtask_id} is no longer {expected_status}",
            {
                "code": "transition_conflict",
                "task_id": task_id,
                "subtask_id": subtask_id,
                "expected_status": expected_status,
                "actual_status": actual_status,
            }
        )


class InvalidReasonException(ValidationException):
    """Raised when a reason is outside the configured taxonomy."""

    def __init__(self, reason: str, allowed_reasons: List[str], message: Optional[str] = None):
        self.reason = reason
        self.allowed_reasons = allowed_reasons
        super().__init__(
            message or f"Unknown reason '{reason}'",
            {"code": "invalid_reason", "reason": reason, "allowed_reasons": allowed_reasons}
        )


# ========== Collaborator failures ==========

class FetchFailureException(RepositoryException):
    """Raised when the task list cannot be loaded for an evaluation pass."""


class DispatchFailureException(ExternalServiceException):
    """Raised when an alert or notification could not be delivered."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Alert Dispatcher", message, details)
