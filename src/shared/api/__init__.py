"""Shared API components (middleware, exception handlers)."""

from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)

__all__ = [
    "CorrelationIDMiddleware",
    "LoggingMiddleware",
    "register_exception_handlers",
]
