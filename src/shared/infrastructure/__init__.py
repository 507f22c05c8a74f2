"""
Infrastructure Layer
=====================

Low-level technical concerns shared by every module:
- Logging setup
- Latency timing
"""

from shared.infrastructure.logging import (
    get_logger,
    log_latency,
    setup_logging,
)

__all__ = [
    "get_logger",
    "log_latency",
    "setup_logging",
]
