"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="finops-sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/finops",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== FinOps Monitoring ==========
    finops_config_path: Path = Field(
        default=Path("finops_config.yaml"),
        description="Path to FinOps SLA/escalation YAML file"
    )
    sweep_interval_seconds: int = Field(
        default=30,
        description="Seconds between monitoring cycles (0 disables the scheduler)",
        ge=0
    )
    timezone: str = Field(
        default="Asia/Kolkata",
        description="Wall-clock timezone that subtask start times are expressed in"
    )

    # ========== Alert Webhook ==========
    alert_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving overdue alerts and delay notifications"
    )
    alert_receiver: str = Field(
        default="finops",
        description="Receiver name sent with every alert payload"
    )
    alert_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for alert webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class SubtaskStatus(str, Enum):
    """Subtask lifecycle statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELAYED = "delayed"
    OVERDUE = "overdue"


class TaskStatus(str, Enum):
    """Aggregate task status derived from its subtasks."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELAYED = "delayed"
    OVERDUE = "overdue"


class RecurrenceKind(str, Enum):
    """How often a task is scheduled."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Weekday(str, Enum):
    """Days of week, ordered to match ``date.weekday()``."""
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


class MonthlyRule(str, Enum):
    """Interpretation of a monthly recurrence."""
    EXACT_DATE = "exact_date"
    DAY_OF_MONTH = "day_of_month"


class SLAKind(str, Enum):
    """SLA classification of a subtask at a point in time."""
    NONE = "none"
    WARNING = "warning"
    OVERDUE = "overdue"


class AlertType(str, Enum):
    """Alert types sent through the alert dispatcher."""
    SLA_OVERDUE = "sla_overdue"
    DELAY_REPORTED = "delay_reported"


class ActivityAction(str, Enum):
    """Actions written to the activity log."""
    STATUS_CHANGED = "status_changed"
    OVERDUE_REASON_PROVIDED = "overdue_reason_provided"
    ALERT_SENT = "alert_sent"
    ALERT_FAILED = "alert_failed"
    RUN_STARTED = "run_started"


# Actor recorded for transitions issued by the background sweep
SYSTEM_ACTOR = "system"

OTHER_REASON = "other"


# ========== Lists for validation ==========

VALID_SUBTASK_STATUSES = [s.value for s in SubtaskStatus]
VALID_RECURRENCE_KINDS = [k.value for k in RecurrenceKind]
VALID_WEEKDAYS = [d.value for d in Weekday]
MAX_WEEKLY_DAYS = 2

DEFAULT_DELAY_REASONS = [
    "technical_issue",
    "data_unavailable",
    "external_dependency",
    "resource_constraint",
    "process_change",
    OTHER_REASON,
]
DEFAULT_OVERDUE_REASONS = [
    "technical_issue",
    "data_unavailable",
    "external_dependency",
    "resource_constraint",
    "process_change",
    "client_delay",
    "system_downtime",
    "urgent_priority_task",
    OTHER_REASON,
]
