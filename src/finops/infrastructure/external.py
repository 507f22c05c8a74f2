"""
FinOps External Service Integrations
====================================

External services for FinOps monitoring:
- Alert webhook client
- YAML config file watcher
- APScheduler for the background monitoring tick
"""

import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config import AlertType, settings
from core import ConfigurationException, DispatchFailureException
from finops.application.services import IAlertDispatcher, IFinOpsConfigProvider
from finops.domain import FinOpsConfig, PersonRef
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for FinOps config file changes."""

    def __init__(self, config_manager: "FinOpsConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Config file changed", extra={"path": str(event.src_path)})
            self.config_manager.reload()


class FinOpsConfigManager(IFinOpsConfigProvider):
    """
    Thread-safe FinOps configuration manager with hot-reload support.

    Uses watchdog to monitor file changes and reload configuration
    without restarting the service. A broken file on reload keeps the
    previous configuration.
    """

    def __init__(self):
        self._config: Optional[FinOpsConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> FinOpsConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: if the file exists but is invalid
        """
        self._path = path
        self._config = self._load_from_file(path)
        return self._config

    def _load_from_file(self, path: Path) -> FinOpsConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("FinOps config file not found, using defaults", extra={"path": str(path)})
            return FinOpsConfig()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return FinOpsConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(f"Invalid FinOps config {path}: {e}") from e

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error("Failed to reload FinOps config", extra={"error": e.message})
            return False

        with self._lock:
            self._config = new_config
        logger.info(
            "FinOps configuration reloaded",
            extra={
                "escalation_interval_minutes": new_config.escalation_interval_minutes,
                "sla_warning_window_minutes": new_config.sla_warning_window_minutes
            }
        )
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skips watching if the file doesn't exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.resolve().parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> FinOpsConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("FinOps configuration not loaded")
            return self._config

    @property
    def config(self) -> FinOpsConfig:
        """Get current configuration."""
        return self.get_config()


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class AlertWebhookClient(IAlertDispatcher):
    """
    Webhook alert dispatcher with a circuit breaker.

    Each alert is a single POST attempt: the escalation cadence is the
    retry loop, so failures are reported and not retried here.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        receiver: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.alert_webhook_url
        self._timeout = timeout_seconds or settings.alert_timeout_seconds
        self._receiver = receiver or settings.alert_receiver
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_payload(
        self,
        task_id: str,
        subtask_id: str,
        alert_type: AlertType,
        message: str,
        recipients: List[PersonRef]
    ) -> Dict[str, Any]:
        return {
            "receiver": self._receiver,
            "alert_type": alert_type.value,
            "title": message,
            "task_id": task_id,
            "subtask_id": subtask_id,
            "user_ids": [p.id for p in recipients if p.id],
            "recipients": [{"id": p.id, "name": p.name, "email": p.email} for p in recipients]
        }

    async def dispatch_alert(
        self,
        task_id: str,
        subtask_id: str,
        alert_type: AlertType,
        message: str,
        recipients: List[PersonRef]
    ) -> None:
        if not self._webhook_url:
            logger.debug(
                "Alert webhook URL not configured, skipping notification",
                extra={"task_id": task_id, "subtask_id": subtask_id, "alert_type": alert_type.value}
            )
            return

        if not self._circuit_breaker.allow_request():
            raise DispatchFailureException(
                "Circuit breaker open",
                {"task_id": task_id, "subtask_id": subtask_id}
            )

        payload = self._build_payload(task_id, subtask_id, alert_type, message, recipients)

        try:
            client = await self._get_client()
            response = await client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise DispatchFailureException(
                f"Webhook request failed: {e}",
                {"task_id": task_id, "subtask_id": subtask_id, "error_type": type(e).__name__}
            ) from e

        if response.is_error:
            self._circuit_breaker.record_failure()
            raise DispatchFailureException(
                f"Webhook returned {response.status_code}",
                {"task_id": task_id, "subtask_id": subtask_id, "status_code": response.status_code}
            )

        self._circuit_breaker.record_success()
        logger.info(
            "Alert dispatched",
            extra={
                "task_id": task_id,
                "subtask_id": subtask_id,
                "alert_type": alert_type.value,
                "recipients": len(recipients)
            }
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class MonitorScheduler:
    """
    Wrapper for APScheduler for the background monitoring tick.

    Manages the lifecycle of the scheduler and jobs. ``max_instances=1``
    keeps a slow cycle from overlapping the next one.
    """

    def __init__(self, interval_seconds: int = 30):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Monitor scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=settings.timezone)

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="finops_monitoring",
            name="FinOps Monitoring Cycle",
            misfire_grace_time=self.interval_seconds,
            coalesce=True,
            max_instances=1,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Monitor scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Monitor scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
