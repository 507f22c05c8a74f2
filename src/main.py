"""
FinOps SLA Engine - Main Application
====================================

Monitoring and escalation service for recurring FinOps tasks.

Modules:
- FinOps Monitoring: Subtask SLA classification, status transitions,
  automatic overdue promotion and repeating escalation alerts

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, alert webhook, config watcher, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration and Core
from config import settings

# Infrastructure
from infrastructure.database import (
    close_database, create_tables, get_session_context, init_database,
)

# FinOps Module
from finops.application import TransitionCoordinator
from finops.infrastructure import (
    AlertWebhookClient, FinOpsConfigManager, MonitorScheduler,
)
from finops.interfaces import build_monitor, finops_router

# Shared
from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)

# Global service instances
monitor_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database
    3. Create database tables
    4. Load FinOps configuration and watch it for changes
    5. Create the transition coordinator and alert client
    6. Start the monitoring scheduler

    SHUTDOWN:
    1. Stop monitoring scheduler
    2. Stop config watcher
    3. Close alert client
    4. Close database connections
    """
    global monitor_scheduler

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting FinOps SLA Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment,
        "timezone": settings.timezone
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(
            "Database not available - running in degraded mode",
            extra={"error": str(e)}
        )

    logger.info("Loading FinOps configuration")
    config_manager = FinOpsConfigManager()
    config_manager.load(settings.finops_config_path)
    config_manager.start_watching()

    coordinator = TransitionCoordinator()
    alert_client = AlertWebhookClient()

    app.state.settings = settings
    app.state.finops_config = config_manager
    app.state.coordinator = coordinator
    app.state.alert_client = alert_client

    async def monitoring_job():
        """Background monitoring cycle."""
        async with get_session_context() as session:
            monitor = build_monitor(session, config_manager, coordinator, alert_client)
            await monitor.run_cycle()

    if settings.sweep_interval_seconds > 0:
        monitor_scheduler = MonitorScheduler(interval_seconds=settings.sweep_interval_seconds)
        await monitor_scheduler.start(monitoring_job)
    else:
        logger.info("Monitoring scheduler disabled")

    logger.info("FinOps SLA Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down FinOps SLA Engine")

    if monitor_scheduler:
        await monitor_scheduler.stop()
        monitor_scheduler = None

    config_manager.stop_watching()
    await alert_client.close()
    await close_database()

    logger.info("FinOps SLA Engine shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="FinOps SLA Engine API",
    description="""
    ## FinOps Task Monitoring and Escalation

    Tracks recurring FinOps tasks made of ordered subtasks, each with a
    daily start time, and escalates when they run late.

    ---

    ### Endpoints

    - `POST /finops/tasks` - Ingest tasks (idempotent upsert)
    - `GET /finops/tasks?date=YYYY-MM-DD` - Tasks active on a date with SLA annotations
    - `GET /finops/tasks/{id}` - One task with SLA annotations
    - `PUT /finops/tasks/{id}/subtasks/{sid}/status` - Change a subtask's status
    - `POST /finops/tasks/{id}/subtasks/{sid}/overdue-reason` - Record an overdue reason
    - `GET /finops/tasks/{id}/activity` - Activity log
    - `GET /finops/escalations` - Escalation countdowns
    - `POST /finops/monitor/run` - Run a monitoring cycle now

    ### Background monitoring

    Every 30 seconds (configurable) pending subtasks past their start time
    are promoted to `overdue`, and every task with an overdue subtask alerts
    its reporting and escalation managers every 15 minutes until resolved.

    ### Configuration

    `finops_config.yaml` (hot-reloaded): escalation interval, SLA warning
    window, monthly recurrence rule, delay and overdue reason taxonomies,
    alert message template.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
register_exception_handlers(app)

# === Include Module Routers ===
app.include_router(finops_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "finops_config": "loaded",
                        "monitor_scheduler": "running",
                        "alert_webhook": "configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - FinOps configuration status
    - Scheduler state
    - Alert webhook configuration
    """
    checks = {
        "finops_config": "loaded" if getattr(request.app.state, "finops_config", None) else "not_loaded",
        "monitor_scheduler": "running" if monitor_scheduler and monitor_scheduler.is_running else "stopped",
        "alert_webhook": "configured" if settings.alert_webhook_url else "not_configured"
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "FinOps SLA Engine",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "finops": {
                "prefix": "/finops",
                "endpoints": [
                    "POST /finops/tasks - Ingest task batch",
                    "GET /finops/tasks - Tasks active on a date",
                    "GET /finops/tasks/{id} - Task SLA status",
                    "PUT /finops/tasks/{id}/subtasks/{sid}/status - Change subtask status",
                    "POST /finops/tasks/{id}/subtasks/{sid}/overdue-reason - Record overdue reason",
                    "GET /finops/tasks/{id}/activity - Activity log",
                    "GET /finops/escalations - Escalation countdowns",
                    "POST /finops/monitor/run - Run monitoring cycle"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
