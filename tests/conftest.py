# tests/conftest.py

from __future__ import annotations

import pytest

from finops.application import (
    AutoPromotionSweep,
    EscalationScheduler,
    FinOpsMonitor,
    StatusTransitionService,
    TransitionCoordinator,
)
from finops.domain import FinOpsConfig

from .builders import at, make_task
from .fakes import (
    FakeActivityLog,
    FakeAlertDispatcher,
    FakeClock,
    FakeOverdueReasonRepository,
    FakeTaskRepository,
    FakeTimerStore,
    StaticConfigProvider,
)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(at(9, 5))


@pytest.fixture()
def config_provider() -> StaticConfigProvider:
    return StaticConfigProvider(FinOpsConfig())


@pytest.fixture()
def task_repo() -> FakeTaskRepository:
    return FakeTaskRepository([make_task()])


@pytest.fixture()
def reason_repo() -> FakeOverdueReasonRepository:
    return FakeOverdueReasonRepository()


@pytest.fixture()
def timer_store() -> FakeTimerStore:
    return FakeTimerStore()


@pytest.fixture()
def activity_log() -> FakeActivityLog:
    return FakeActivityLog()


@pytest.fixture()
def dispatcher() -> FakeAlertDispatcher:
    return FakeAlertDispatcher()


@pytest.fixture()
def coordinator() -> TransitionCoordinator:
    return TransitionCoordinator()


@pytest.fixture()
def transitions(
    task_repo, reason_repo, activity_log, config_provider, coordinator, dispatcher, clock
) -> StatusTransitionService:
    return StatusTransitionService(
        task_repo, reason_repo, activity_log, config_provider, coordinator,
        notifier=dispatcher, clock=clock,
    )


@pytest.fixture()
def sweep(transitions, config_provider) -> AutoPromotionSweep:
    return AutoPromotionSweep(transitions, config_provider)


@pytest.fixture()
def escalation(timer_store, dispatcher, config_provider, activity_log) -> EscalationScheduler:
    return EscalationScheduler(timer_store, dispatcher, config_provider, activity_log)


@pytest.fixture()
def monitor(task_repo, transitions, sweep, escalation, config_provider, clock) -> FinOpsMonitor:
    return FinOpsMonitor(task_repo, transitions, sweep, escalation, config_provider, clock)
