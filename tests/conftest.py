"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from pulsewatch.errors import DeliveryError
from pulsewatch.health.models import CheckKind, HealthCheck
from pulsewatch.health.orchestrator import HealthCheckOrchestrator
from pulsewatch.health.store import CheckStore
from pulsewatch.incidents.lifecycle import IncidentLifecycle
from pulsewatch.incidents.store import IncidentStore
from pulsewatch.notifications.router import NotificationRouter
from pulsewatch.notifications.store import NotificationStore


class FakeMailer:
    """Records sends instead of talking SMTP."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send(self, to: list[str], subject: str, html: str) -> str:
        if self.fail:
            raise DeliveryError("SMTP send failed: connection refused")
        self.sent.append({"to": list(to), "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"


class FakeWebhook:
    def __init__(self) -> None:
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    async def post(self, url: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise DeliveryError("Webhook returned status code 500: boom")
        self.posts.append((url, payload))


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pulsewatch.db"


@pytest.fixture
def check_store(db_path: Path) -> CheckStore:
    store = CheckStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def incident_store(db_path: Path) -> IncidentStore:
    store = IncidentStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def notification_store(db_path: Path) -> NotificationStore:
    store = NotificationStore(db_path=db_path)
    yield store
    store.close()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def webhook() -> FakeWebhook:
    return FakeWebhook()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def router(notification_store, mailer, webhook, clock) -> NotificationRouter:
    return NotificationRouter(notification_store, mailer, webhook, clock=clock)


@pytest.fixture
def lifecycle(incident_store, check_store, router) -> IncidentLifecycle:
    return IncidentLifecycle(incident_store, check_store, on_resolved=router.notify_resolved)


@pytest.fixture
def orchestrator(check_store, lifecycle, router) -> HealthCheckOrchestrator:
    orch = HealthCheckOrchestrator(check_store, lifecycle, router)
    yield orch
    orch.shutdown()


def make_check(
    name: str = "web", kind: CheckKind = CheckKind.API, **kwargs: Any,
) -> HealthCheck:
    if kind == CheckKind.API:
        kwargs.setdefault("endpoint", "http://localhost/health")
    return HealthCheck(name=name, kind=kind, **kwargs)
