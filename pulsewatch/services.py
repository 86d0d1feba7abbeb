"""Wires stores, delivery channels and the engine together.

Shared by the API lifespan and the one-shot CLI commands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .health.orchestrator import HealthCheckOrchestrator
from .health.scheduler import HealthScheduler
from .health.store import CheckStore
from .incidents.lifecycle import IncidentLifecycle
from .incidents.store import IncidentStore
from .notifications.email import SmtpMailer
from .notifications.router import NotificationRouter
from .notifications.store import NotificationStore
from .notifications.subscriptions import SubscriptionService
from .notifications.webhook import WebhookSender

logger = logging.getLogger(__name__)


@dataclass
class Services:
    checks: CheckStore
    incidents: IncidentStore
    notifications: NotificationStore
    webhook: WebhookSender
    router: NotificationRouter
    lifecycle: IncidentLifecycle
    orchestrator: HealthCheckOrchestrator
    scheduler: HealthScheduler
    subscriptions: SubscriptionService

    async def close(self) -> None:
        await self.scheduler.stop()
        self.orchestrator.shutdown()
        await self.webhook.close()
        self.checks.close()
        self.incidents.close()
        self.notifications.close()


def build_services(db_path: Path | str | None = None) -> Services:
    checks = CheckStore(db_path)
    incidents = IncidentStore(db_path)
    notifications = NotificationStore(db_path)

    webhook = WebhookSender()
    router = NotificationRouter(notifications, SmtpMailer(), webhook)
    lifecycle = IncidentLifecycle(incidents, checks, on_resolved=router.notify_resolved)
    orchestrator = HealthCheckOrchestrator(checks, lifecycle, router)
    scheduler = HealthScheduler(orchestrator, checks)
    subscriptions = SubscriptionService(notifications, checks, router)

    logger.info("Services initialised (db=%s)", checks._db_path)
    return Services(
        checks=checks,
        incidents=incidents,
        notifications=notifications,
        webhook=webhook,
        router=router,
        lifecycle=lifecycle,
        orchestrator=orchestrator,
        scheduler=scheduler,
        subscriptions=subscriptions,
    )
