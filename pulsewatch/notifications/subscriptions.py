"""Double opt-in email subscriptions."""

from __future__ import annotations

import logging
from typing import Any

from ..config import settings
from ..errors import NotFoundError
from ..health.store import CheckRepository
from . import templates
from .models import NotificationEvent, Subscription, SubscriptionSeverity
from .router import NotificationRouter
from .store import NotificationStore

logger = logging.getLogger(__name__)

ALL_CHECKS = "All health checks"


class SubscriptionService:
    def __init__(
        self,
        store: NotificationStore,
        checks: CheckRepository,
        router: NotificationRouter,
        base_url: str = "",
    ) -> None:
        self.store = store
        self.checks = checks
        self.router = router
        self.base_url = (base_url or settings.base_url).rstrip("/")

    async def create(
        self,
        email: str,
        health_check_id: str | None = None,
        severity: SubscriptionSeverity | str = SubscriptionSeverity.ALL,
    ) -> Subscription:
        """Create (or refresh) a subscription and mail out the verification link."""
        check_name = self._check_name(health_check_id)
        sub = self.store.create_subscription(
            email, health_check_id, SubscriptionSeverity(severity),
        )
        if sub.verified_at is None:
            await self._send(sub, check_name, verification=True)
        return sub

    async def verify(self, token: str) -> Subscription:
        sub = self.store.verify_subscription(token)
        if sub is None:
            raise NotFoundError("Subscription verify token", token)
        logger.info("Subscription %s verified for %s", sub.id, sub.email)
        check_name = self._check_name(sub.health_check_id, strict=False)
        await self._send(sub, check_name, verification=False)
        return sub

    def unsubscribe(self, token: str) -> Subscription:
        sub = self.store.unsubscribe(token)
        if sub is None:
            raise NotFoundError("Subscription unsubscribe token", token)
        logger.info("Subscription %s deactivated for %s", sub.id, sub.email)
        return sub

    def list_by_email(self, email: str) -> list[Subscription]:
        return self.store.find_subscriptions_by_email(email)

    def update(self, subscription_id: str, **changes: Any) -> Subscription:
        return self.store.update_subscription(subscription_id, **changes)

    def delete(self, subscription_id: str) -> None:
        if not self.store.delete_subscription(subscription_id):
            raise NotFoundError("Subscription", subscription_id)

    def _check_name(self, health_check_id: str | None, strict: bool = True) -> str:
        """Display name for the subscribed check. A missing check raises only when strict."""
        if health_check_id is None:
            return ALL_CHECKS
        check = self.checks.find_by_id(health_check_id)
        if check is None:
            if strict:
                raise NotFoundError("Health check", health_check_id)
            logger.warning("Subscription check %s no longer exists", health_check_id)
            return ALL_CHECKS
        return check.name

    async def _send(self, sub: Subscription, check_name: str, verification: bool) -> None:
        unsubscribe_url = f"{self.base_url}/api/subscriptions/unsubscribe/{sub.unsubscribe_token}"
        if verification:
            subject = f"Verify your health check notification subscription for {check_name}"
            html = templates.render(
                "subscription_verify.html",
                subject=subject,
                email=sub.email,
                check_name=check_name,
                verify_url=f"{self.base_url}/api/subscriptions/verify/{sub.verify_token}",
                unsubscribe_url=unsubscribe_url,
                current_date=self.router.now().isoformat(timespec="seconds"),
            )
        else:
            subject = f"Subscription confirmed for {check_name} notifications"
            html = templates.render(
                "subscription_confirm.html",
                subject=subject,
                email=sub.email,
                check_name=check_name,
                unsubscribe_url=unsubscribe_url,
                current_date=self.router.now().isoformat(timespec="seconds"),
            )
        await self.router.deliver_email([sub.email], subject, html, NotificationEvent.SUBSCRIPTION)
