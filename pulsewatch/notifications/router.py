"""Routes unhealthy and resolved events to subscribers and channels.

Email goes to recipient groups (global subscribers, per-check subscribers, or
the static recipient list as a fallback); the webhook gets one payload per
batch. A delivery failure is recorded and logged, never raised.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..db import utcnow
from ..errors import DeliveryError
from ..health.models import HealthCheck
from ..incidents.models import Incident, Severity
from . import templates
from .email import Mailer
from .models import (
    AlertItem,
    Channel,
    DeliveryStatus,
    NotificationEvent,
    NotificationRecord,
    SubscriptionSeverity,
)
from .store import NotificationStore
from .webhook import WebhookPoster

logger = logging.getLogger(__name__)

# More unhealthy checks than this in one batch escalates to critical.
ESCALATION_THRESHOLD = 3


class NotificationRouter:
    def __init__(
        self,
        store: NotificationStore,
        mailer: Mailer,
        webhook: WebhookPoster,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.webhook = webhook
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # -- throttling and severity -------------------------------------------

    def should_notify(self) -> bool:
        """False while the last sent unhealthy email is within the throttle window."""
        last = self.store.get_last_notification_time(Channel.EMAIL, NotificationEvent.UNHEALTHY)
        if last is None:
            return True
        throttle = self.store.get_email_config().throttle_minutes
        elapsed = (self._clock() - last).total_seconds() / 60
        return elapsed > throttle

    @staticmethod
    def determine_severity(items: list[AlertItem]) -> SubscriptionSeverity:
        explicit = {item.severity for item in items if item.severity is not None}
        if Severity.CRITICAL in explicit:
            return SubscriptionSeverity.CRITICAL
        if Severity.HIGH in explicit:
            return SubscriptionSeverity.HIGH
        if len(items) > ESCALATION_THRESHOLD:
            return SubscriptionSeverity.CRITICAL
        if items:
            return SubscriptionSeverity.HIGH
        return SubscriptionSeverity.ALL

    # -- unhealthy batch ---------------------------------------------------

    async def notify_unhealthy(self, items: list[AlertItem]) -> list[NotificationRecord]:
        if not items:
            return []
        if not self.should_notify():
            logger.info("Notifications throttled, skipping %d unhealthy check(s)", len(items))
            return []

        severity = self.determine_severity(items)
        records: list[NotificationRecord] = []
        for recipients, group_items in self._unhealthy_groups(items, severity):
            subject = _alert_subject(group_items)
            html = templates.render(
                "alert.html",
                subject=subject,
                severity=severity.value,
                results=[_result_row(i) for i in group_items],
                current_date=self._clock().isoformat(timespec="seconds"),
            )
            records.append(
                await self.deliver_email(recipients, subject, html, NotificationEvent.UNHEALTHY)
            )

        payload = {
            "event": NotificationEvent.UNHEALTHY.value,
            "subject": _alert_subject(items),
            "severity": severity.value,
            "timestamp": self._clock().isoformat(),
            "results": [_result_row(i) for i in items],
        }
        webhook_record = await self._deliver_webhook(payload, NotificationEvent.UNHEALTHY)
        if webhook_record:
            records.append(webhook_record)
        return records

    def _unhealthy_groups(
        self, items: list[AlertItem], severity: SubscriptionSeverity,
    ) -> list[tuple[list[str], list[AlertItem]]]:
        groups: list[tuple[list[str], list[AlertItem]]] = []

        global_subs = self.store.get_subscribers_global(severity.value)
        if global_subs:
            groups.append((global_subs, items))

        by_check: dict[str, list[AlertItem]] = {}
        for item in items:
            by_check.setdefault(item.check.id, []).append(item)
        for check_id, check_items in by_check.items():
            subs = self.store.get_subscribers_for_check(check_id, severity.value)
            if subs:
                groups.append((subs, check_items))

        if not groups:
            static = self._static_recipients()
            if static:
                groups.append((static, items))
            else:
                logger.info("No recipients for unhealthy notification")
        return groups

    # -- resolution --------------------------------------------------------

    async def notify_resolved(
        self, incident: Incident, check: HealthCheck | None,
    ) -> list[NotificationRecord]:
        """Tell everyone interested that an incident is over. Not throttled."""
        check_name = check.name if check else "Unknown check"
        event_severity = SubscriptionSeverity.ALL.value

        recipients = list(self.store.get_subscribers_global(event_severity))
        if check:
            for email in self.store.get_subscribers_for_check(check.id, event_severity):
                if email not in recipients:
                    recipients.append(email)
        if not recipients:
            recipients = self._static_recipients()

        subject = f"Incident Resolved: {check_name}"
        records: list[NotificationRecord] = []
        if recipients:
            html = templates.render(
                "resolved.html",
                subject=subject,
                incident=incident.to_dict(),
                check_name=check_name,
                current_date=self._clock().isoformat(timespec="seconds"),
            )
            records.append(
                await self.deliver_email(recipients, subject, html, NotificationEvent.RESOLVED)
            )

        payload = {
            "event": NotificationEvent.RESOLVED.value,
            "subject": subject,
            "timestamp": self._clock().isoformat(),
            "incident": incident.to_dict(),
        }
        webhook_record = await self._deliver_webhook(payload, NotificationEvent.RESOLVED)
        if webhook_record:
            records.append(webhook_record)
        return records

    # -- delivery ----------------------------------------------------------

    async def deliver_email(
        self,
        recipients: list[str],
        subject: str,
        html: str,
        event: NotificationEvent,
    ) -> NotificationRecord:
        """Send one email to all recipients and record the outcome."""
        status, error = DeliveryStatus.SENT, ""
        try:
            message_id = await self.mailer.send(recipients, subject, html)
            logger.info(
                "Email sent: %s (%d recipient(s), id=%s)", subject, len(recipients), message_id,
            )
        except DeliveryError as e:
            status, error = DeliveryStatus.FAILED, str(e)
            logger.error("Email delivery failed: %s: %s", subject, e)

        return self.store.create_record(NotificationRecord(
            channel=Channel.EMAIL,
            event=event,
            subject=subject,
            content=html,
            recipients=list(recipients),
            status=status,
            error=error,
            created_at=self._clock(),
        ))

    async def _deliver_webhook(
        self, payload: dict[str, Any], event: NotificationEvent,
    ) -> NotificationRecord | None:
        config = self.store.get_webhook_config()
        if not config.enabled or not config.webhook_url:
            logger.debug("Webhook disabled, skipping")
            return None

        status, error = DeliveryStatus.SENT, ""
        try:
            await self.webhook.post(config.webhook_url, payload)
            logger.info("Webhook notification sent (%s)", event.value)
        except DeliveryError as e:
            status, error = DeliveryStatus.FAILED, str(e)
            logger.error("Webhook delivery failed: %s", e)

        return self.store.create_record(NotificationRecord(
            channel=Channel.WEBHOOK,
            event=event,
            subject=payload["subject"],
            content=json.dumps(payload),
            recipients=[config.webhook_url],
            status=status,
            error=error,
            created_at=self._clock(),
        ))

    def _static_recipients(self) -> list[str]:
        config = self.store.get_email_config()
        if not config.enabled:
            return []
        return list(config.recipients)


def _alert_subject(items: list[AlertItem]) -> str:
    if len(items) == 1:
        return f"Health Check Alert - {items[0].check.name} is unhealthy"
    return f"Health Check Alert - {len(items)} checks are unhealthy"


def _result_row(item: AlertItem) -> dict[str, Any]:
    return {
        "id": item.check.id,
        "name": item.check.name,
        "kind": item.check.kind.value,
        "status": item.result.status.value,
        "details": item.result.details,
        "severity": item.severity.value if item.severity else None,
        "created_at": item.result.created_at.isoformat(),
    }
