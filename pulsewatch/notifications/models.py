"""Subscriptions, channel configuration and the delivery audit trail."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..db import utcnow
from ..health.models import HealthCheck, HealthCheckResult
from ..incidents.models import Severity


class SubscriptionSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    ALL = "all"


# Lower rank = more severe.
SEVERITY_RANK = {
    SubscriptionSeverity.CRITICAL: 1,
    SubscriptionSeverity.HIGH: 2,
    SubscriptionSeverity.ALL: 3,
}


def severity_rank(value: str | SubscriptionSeverity) -> int:
    try:
        return SEVERITY_RANK[SubscriptionSeverity(value)]
    except ValueError:
        return SEVERITY_RANK[SubscriptionSeverity.ALL]


def subscriber_included(
    subscription_severity: str | SubscriptionSeverity,
    event_severity: str | SubscriptionSeverity,
) -> bool:
    """Subscriber filter: rank(subscription) <= rank(event).

    This excludes "all" subscribers from high and critical events, which
    looks inverted. Open with product; do not flip without sign-off.
    """
    return severity_rank(subscription_severity) <= severity_rank(event_severity)


class Channel(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"


class NotificationEvent(str, Enum):
    UNHEALTHY = "unhealthy"
    RESOLVED = "resolved"
    SUBSCRIPTION = "subscription"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


def new_token() -> str:
    return uuid.uuid4().hex


@dataclass
class Subscription:
    email: str
    health_check_id: str | None = None  # None = every check
    severity: SubscriptionSeverity = SubscriptionSeverity.ALL
    active: bool = False
    verify_token: str | None = field(default_factory=new_token)
    unsubscribe_token: str = field(default_factory=new_token)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    verified_at: datetime | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def is_global(self) -> bool:
        return self.health_check_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "health_check_id": self.health_check_id,
            "severity": self.severity.value,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }


@dataclass
class ChannelConfig:
    """Singleton configuration of one delivery channel."""

    channel: Channel
    enabled: bool = False
    recipients: list[str] = field(default_factory=list)
    webhook_url: str = ""
    throttle_minutes: int = 60
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "enabled": self.enabled,
            "recipients": list(self.recipients),
            "webhook_url": self.webhook_url,
            "throttle_minutes": self.throttle_minutes,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class NotificationRecord:
    channel: Channel
    event: NotificationEvent
    subject: str
    content: str
    recipients: list[str]
    status: DeliveryStatus
    error: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel.value,
            "event": self.event.value,
            "subject": self.subject,
            "recipients": list(self.recipients),
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AlertItem:
    """One unhealthy check handed to the router by a sweep."""

    check: HealthCheck
    result: HealthCheckResult
    severity: Severity | None = None  # set when the sweep opened/extended an incident
