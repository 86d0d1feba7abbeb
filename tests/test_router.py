"""Tests for notification routing, throttling and delivery records."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import make_check
from pulsewatch.health.models import HealthCheckResult, HealthStatus
from pulsewatch.incidents.models import Incident, IncidentStatus, Severity
from pulsewatch.notifications.models import (
    AlertItem,
    Channel,
    DeliveryStatus,
    NotificationEvent,
    NotificationRecord,
    SubscriptionSeverity,
    subscriber_included,
)
from pulsewatch.notifications.router import NotificationRouter


def _item(name: str = "web", severity: Severity | None = None) -> AlertItem:
    check = make_check(name)
    result = HealthCheckResult(
        health_check_id=check.id, status=HealthStatus.UNHEALTHY, details=f"{name} down",
    )
    return AlertItem(check=check, result=result, severity=severity)


def _active_subscriber(store, email: str, check_id: str | None = None, severity="all") -> None:
    sub = store.create_subscription(email, check_id, SubscriptionSeverity(severity))
    store.verify_subscription(sub.verify_token)


class TestSeverityFilter:
    @pytest.mark.parametrize(
        ("sub", "event", "included"),
        [
            ("critical", "critical", True),
            ("critical", "high", True),
            ("critical", "all", True),
            ("high", "critical", False),
            ("high", "high", True),
            ("all", "critical", False),
            ("all", "high", False),
            ("all", "all", True),
        ],
    )
    def test_rank_rule(self, sub, event, included) -> None:
        assert subscriber_included(sub, event) is included


class TestDetermineSeverity:
    def test_explicit_critical_wins(self) -> None:
        items = [_item("a", Severity.HIGH), _item("b", Severity.CRITICAL)]
        assert NotificationRouter.determine_severity(items) == SubscriptionSeverity.CRITICAL

    def test_explicit_high(self) -> None:
        items = [_item("a", Severity.HIGH), _item("b")]
        assert NotificationRouter.determine_severity(items) == SubscriptionSeverity.HIGH

    def test_many_failures_escalate(self) -> None:
        items = [_item(str(i)) for i in range(4)]
        assert NotificationRouter.determine_severity(items) == SubscriptionSeverity.CRITICAL

    def test_some_failures(self) -> None:
        items = [_item(str(i)) for i in range(3)]
        assert NotificationRouter.determine_severity(items) == SubscriptionSeverity.HIGH

    def test_nothing(self) -> None:
        assert NotificationRouter.determine_severity([]) == SubscriptionSeverity.ALL


class TestThrottle:
    def _sent(self, store, clock, minutes_ago: float, status=DeliveryStatus.SENT) -> None:
        store.create_record(NotificationRecord(
            channel=Channel.EMAIL,
            event=NotificationEvent.UNHEALTHY,
            subject="alert",
            content="",
            recipients=["ops@example.com"],
            status=status,
            created_at=clock() - timedelta(minutes=minutes_ago),
        ))

    def test_no_history(self, router) -> None:
        assert router.should_notify()

    def test_within_window(self, router, notification_store, clock) -> None:
        self._sent(notification_store, clock, minutes_ago=30)
        assert not router.should_notify()

    def test_exactly_at_window_is_throttled(self, router, notification_store, clock) -> None:
        self._sent(notification_store, clock, minutes_ago=60)
        assert not router.should_notify()

    def test_after_window(self, router, notification_store, clock) -> None:
        self._sent(notification_store, clock, minutes_ago=61)
        assert router.should_notify()

    def test_failed_sends_do_not_throttle(self, router, notification_store, clock) -> None:
        self._sent(notification_store, clock, minutes_ago=5, status=DeliveryStatus.FAILED)
        assert router.should_notify()

    def test_custom_throttle(self, router, notification_store, clock) -> None:
        notification_store.update_email_config(throttle_minutes=10)
        self._sent(notification_store, clock, minutes_ago=15)
        assert router.should_notify()


class TestNotifyUnhealthy:
    def test_static_fallback(self, router, notification_store, mailer) -> None:
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        records = asyncio.run(router.notify_unhealthy([_item("web")]))

        assert len(mailer.sent) == 1
        assert mailer.sent[0]["to"] == ["ops@example.com"]
        assert mailer.sent[0]["subject"] == "Health Check Alert - web is unhealthy"
        assert "web down" in mailer.sent[0]["html"]
        assert records[0].status == DeliveryStatus.SENT

    def test_no_recipients_sends_nothing(self, router, mailer) -> None:
        assert asyncio.run(router.notify_unhealthy([_item("web")])) == []
        assert mailer.sent == []

    def test_global_and_per_check_groups(self, router, notification_store, mailer) -> None:
        a, b = _item("alpha", Severity.CRITICAL), _item("beta")
        _active_subscriber(notification_store, "global@example.com", severity="critical")
        _active_subscriber(notification_store, "alpha@example.com", a.check.id, severity="critical")
        _active_subscriber(notification_store, "beta@example.com", b.check.id, severity="high")

        asyncio.run(router.notify_unhealthy([a, b]))

        by_recipient = {tuple(m["to"]): m for m in mailer.sent}
        assert set(by_recipient) == {("global@example.com",), ("alpha@example.com",)}
        assert "beta down" in by_recipient[("global@example.com",)]["html"]
        alpha_mail = by_recipient[("alpha@example.com",)]
        assert "beta down" not in alpha_mail["html"]
        assert alpha_mail["subject"] == "Health Check Alert - alpha is unhealthy"

    def test_all_subscribers_skip_high_events(self, router, notification_store, mailer) -> None:
        _active_subscriber(notification_store, "everything@example.com", severity="all")
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        asyncio.run(router.notify_unhealthy([_item("web", Severity.HIGH)]))
        assert [m["to"] for m in mailer.sent] == [["ops@example.com"]]

    def test_unverified_subscribers_ignored(self, router, notification_store, mailer) -> None:
        notification_store.create_subscription("pending@example.com", None, SubscriptionSeverity.CRITICAL)
        asyncio.run(router.notify_unhealthy([_item("web", Severity.CRITICAL)]))
        assert mailer.sent == []

    def test_throttled_batch_is_dropped(self, router, notification_store, mailer, clock) -> None:
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        asyncio.run(router.notify_unhealthy([_item("web")]))
        clock.advance(minutes=10)
        asyncio.run(router.notify_unhealthy([_item("web")]))
        assert len(mailer.sent) == 1
        clock.advance(minutes=55)
        asyncio.run(router.notify_unhealthy([_item("web")]))
        assert len(mailer.sent) == 2

    def test_failed_delivery_recorded(self, router, notification_store, mailer) -> None:
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        mailer.fail = True
        records = asyncio.run(router.notify_unhealthy([_item("web")]))
        assert records[0].status == DeliveryStatus.FAILED
        assert "connection refused" in records[0].error
        stored, total = notification_store.find_records()
        assert total == 1
        assert stored[0].status == DeliveryStatus.FAILED

    def test_webhook_one_payload_per_batch(self, router, notification_store, webhook) -> None:
        notification_store.update_webhook_config(enabled=True, webhook_url="https://hooks.test/x")
        asyncio.run(router.notify_unhealthy([_item("a"), _item("b")]))

        assert len(webhook.posts) == 1
        url, payload = webhook.posts[0]
        assert url == "https://hooks.test/x"
        assert payload["event"] == "unhealthy"
        assert [r["name"] for r in payload["results"]] == ["a", "b"]
        records, _ = notification_store.find_records(channel=Channel.WEBHOOK)
        assert records[0].status == DeliveryStatus.SENT

    def test_webhook_failure_recorded(self, router, notification_store, webhook) -> None:
        notification_store.update_webhook_config(enabled=True, webhook_url="https://hooks.test/x")
        webhook.fail = True
        records = asyncio.run(router.notify_unhealthy([_item("a")]))
        assert records[-1].channel == Channel.WEBHOOK
        assert records[-1].status == DeliveryStatus.FAILED


class TestNotifyResolved:
    def _incident(self, check) -> Incident:
        return Incident(
            id="inc1", health_check_id=check.id, title=f"{check.name} is unhealthy",
            status=IncidentStatus.RESOLVED,
        )

    def test_merges_global_and_check_subscribers(self, router, notification_store, mailer) -> None:
        check = make_check("web")
        _active_subscriber(notification_store, "global@example.com")
        _active_subscriber(notification_store, "web@example.com", check.id)
        _active_subscriber(notification_store, "critical-only@example.com", severity="critical")

        asyncio.run(router.notify_resolved(self._incident(check), check))

        assert len(mailer.sent) == 1
        assert set(mailer.sent[0]["to"]) == {
            "global@example.com", "web@example.com", "critical-only@example.com",
        }
        assert mailer.sent[0]["subject"] == "Incident Resolved: web"

    def test_not_throttled(self, router, notification_store, mailer) -> None:
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        check = make_check("web")
        asyncio.run(router.notify_unhealthy([_item("web")]))
        asyncio.run(router.notify_resolved(self._incident(check), check))
        assert len(mailer.sent) == 2

    def test_unknown_check(self, router, notification_store, mailer) -> None:
        notification_store.update_email_config(enabled=True, recipients=["ops@example.com"])
        check = make_check("gone")
        asyncio.run(router.notify_resolved(self._incident(check), None))
        assert mailer.sent[0]["subject"] == "Incident Resolved: Unknown check"
