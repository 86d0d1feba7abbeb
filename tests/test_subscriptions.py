"""Tests for the subscription store and the double opt-in flow."""

from __future__ import annotations

import asyncio

import pytest

from conftest import make_check
from pulsewatch.errors import NotFoundError
from pulsewatch.notifications.models import (
    Channel,
    DeliveryStatus,
    NotificationEvent,
    SubscriptionSeverity,
)
from pulsewatch.notifications.subscriptions import SubscriptionService


@pytest.fixture
def service(notification_store, check_store, router) -> SubscriptionService:
    return SubscriptionService(
        notification_store, check_store, router, base_url="https://status.example.com/",
    )


class TestNotificationStoreSubscriptions:
    def test_email_normalised(self, notification_store) -> None:
        sub = notification_store.create_subscription("  Ops@Example.COM ")
        assert sub.email == "ops@example.com"
        assert not sub.active
        assert sub.verify_token

    def test_existing_unverified_gets_new_token(self, notification_store) -> None:
        first = notification_store.create_subscription("ops@example.com", "c1")
        second = notification_store.create_subscription("OPS@example.com", "c1")
        assert second.id == first.id
        assert second.verify_token != first.verify_token
        assert notification_store.find_subscription_by_token(first.verify_token, "verify") is None

    def test_global_and_check_subscriptions_are_distinct(self, notification_store) -> None:
        a = notification_store.create_subscription("ops@example.com")
        b = notification_store.create_subscription("ops@example.com", "c1")
        assert a.id != b.id
        assert len(notification_store.find_subscriptions_by_email("ops@example.com")) == 2

    def test_verify_is_single_use(self, notification_store) -> None:
        sub = notification_store.create_subscription("ops@example.com")
        verified = notification_store.verify_subscription(sub.verify_token)
        assert verified.active
        assert verified.verified_at is not None
        assert verified.verify_token is None
        assert notification_store.verify_subscription(sub.verify_token) is None

    def test_unsubscribe_keeps_row(self, notification_store) -> None:
        sub = notification_store.create_subscription("ops@example.com")
        notification_store.verify_subscription(sub.verify_token)
        notification_store.unsubscribe(sub.unsubscribe_token)
        stored = notification_store.find_subscription_by_id(sub.id)
        assert stored is not None
        assert not stored.active
        assert notification_store.get_subscribers_global("all") == []

    def test_dedicated_subscribers_only(self, notification_store) -> None:
        for email, check_id in (("global@example.com", None), ("web@example.com", "c1")):
            sub = notification_store.create_subscription(email, check_id)
            notification_store.verify_subscription(sub.verify_token)
        assert notification_store.get_subscribers_for_check("c1", "all") == ["web@example.com"]
        assert notification_store.get_subscribers_global("all") == ["global@example.com"]

    def test_update_subscription(self, notification_store) -> None:
        sub = notification_store.create_subscription("ops@example.com")
        updated = notification_store.update_subscription(sub.id, severity="critical", active=True)
        assert updated.severity == SubscriptionSeverity.CRITICAL
        assert updated.active

    def test_update_missing(self, notification_store) -> None:
        with pytest.raises(NotFoundError):
            notification_store.update_subscription("nope", active=True)


class TestChannelConfig:
    def test_seeded_from_settings(self, notification_store) -> None:
        config = notification_store.get_email_config()
        assert config.channel == Channel.EMAIL
        assert config.throttle_minutes == 60

    def test_update_persists(self, notification_store) -> None:
        notification_store.update_webhook_config(enabled=True, webhook_url="https://hooks.test/x")
        config = notification_store.get_webhook_config()
        assert config.enabled
        assert config.webhook_url == "https://hooks.test/x"

    def test_unknown_field(self, notification_store) -> None:
        with pytest.raises(ValueError):
            notification_store.update_email_config(colour="blue")


class TestSubscriptionService:
    def test_create_sends_verification(self, service, check_store, mailer) -> None:
        check = check_store.create(make_check("web"))
        sub = asyncio.run(service.create("ops@example.com", check.id, "high"))

        assert sub.severity == SubscriptionSeverity.HIGH
        assert len(mailer.sent) == 1
        mail = mailer.sent[0]
        assert mail["to"] == ["ops@example.com"]
        assert mail["subject"] == "Verify your health check notification subscription for web"
        assert f"https://status.example.com/api/subscriptions/verify/{sub.verify_token}" in mail["html"]
        assert sub.unsubscribe_token in mail["html"]

    def test_create_global_uses_all_checks_name(self, service, mailer) -> None:
        asyncio.run(service.create("ops@example.com"))
        assert mailer.sent[0]["subject"].endswith("for All health checks")

    def test_create_unknown_check(self, service, mailer) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(service.create("ops@example.com", "missing"))
        assert mailer.sent == []

    def test_verify_sends_confirmation(self, service, mailer, notification_store) -> None:
        sub = asyncio.run(service.create("ops@example.com"))
        verified = asyncio.run(service.verify(sub.verify_token))

        assert verified.active
        assert mailer.sent[-1]["subject"] == "Subscription confirmed for All health checks notifications"
        records, total = notification_store.find_records()
        assert total == 2
        assert {r.event for r in records} == {NotificationEvent.SUBSCRIPTION}

    def test_verify_unknown_token(self, service) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(service.verify("bogus"))

    def test_verify_after_check_deleted(self, service, check_store, mailer, notification_store) -> None:
        check = check_store.create(make_check("web"))
        sub = asyncio.run(service.create("ops@example.com", check.id))
        check_store.delete(check.id)

        verified = asyncio.run(service.verify(sub.verify_token))

        assert verified.active
        assert notification_store.find_subscription_by_id(sub.id).active
        assert mailer.sent[-1]["subject"] == "Subscription confirmed for All health checks notifications"

    def test_unsubscribe_unknown_token(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.unsubscribe("bogus")

    def test_mail_failure_is_recorded_not_raised(self, service, mailer, notification_store) -> None:
        mailer.fail = True
        sub = asyncio.run(service.create("ops@example.com"))
        assert sub.id
        records, _ = notification_store.find_records()
        assert records[0].status == DeliveryStatus.FAILED

    def test_delete(self, service, notification_store) -> None:
        sub = asyncio.run(service.create("ops@example.com"))
        service.delete(sub.id)
        assert notification_store.find_subscription_by_id(sub.id) is None
        with pytest.raises(NotFoundError):
            service.delete(sub.id)
