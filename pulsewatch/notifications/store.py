"""Subscriptions, channel configs and notification records, stored in SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Protocol

from ..config import settings
from ..db import SQLiteStore, from_iso, persistence, to_iso, utcnow
from ..errors import NotFoundError
from .models import (
    Channel,
    ChannelConfig,
    DeliveryStatus,
    NotificationEvent,
    NotificationRecord,
    Subscription,
    SubscriptionSeverity,
    new_token,
    subscriber_included,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository(Protocol):
    def create_subscription(
        self, email: str, health_check_id: str | None = None,
        severity: SubscriptionSeverity = SubscriptionSeverity.ALL,
    ) -> Subscription: ...
    def find_subscription_by_id(self, subscription_id: str) -> Subscription | None: ...
    def find_subscription_by_token(self, token: str, kind: str) -> Subscription | None: ...
    def find_subscriptions_by_email(self, email: str) -> list[Subscription]: ...
    def update_subscription(self, subscription_id: str, **changes: Any) -> Subscription: ...
    def delete_subscription(self, subscription_id: str) -> bool: ...
    def verify_subscription(self, token: str) -> Subscription | None: ...
    def unsubscribe(self, token: str) -> Subscription | None: ...
    def get_subscribers_for_check(self, check_id: str, severity: str) -> list[str]: ...
    def get_subscribers_global(self, severity: str) -> list[str]: ...


class ChannelConfigRepository(Protocol):
    def get_email_config(self) -> ChannelConfig: ...
    def update_email_config(self, **changes: Any) -> ChannelConfig: ...
    def get_webhook_config(self) -> ChannelConfig: ...
    def update_webhook_config(self, **changes: Any) -> ChannelConfig: ...


class NotificationRepository(Protocol):
    def create_record(self, record: NotificationRecord) -> NotificationRecord: ...
    def find_records(
        self, page: int = 1, limit: int = 20, channel: Channel | None = None,
    ) -> tuple[list[NotificationRecord], int]: ...
    def get_last_notification_time(
        self, channel: Channel, event: NotificationEvent,
    ) -> datetime | None: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class NotificationStore(SQLiteStore):
    """SQLite implementation of the subscription, channel-config and notification repositories."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id                 TEXT PRIMARY KEY,
            email              TEXT NOT NULL,
            health_check_id    TEXT,
            severity           TEXT NOT NULL DEFAULT 'all',
            active             INTEGER NOT NULL DEFAULT 0,
            verify_token       TEXT,
            unsubscribe_token  TEXT NOT NULL,
            created_at         TEXT NOT NULL,
            updated_at         TEXT NOT NULL,
            verified_at        TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_subscriptions_email
            ON subscriptions (email);
        CREATE INDEX IF NOT EXISTS idx_subscriptions_check
            ON subscriptions (health_check_id, active);

        CREATE TABLE IF NOT EXISTS channel_configs (
            channel           TEXT PRIMARY KEY,
            enabled           INTEGER NOT NULL DEFAULT 0,
            recipients        TEXT NOT NULL DEFAULT '[]',
            webhook_url       TEXT NOT NULL DEFAULT '',
            throttle_minutes  INTEGER NOT NULL DEFAULT 60,
            updated_at        TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            channel     TEXT NOT NULL,
            event       TEXT NOT NULL,
            subject     TEXT NOT NULL,
            content     TEXT NOT NULL,
            recipients  TEXT NOT NULL DEFAULT '[]',
            status      TEXT NOT NULL,
            error       TEXT NOT NULL DEFAULT '',
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_notifications_channel
            ON notifications (channel, event, status, created_at DESC);
    """

    # ── Subscriptions ─────────────────────────────────────────────────────

    def create_subscription(
        self,
        email: str,
        health_check_id: str | None = None,
        severity: SubscriptionSeverity = SubscriptionSeverity.ALL,
    ) -> Subscription:
        """Create an unverified subscription.

        An existing pair (email, check) is reused: unverified ones get a fresh
        verify token, verified ones are returned untouched.
        """
        email = normalize_email(email)
        existing = self._find_pair(email, health_check_id)
        if existing:
            if existing.verified_at is None:
                existing.verify_token = new_token()
                existing.updated_at = utcnow()
                self._write_subscription(existing)
            return existing

        sub = Subscription(
            email=email,
            health_check_id=health_check_id,
            severity=SubscriptionSeverity(severity),
        )
        self._insert_subscription(sub)
        logger.info("Created subscription %s for %s (check=%s)", sub.id, email, health_check_id or "all")
        return sub

    @persistence
    def _find_pair(self, email: str, health_check_id: str | None) -> Subscription | None:
        if health_check_id is None:
            row = self._get_conn().execute(
                "SELECT * FROM subscriptions WHERE email = ? AND health_check_id IS NULL",
                (email,),
            ).fetchone()
        else:
            row = self._get_conn().execute(
                "SELECT * FROM subscriptions WHERE email = ? AND health_check_id = ?",
                (email, health_check_id),
            ).fetchone()
        return _row_to_subscription(row) if row else None

    @persistence
    def _insert_subscription(self, sub: Subscription) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO subscriptions (id, email, health_check_id, severity, active, "
            "verify_token, unsubscribe_token, created_at, updated_at, verified_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                sub.id, sub.email, sub.health_check_id, sub.severity.value, int(sub.active),
                sub.verify_token, sub.unsubscribe_token, to_iso(sub.created_at),
                to_iso(sub.updated_at), to_iso(sub.verified_at),
            ),
        )
        conn.commit()

    @persistence
    def _write_subscription(self, sub: Subscription) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE subscriptions SET severity = ?, active = ?, verify_token = ?, "
            "unsubscribe_token = ?, updated_at = ?, verified_at = ? WHERE id = ?",
            (
                sub.severity.value, int(sub.active), sub.verify_token, sub.unsubscribe_token,
                to_iso(sub.updated_at), to_iso(sub.verified_at), sub.id,
            ),
        )
        conn.commit()

    @persistence
    def find_subscription_by_id(self, subscription_id: str) -> Subscription | None:
        row = self._get_conn().execute(
            "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    @persistence
    def find_subscription_by_token(self, token: str, kind: str) -> Subscription | None:
        """kind is "verify" or "unsubscribe"."""
        column = {"verify": "verify_token", "unsubscribe": "unsubscribe_token"}[kind]
        row = self._get_conn().execute(
            f"SELECT * FROM subscriptions WHERE {column} = ?", (token,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    @persistence
    def find_subscriptions_by_email(self, email: str) -> list[Subscription]:
        rows = self._get_conn().execute(
            "SELECT * FROM subscriptions WHERE email = ? ORDER BY created_at",
            (normalize_email(email),),
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def update_subscription(self, subscription_id: str, **changes: Any) -> Subscription:
        unknown = set(changes) - {"active", "severity"}
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")
        sub = self.find_subscription_by_id(subscription_id)
        if sub is None:
            raise NotFoundError("Subscription", subscription_id)
        if changes.get("active") is not None:
            sub.active = bool(changes["active"])
        if changes.get("severity") is not None:
            sub.severity = SubscriptionSeverity(changes["severity"])
        sub.updated_at = utcnow()
        self._write_subscription(sub)
        return sub

    @persistence
    def delete_subscription(self, subscription_id: str) -> bool:
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
        conn.commit()
        return cursor.rowcount > 0

    def verify_subscription(self, token: str) -> Subscription | None:
        """Activate the subscription owning this verify token; the token is single use."""
        sub = self.find_subscription_by_token(token, "verify")
        if sub is None:
            return None
        now = utcnow()
        sub.active = True
        sub.verified_at = now
        sub.verify_token = None
        sub.updated_at = now
        self._write_subscription(sub)
        return sub

    def unsubscribe(self, token: str) -> Subscription | None:
        """Deactivate (not delete) the subscription owning this unsubscribe token."""
        sub = self.find_subscription_by_token(token, "unsubscribe")
        if sub is None:
            return None
        sub.active = False
        sub.updated_at = utcnow()
        self._write_subscription(sub)
        return sub

    @persistence
    def get_subscribers_for_check(self, check_id: str, severity: str) -> list[str]:
        """Active subscribers dedicated to one check, filtered by severity."""
        rows = self._get_conn().execute(
            "SELECT email, severity FROM subscriptions "
            "WHERE health_check_id = ? AND active = 1 ORDER BY created_at",
            (check_id,),
        ).fetchall()
        return _filter_emails(rows, severity)

    @persistence
    def get_subscribers_global(self, severity: str) -> list[str]:
        """Active subscribers to every check, filtered by severity."""
        rows = self._get_conn().execute(
            "SELECT email, severity FROM subscriptions "
            "WHERE health_check_id IS NULL AND active = 1 ORDER BY created_at",
        ).fetchall()
        return _filter_emails(rows, severity)

    # ── Channel configs ───────────────────────────────────────────────────

    def get_email_config(self) -> ChannelConfig:
        return self._get_channel(Channel.EMAIL)

    def update_email_config(self, **changes: Any) -> ChannelConfig:
        return self._update_channel(Channel.EMAIL, changes)

    def get_webhook_config(self) -> ChannelConfig:
        return self._get_channel(Channel.WEBHOOK)

    def update_webhook_config(self, **changes: Any) -> ChannelConfig:
        return self._update_channel(Channel.WEBHOOK, changes)

    @persistence
    def _get_channel(self, channel: Channel) -> ChannelConfig:
        row = self._get_conn().execute(
            "SELECT * FROM channel_configs WHERE channel = ?", (channel.value,),
        ).fetchone()
        if row:
            return _row_to_channel(row)
        config = _default_channel(channel)
        self._write_channel(config)
        return config

    def _update_channel(self, channel: Channel, changes: dict[str, Any]) -> ChannelConfig:
        unknown = set(changes) - {"enabled", "recipients", "webhook_url", "throttle_minutes"}
        if unknown:
            raise ValueError(f"Cannot update channel fields: {sorted(unknown)}")
        config = self._get_channel(channel)
        for key, value in changes.items():
            if value is not None:
                setattr(config, key, value)
        config.updated_at = utcnow()
        self._write_channel(config)
        return config

    @persistence
    def _write_channel(self, config: ChannelConfig) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO channel_configs "
            "(channel, enabled, recipients, webhook_url, throttle_minutes, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                config.channel.value, int(config.enabled), json.dumps(config.recipients),
                config.webhook_url, config.throttle_minutes, to_iso(config.updated_at),
            ),
        )
        conn.commit()

    # ── Notification records ──────────────────────────────────────────────

    @persistence
    def create_record(self, record: NotificationRecord) -> NotificationRecord:
        conn = self._get_conn()
        cursor = conn.execute(
            "INSERT INTO notifications "
            "(channel, event, subject, content, recipients, status, error, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.channel.value, record.event.value, record.subject, record.content,
                json.dumps(record.recipients), record.status.value, record.error,
                to_iso(record.created_at),
            ),
        )
        conn.commit()
        record.id = cursor.lastrowid
        return record

    @persistence
    def find_records(
        self, page: int = 1, limit: int = 20, channel: Channel | None = None,
    ) -> tuple[list[NotificationRecord], int]:
        conn = self._get_conn()
        offset = max(page - 1, 0) * limit
        if channel:
            total = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE channel = ?", (channel.value,),
            ).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM notifications WHERE channel = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (channel.value, limit, offset),
            ).fetchall()
        else:
            total = conn.execute("SELECT COUNT(*) FROM notifications").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM notifications ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_record(r) for r in rows], total

    @persistence
    def get_last_notification_time(
        self, channel: Channel, event: NotificationEvent,
    ) -> datetime | None:
        """Time of the latest successfully sent notification of this kind."""
        row = self._get_conn().execute(
            "SELECT created_at FROM notifications "
            "WHERE channel = ? AND event = ? AND status = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (channel.value, event.value, DeliveryStatus.SENT.value),
        ).fetchone()
        return from_iso(row["created_at"]) if row else None


def _filter_emails(rows: list[sqlite3.Row], severity: str) -> list[str]:
    emails: list[str] = []
    for r in rows:
        if subscriber_included(r["severity"], severity) and r["email"] not in emails:
            emails.append(r["email"])
    return emails


def _default_channel(channel: Channel) -> ChannelConfig:
    if channel == Channel.EMAIL:
        recipients = [e.strip() for e in settings.email_recipients.split(",") if e.strip()]
        return ChannelConfig(
            channel=channel,
            enabled=bool(recipients),
            recipients=recipients,
            throttle_minutes=settings.email_throttle_minutes,
        )
    return ChannelConfig(
        channel=channel,
        enabled=bool(settings.webhook_url),
        webhook_url=settings.webhook_url,
        throttle_minutes=settings.webhook_throttle_minutes,
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        email=row["email"],
        health_check_id=row["health_check_id"],
        severity=SubscriptionSeverity(row["severity"]),
        active=bool(row["active"]),
        verify_token=row["verify_token"],
        unsubscribe_token=row["unsubscribe_token"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        verified_at=from_iso(row["verified_at"]),
    )


def _row_to_channel(row: sqlite3.Row) -> ChannelConfig:
    return ChannelConfig(
        channel=Channel(row["channel"]),
        enabled=bool(row["enabled"]),
        recipients=json.loads(row["recipients"] or "[]"),
        webhook_url=row["webhook_url"],
        throttle_minutes=row["throttle_minutes"],
        updated_at=from_iso(row["updated_at"]),
    )


def _row_to_record(row: sqlite3.Row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        channel=Channel(row["channel"]),
        event=NotificationEvent(row["event"]),
        subject=row["subject"],
        content=row["content"],
        recipients=json.loads(row["recipients"] or "[]"),
        status=DeliveryStatus(row["status"]),
        error=row["error"],
        created_at=from_iso(row["created_at"]),
    )
