"""Notification history, channel configuration and subscriptions."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..notifications.models import Channel, SubscriptionSeverity

logger = logging.getLogger(__name__)

notification_router = APIRouter(tags=["notifications"])


# ── Request models ───────────────────────────────────────────────────────

class EmailConfigBody(BaseModel):
    enabled: bool | None = None
    recipients: list[str] | None = None
    throttle_minutes: int | None = Field(default=None, ge=0)


class WebhookConfigBody(BaseModel):
    enabled: bool | None = None
    webhook_url: str | None = None
    throttle_minutes: int | None = Field(default=None, ge=0)


class SubscribeBody(BaseModel):
    email: str
    health_check_id: str | None = None
    severity: SubscriptionSeverity = SubscriptionSeverity.ALL


class UpdateSubscriptionBody(BaseModel):
    active: bool | None = None
    severity: SubscriptionSeverity | None = None


# ── Notifications ────────────────────────────────────────────────────────

@notification_router.get("/notifications")
def list_notifications(
    request: Request, page: int = 1, limit: int = 20, channel: Channel | None = None,
) -> dict[str, Any]:
    records, total = request.app.state.notifications.find_records(page, limit, channel)
    return {
        "notifications": [r.to_dict() for r in records],
        "total": total,
        "page": page,
        "page_size": limit,
    }


@notification_router.get("/notifications/config/email")
def get_email_config(request: Request) -> dict[str, Any]:
    return request.app.state.notifications.get_email_config().to_dict()


@notification_router.put("/notifications/config/email")
def update_email_config(body: EmailConfigBody, request: Request) -> dict[str, Any]:
    config = request.app.state.notifications.update_email_config(
        **body.model_dump(exclude_none=True),
    )
    return config.to_dict()


@notification_router.get("/notifications/config/webhook")
def get_webhook_config(request: Request) -> dict[str, Any]:
    return request.app.state.notifications.get_webhook_config().to_dict()


@notification_router.put("/notifications/config/webhook")
def update_webhook_config(body: WebhookConfigBody, request: Request) -> dict[str, Any]:
    config = request.app.state.notifications.update_webhook_config(
        **body.model_dump(exclude_none=True),
    )
    return config.to_dict()


# ── Subscriptions ────────────────────────────────────────────────────────

@notification_router.post("/subscriptions", status_code=201)
async def subscribe(body: SubscribeBody, request: Request) -> dict[str, Any]:
    if "@" not in body.email:
        raise HTTPException(status_code=400, detail=f"Invalid email address: {body.email}")
    sub = await request.app.state.subscriptions.create(
        body.email, body.health_check_id, body.severity,
    )
    return sub.to_dict()


@notification_router.get("/subscriptions")
def list_subscriptions(email: str, request: Request) -> list[dict[str, Any]]:
    return [s.to_dict() for s in request.app.state.subscriptions.list_by_email(email)]


@notification_router.get("/subscriptions/verify/{token}")
async def verify_subscription(token: str, request: Request) -> dict[str, Any]:
    sub = await request.app.state.subscriptions.verify(token)
    return {"status": "verified", "subscription": sub.to_dict()}


@notification_router.get("/subscriptions/unsubscribe/{token}")
def unsubscribe(token: str, request: Request) -> dict[str, Any]:
    sub = request.app.state.subscriptions.unsubscribe(token)
    return {"status": "unsubscribed", "subscription": sub.to_dict()}


@notification_router.patch("/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: str, body: UpdateSubscriptionBody, request: Request,
) -> dict[str, Any]:
    sub = request.app.state.subscriptions.update(
        subscription_id, **body.model_dump(exclude_none=True),
    )
    return sub.to_dict()


@notification_router.delete("/subscriptions/{subscription_id}")
def delete_subscription(subscription_id: str, request: Request) -> dict[str, str]:
    request.app.state.subscriptions.delete(subscription_id)
    return {"status": "deleted", "id": subscription_id}
