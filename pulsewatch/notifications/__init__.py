"""Subscriptions, channel configs and alert delivery."""

from .models import Channel, NotificationRecord, Subscription, SubscriptionSeverity
from .store import NotificationStore
