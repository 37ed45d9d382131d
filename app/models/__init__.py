"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.user import AccessStatus, User, UserRole
from app.models.subscription import (
    HistoryAction,
    PlanType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.models.webhook_log import WebhookLogEntry, WebhookLogStatus

__all__ = [
    # User
    "User",
    "UserRole",
    "AccessStatus",
    # Subscription
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionStatus",
    "PlanType",
    "HistoryAction",
    # Webhook log
    "WebhookLogEntry",
    "WebhookLogStatus",
]
