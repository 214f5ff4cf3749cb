"""
Database Models
===============

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.user import User
from app.models.subscription import (
    Entitlement,
    EventOutcome,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionType,
    UpdateSource,
)

__all__ = [
    "User",
    "Entitlement",
    "EventOutcome",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "SubscriptionType",
    "UpdateSource",
]
