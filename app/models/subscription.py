"""
Subscription Models
===================

The canonical per-user subscription record and the notification audit
trail. All marketplace dates are stored as epoch milliseconds, exactly as
the App Store reports them.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.user import User


class Entitlement(str, Enum):
    """Feature-access tier currently granted."""
    FREE = "free"
    TRIAL = "trial"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    """Lifecycle state, independent of entitlement."""
    NEVER_SUBSCRIBED = "never_subscribed"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNVERIFIED = "unverified"


class SubscriptionType(str, Enum):
    """Billing period of the subscribed product."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UpdateSource(str, Enum):
    """Which entry point last wrote the record."""
    WEBHOOK = "webhook"
    SYNC_PURCHASE_INFO = "syncPurchaseInfo"
    CHECK_SUBSCRIPTION_STATUS = "checkSubscriptionStatus"
    MIGRATION = "migration"


class EventOutcome(str, Enum):
    """How a server notification was applied."""
    APPLIED = "applied"
    PARTIAL = "partial"


class Subscription(Base, TimestampMixin):
    """
    Canonical subscription record, exactly one per user.

    This row is the only location consulted for entitlement decisions.
    Status columns are nullable so a partial reconciliation can persist
    identifiers alone.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Resolved state
    entitlement: Mapped[Optional[Entitlement]] = mapped_column(
        SQLEnum(Entitlement),
        nullable=True,
    )
    subscription_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        SQLEnum(SubscriptionStatus),
        nullable=True,
    )
    has_used_trial: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    auto_renew_enabled: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
    )
    subscription_type: Mapped[Optional[SubscriptionType]] = mapped_column(
        SQLEnum(SubscriptionType),
        nullable=True,
    )
    expiration_date: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    grace_period_expires_date: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )

    # Marketplace identity
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    last_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    offer_type: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    purchase_date: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    app_account_token: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    environment: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )
    notification_type: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    notification_subtype: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    # Provenance
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_update_source: Mapped[Optional[UpdateSource]] = mapped_column(
        SQLEnum(UpdateSource),
        nullable=True,
    )
    data_version: Mapped[Optional[str]] = mapped_column(
        String(10),
        nullable=True,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscription",
    )

    __table_args__ = (
        Index("idx_subscription_entitlement_expires", "entitlement", "expiration_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, entitlement={self.entitlement}, "
            f"status={self.subscription_status})>"
        )

    @property
    def has_identifiers(self) -> bool:
        """Whether the record links to a marketplace lineage at all."""
        return bool(self.original_transaction_id or self.last_transaction_id)


class SubscriptionEvent(Base):
    """
    Audit trail of processed App Store server notifications.

    Partial reconciliations are recorded here with their error so they
    are visible to operators.
    """

    __tablename__ = "subscription_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    notification_uuid: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    notification_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    notification_subtype: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    outcome: Mapped[EventOutcome] = mapped_column(
        SQLEnum(EventOutcome),
        nullable=False,
    )
    entitlement: Mapped[Optional[Entitlement]] = mapped_column(
        SQLEnum(Entitlement),
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sub_events_user_created", "user_id", "created_at"),
        Index("idx_sub_events_outcome_created", "outcome", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(user_id={self.user_id}, type={self.notification_type})>"
