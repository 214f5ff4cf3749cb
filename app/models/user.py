"""
User Model
==========

Minimal view of the externally-owned user accounts table.
"""

from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.subscription import Subscription


class User(Base, TimestampMixin):
    """
    User account.

    ``legacy_subscription`` holds pre-v2 subscription data and is read
    only by the one-time migration job.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    legacy_subscription: Mapped[Optional[dict]] = mapped_column(
        JSONB(none_as_null=True),
        nullable=True,
    )

    # Relationships
    subscription: Mapped[Optional["Subscription"]] = relationship(
        "Subscription",
        back_populates="user",
        uselist=False,
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
