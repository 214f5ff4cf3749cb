"""
Subscription Store
==================

Reads and writes the canonical subscription row for a user.

Writes are field-level merges: ``None`` values are dropped, every write
stamps provenance (``last_update_source``, ``data_version`` and, unless
the caller opts out, ``last_updated_at``), ``last_updated_at`` never
moves backwards and ``has_used_trial`` never goes from True to False.
Existing rows are locked with ``SELECT ... FOR UPDATE`` so a webhook and
a client sync for the same user merge one after the other. An App Store
lineage belongs to one user at a time; ``unlink_lineage`` detaches it
from previous owners.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
import uuid

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import SubscriptionStoreError
from app.models.subscription import (
    Entitlement,
    EventOutcome,
    Subscription,
    SubscriptionStatus,
    SubscriptionEvent,
    UpdateSource,
)
from app.models.user import User
from app.schemas.subscription import SubscriptionRecord
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

PROVENANCE_FIELDS = frozenset({"last_updated_at", "last_update_source", "data_version"})
UPDATABLE_FIELDS = frozenset(SubscriptionRecord.model_fields) - PROVENANCE_FIELDS

# Cleared when a lineage moves to another user.
LINEAGE_FIELDS = (
    "original_transaction_id",
    "last_transaction_id",
    "product_id",
    "subscription_type",
    "expiration_date",
    "grace_period_expires_date",
    "auto_renew_enabled",
    "offer_type",
    "purchase_date",
    "app_account_token",
    "environment",
)


def clean_update(partial: Mapping[str, Any]) -> dict[str, Any]:
    """
    Drop unset values and reject unknown fields.

    Raises:
        ValueError: *partial* names a field the record does not have
    """
    cleaned = {key: value for key, value in partial.items() if value is not None}
    unknown = set(cleaned) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    return cleaned


class SubscriptionStore:
    """Persistence for the per-user subscription record."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        legacy_lookup: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock
        self.legacy_lookup = (
            settings.LEGACY_SUBSCRIPTION_LOOKUP_ENABLED if legacy_lookup is None else legacy_lookup
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, user_id: uuid.UUID) -> Optional[Subscription]:
        """Return the user's subscription row, or None."""
        try:
            result = await self.db.execute(
                select(Subscription).where(Subscription.user_id == user_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Failed to read subscription for user=%s: %s", user_id, exc)
            raise SubscriptionStoreError("Subscription store unavailable") from exc

    async def find_user_by_original_transaction_id(
        self,
        original_transaction_id: str,
    ) -> Optional[uuid.UUID]:
        """
        Reverse lookup from an App Store lineage id to the owning user.

        The canonical record is authoritative. The legacy column is only
        consulted while the migration window is open and the canonical
        index has no match.
        """
        if not original_transaction_id:
            return None

        try:
            result = await self.db.execute(
                select(Subscription.user_id)
                .where(Subscription.original_transaction_id == original_transaction_id)
                .order_by(Subscription.last_updated_at.desc().nulls_last())
                .limit(1)
            )
            user_id = result.scalar_one_or_none()
            if user_id is not None or not self.legacy_lookup:
                return user_id

            legacy = User.legacy_subscription
            result = await self.db.execute(
                select(User.user_id)
                .where(
                    or_(
                        legacy[("lastWebhookNotification", "originalTransactionId")].astext
                        == original_transaction_id,
                        legacy[("lastTransactionInfo", "originalTransactionId")].astext
                        == original_transaction_id,
                    )
                )
                .limit(1)
            )
            user_id = result.scalar_one_or_none()
            if user_id is not None:
                logger.info(
                    "Resolved %s through legacy subscription data (user=%s)",
                    original_transaction_id,
                    user_id,
                )
            return user_id
        except SQLAlchemyError as exc:
            logger.error(
                "Reverse lookup failed for original_transaction_id=%s: %s",
                original_transaction_id,
                exc,
            )
            raise SubscriptionStoreError("Subscription store unavailable") from exc

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def update(
        self,
        user_id: uuid.UUID,
        partial: Mapping[str, Any],
        source: UpdateSource,
        *,
        touch: bool = True,
    ) -> Subscription:
        """
        Merge *partial* into the user's record, creating it if needed.

        Each write runs in a savepoint, so a failed write leaves the
        surrounding transaction usable. With ``touch=False`` the write keeps
        ``last_updated_at`` as it was, for writes that do not reconcile
        entitlement. Returns the updated row.
        """
        fields = clean_update(partial)

        try:
            try:
                return await self._merge(user_id, fields, source, touch)
            except IntegrityError:
                # Another writer created the row first; merge into theirs.
                logger.info("Concurrent create for user=%s, merging", user_id)
                return await self._merge(user_id, fields, source, touch)
        except SQLAlchemyError as exc:
            logger.error("Failed to write subscription for user=%s: %s", user_id, exc)
            raise SubscriptionStoreError("Subscription store unavailable") from exc

    async def unlink_lineage(
        self,
        original_transaction_id: str,
        keep_user_id: uuid.UUID,
        source: UpdateSource,
    ) -> list[uuid.UUID]:
        """
        Detach *original_transaction_id* from every user except *keep_user_id*.

        Detached records lose their App Store identifiers and drop to
        FREE/UNVERIFIED; ``has_used_trial`` is kept. Returns the detached
        user ids.
        """
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(Subscription)
                    .where(
                        Subscription.original_transaction_id == original_transaction_id,
                        Subscription.user_id != keep_user_id,
                    )
                    .with_for_update()
                )
                rows = list(result.scalars().all())
                for row in rows:
                    self._detach(row)
                    self._apply(row, {}, source)
                await self.db.flush()
        except SQLAlchemyError as exc:
            logger.error("Failed to unlink lineage %s: %s", original_transaction_id, exc)
            raise SubscriptionStoreError("Subscription store unavailable") from exc

        return [row.user_id for row in rows]

    async def record_event(
        self,
        user_id: uuid.UUID,
        *,
        notification_type: str,
        outcome: EventOutcome,
        notification_subtype: Optional[str] = None,
        notification_uuid: Optional[str] = None,
        transaction_id: Optional[str] = None,
        entitlement: Optional[Entitlement] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append a row to the notification audit trail."""
        try:
            async with self.db.begin_nested():
                self.db.add(SubscriptionEvent(
                    user_id=user_id,
                    notification_type=notification_type,
                    notification_subtype=notification_subtype,
                    notification_uuid=notification_uuid,
                    transaction_id=transaction_id,
                    outcome=outcome,
                    entitlement=entitlement,
                    error=error,
                ))
                await self.db.flush()
        except SQLAlchemyError as exc:
            logger.error("Failed to record subscription event for user=%s: %s", user_id, exc)
            raise SubscriptionStoreError("Subscription store unavailable") from exc

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _merge(
        self,
        user_id: uuid.UUID,
        fields: Mapping[str, Any],
        source: UpdateSource,
        touch: bool = True,
    ) -> Subscription:
        async with self.db.begin_nested():
            row = await self._get_for_update(user_id)
            if row is None:
                row = Subscription(user_id=user_id, has_used_trial=False)
                self.db.add(row)
            self._apply(row, fields, source, touch)
            await self.db.flush()
        return row

    async def _get_for_update(self, user_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _detach(row: Subscription) -> None:
        for field in LINEAGE_FIELDS:
            setattr(row, field, None)
        row.entitlement = Entitlement.FREE
        row.subscription_status = SubscriptionStatus.UNVERIFIED

    def _apply(
        self,
        row: Subscription,
        fields: Mapping[str, Any],
        source: UpdateSource,
        touch: bool = True,
    ) -> None:
        for key, value in fields.items():
            if key == "has_used_trial":
                value = bool(row.has_used_trial) or bool(value)
            setattr(row, key, value)

        if touch:
            now = self.clock()
            if row.last_updated_at is not None and row.last_updated_at > now:
                now = row.last_updated_at
            row.last_updated_at = now
        row.last_update_source = source
        row.data_version = settings.SUBSCRIPTION_DATA_VERSION
