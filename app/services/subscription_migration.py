"""
Legacy Subscription Migration
=============================

One-time batch job that moves pre-v2 subscription data from
``users.legacy_subscription`` into the canonical ``subscriptions`` row.

Legacy documents hold ``lastWebhookNotification`` and/or
``lastTransactionInfo``; the webhook copy wins when both exist, and an
existing canonical record wins over both. Only identifiers and raw dates
are carried over; entitlement is resolved by the next status check.
The legacy column is cleared once a user is migrated, so re-running the
job is a no-op.

Run with:
    python -m app.services.subscription_migration [--dry-run]
"""

import argparse
import asyncio
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SubscriptionStoreError
from app.models.subscription import UpdateSource
from app.models.user import User
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

# camelCase legacy key -> record field
_WEBHOOK_FIELDS = {
    "originalTransactionId": "original_transaction_id",
    "lastTransactionId": "last_transaction_id",
    "productId": "product_id",
    "purchaseDate": "purchase_date",
    "expiresDate": "expiration_date",
    "offerType": "offer_type",
    "notificationType": "notification_type",
    "subtype": "notification_subtype",
}

_TRANSACTION_FIELDS = {
    "originalTransactionId": "original_transaction_id",
    "lastTransactionId": "last_transaction_id",
    "productId": "product_id",
    "purchaseDate": "purchase_date",
    "expiresDate": "expiration_date",
    "offerType": "offer_type",
    "appAccountToken": "app_account_token",
}

_INT_FIELDS = frozenset({"purchase_date", "expiration_date", "offer_type"})


def map_legacy_subscription(legacy: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Translate a legacy document into record fields, or None if it has nothing usable."""
    if not legacy:
        return None

    if legacy.get("lastWebhookNotification"):
        source, mapping = legacy["lastWebhookNotification"], _WEBHOOK_FIELDS
    elif legacy.get("lastTransactionInfo"):
        source, mapping = legacy["lastTransactionInfo"], _TRANSACTION_FIELDS
    else:
        return None

    fields: dict[str, Any] = {}
    for legacy_key, field in mapping.items():
        value = source.get(legacy_key)
        if value is None:
            continue
        if field in _INT_FIELDS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Dropping non-numeric legacy %s=%r", legacy_key, value)
                continue
        else:
            value = str(value)
        fields[field] = value

    if not fields.get("original_transaction_id"):
        return None
    return fields


class SubscriptionMigrationService:
    """Moves legacy subscription data into the canonical record."""

    def __init__(self, db: AsyncSession, store: Optional[SubscriptionStore] = None):
        self.db = db
        self.store = store or SubscriptionStore(db, legacy_lookup=False)

    async def migrate_batch(self, batch_size: int = 100, dry_run: bool = False) -> dict:
        """
        Migrate up to *batch_size* users that still carry legacy data.

        Returns:
            Summary of the batch
        """
        result = await self.db.execute(
            select(User)
            .where(User.legacy_subscription.is_not(None))
            .order_by(User.user_id)
            .limit(batch_size)
        )
        users = result.scalars().all()

        migrated = 0
        skipped = 0
        errors = []

        for user in users:
            fields = map_legacy_subscription(user.legacy_subscription)
            existing = await self.store.get(user.user_id)

            if fields is None or (existing is not None and existing.has_identifiers):
                skipped += 1
                fields = None
            else:
                migrated += 1

            if dry_run:
                continue

            try:
                # One savepoint per user so a failure leaves the rest of the batch intact.
                async with self.db.begin_nested():
                    if fields is not None:
                        await self.store.update(user.user_id, fields, UpdateSource.MIGRATION)
                    user.legacy_subscription = None
                    await self.db.flush()
            except (SubscriptionStoreError, SQLAlchemyError) as e:
                if fields is not None:
                    migrated -= 1
                errors.append({"user_id": str(user.user_id), "error": str(e)})

        await self.db.flush()

        return {
            "job": "migrate_legacy_subscriptions",
            "scanned": len(users),
            "migrated": migrated,
            "skipped": skipped,
            "errors": errors,
            "dry_run": dry_run,
            "run_at": utc_now().isoformat(),
        }


async def run_migration(batch_size: int = 100, dry_run: bool = False) -> dict:
    """Run batches until no legacy data remains (one batch in dry-run mode)."""
    from app.db.session import close_db, get_session_factory

    session_factory = get_session_factory()
    totals = {"scanned": 0, "migrated": 0, "skipped": 0, "errors": []}

    try:
        while True:
            async with session_factory() as session:
                summary = await SubscriptionMigrationService(session).migrate_batch(
                    batch_size=batch_size,
                    dry_run=dry_run,
                )
                if not dry_run:
                    await session.commit()

            logger.info(
                "Migration batch: scanned=%d migrated=%d skipped=%d errors=%d",
                summary["scanned"],
                summary["migrated"],
                summary["skipped"],
                len(summary["errors"]),
            )
            for key in ("scanned", "migrated", "skipped"):
                totals[key] += summary[key]
            totals["errors"].extend(summary["errors"])

            # Failed users keep their legacy data and would be picked up again.
            if dry_run or summary["scanned"] < batch_size or summary["errors"]:
                break
    finally:
        await close_db()

    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate legacy subscription data")
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    totals = asyncio.run(run_migration(batch_size=args.batch_size, dry_run=args.dry_run))
    logger.info(
        "Migration finished: scanned=%d migrated=%d skipped=%d errors=%d",
        totals["scanned"],
        totals["migrated"],
        totals["skipped"],
        len(totals["errors"]),
    )


if __name__ == "__main__":
    main()
