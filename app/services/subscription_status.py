"""
Subscription Status Controller
==============================

Decides, for each status check, whether the stored record can be
returned as is or needs a refresh from the App Store.

States (one per request, no internal retry loop):
- TEST_ACCOUNT: configured internal identity, canned record
- FRESH_CACHE: stored record younger than the cache TTL
- DUPLICATE_SUPPRESSED: same user checked within the duplicate window
- UNVERIFIED: no marketplace identifiers on file, nothing to refresh
- STALE_REFRESH: fetch the latest transaction, resolve, persist; an expiry
  is first confirmed against the lineage status

A failed refresh returns the last stored record when there is one,
otherwise UNVERIFIED.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional
import uuid

from app.core.errors import SubscriptionStoreError
from app.core.internal_accounts import canned_record, find_test_account
from app.models.subscription import Entitlement, Subscription, SubscriptionStatus, UpdateSource
from app.schemas.subscription import SubscriptionRecord
from app.services.app_store import AppStoreGateway
from app.services.call_guard import DuplicateCallGuard
from app.services.entitlement import EntitlementResolver, ResolvedSubscription
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import datetime_to_ms, now_ms

logger = logging.getLogger(__name__)


class StatusState(str, Enum):
    TEST_ACCOUNT = "test_account"
    FRESH_CACHE = "fresh_cache"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    STALE_REFRESH = "stale_refresh"
    UNVERIFIED = "unverified"


class DataSource:
    """Values reported to clients as ``data_source``."""
    TEST_ACCOUNT = "test-account"
    CACHE = "cache"
    DUPLICATE_CALL_PREVENTION = "duplicate-call-prevention"
    FRESH_API = "fresh-api"
    FORCE_REFRESH = "force-refresh"
    STALE_CACHE = "stale-cache"
    UNVERIFIED = "unverified"


@dataclass
class StatusResult:
    record: SubscriptionRecord
    state: StatusState
    data_source: str
    cache_age_ms: Optional[int] = None
    throttled: bool = False
    degraded: bool = False
    test_account: Optional[str] = None


class SubscriptionStatusController:
    """Cache-first subscription status checks."""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: AppStoreGateway,
        resolver: EntitlementResolver,
        call_guard: DuplicateCallGuard,
        *,
        cache_ttl_seconds: int = 600,
        clock: Callable[[], int] = now_ms,
        test_accounts: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.call_guard = call_guard
        self.cache_ttl_ms = cache_ttl_seconds * 1000
        self.clock = clock
        self.test_accounts = test_accounts

    async def check_status(
        self,
        user_id: uuid.UUID,
        *,
        email: Optional[str] = None,
        force_refresh: bool = False,
    ) -> StatusResult:
        """
        Return the user's subscription record.

        Raises:
            SubscriptionStoreError: the stored record could not be read
        """
        now = self.clock()

        profile = find_test_account(email, self.test_accounts)
        if profile is not None:
            return StatusResult(
                record=canned_record(profile, now),
                state=StatusState.TEST_ACCOUNT,
                data_source=DataSource.TEST_ACCOUNT,
                test_account=profile,
            )

        row = await self.store.get(user_id)
        cache_age = self._cache_age(row, now)
        guard_key = str(user_id)

        if not force_refresh:
            if row is not None and row.entitlement is not None and cache_age is not None and cache_age < self.cache_ttl_ms:
                logger.debug("Subscription cache hit for user=%s (age=%dms)", user_id, cache_age)
                return StatusResult(
                    record=SubscriptionRecord.from_row(row),
                    state=StatusState.FRESH_CACHE,
                    data_source=DataSource.CACHE,
                    cache_age_ms=cache_age,
                )

            if row is not None and self.call_guard.is_duplicate(guard_key):
                logger.info("Suppressing duplicate status check for user=%s", user_id)
                return StatusResult(
                    record=SubscriptionRecord.from_row(row),
                    state=StatusState.DUPLICATE_SUPPRESSED,
                    data_source=DataSource.DUPLICATE_CALL_PREVENTION,
                    cache_age_ms=cache_age,
                    throttled=True,
                )

        self.call_guard.record(guard_key)

        if row is None or not row.has_identifiers:
            return self._unverified(bool(row.has_used_trial) if row is not None else False)

        return await self._refresh(user_id, row, now, force_refresh, cache_age)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _refresh(
        self,
        user_id: uuid.UUID,
        row: Subscription,
        now: int,
        force_refresh: bool,
        cache_age: Optional[int],
    ) -> StatusResult:
        # Taken before the write; a failed savepoint expires the row.
        snapshot = SubscriptionRecord.from_row(row)
        has_entitlement = row.entitlement is not None
        transaction_id = row.last_transaction_id or row.original_transaction_id
        result = await self.gateway.get_transaction_info(transaction_id)
        if not result.success:
            logger.warning(
                "Status refresh failed for user=%s transaction=%s: %s",
                user_id,
                transaction_id,
                result.error,
            )
            return self._degraded(snapshot, has_entitlement, cache_age)

        transaction = result.data
        same_period = transaction.transaction_id == row.last_transaction_id

        # A cancel signal or grace period recorded for this billing period
        # still applies; a newer transaction means the subscription renewed.
        auto_renew = False if same_period and row.auto_renew_enabled is False else None
        grace = row.grace_period_expires_date if same_period else None

        resolved = self.resolver.resolve(
            [transaction],
            bool(row.has_used_trial),
            auto_renew=auto_renew,
            grace_period_expires_date=grace,
            now=now,
        )

        if resolved.subscription_status == SubscriptionStatus.EXPIRED:
            resolved = await self._confirm_expiry(user_id, row, resolved, now)
            if resolved is None:
                return self._degraded(snapshot, has_entitlement, cache_age)

        try:
            updated = await self.store.update(
                user_id,
                resolved.to_update(),
                UpdateSource.CHECK_SUBSCRIPTION_STATUS,
            )
        except SubscriptionStoreError:
            logger.exception("Could not persist refreshed subscription for user=%s", user_id)
            return self._degraded(snapshot, has_entitlement, cache_age)

        logger.info(
            "Refreshed subscription for user=%s: %s/%s",
            user_id,
            resolved.entitlement.value,
            resolved.subscription_status.value,
        )
        return StatusResult(
            record=SubscriptionRecord.from_row(updated),
            state=StatusState.STALE_REFRESH,
            data_source=DataSource.FORCE_REFRESH if force_refresh else DataSource.FRESH_API,
            cache_age_ms=0,
        )

    async def _confirm_expiry(
        self,
        user_id: uuid.UUID,
        row: Subscription,
        expired: ResolvedSubscription,
        now: int,
    ) -> Optional[ResolvedSubscription]:
        """
        Check an expiry against the lineage's current status.

        The stored transaction id names the period we last saw, so a renewal
        whose notification never arrived only shows up here. Returns None
        when the status cannot be fetched.
        """
        original_transaction_id = row.original_transaction_id or expired.original_transaction_id
        result = await self.gateway.get_subscription_status(original_transaction_id)
        if not result.success:
            logger.warning(
                "Could not confirm expiry of %s for user=%s: %s",
                original_transaction_id,
                user_id,
                result.error,
            )
            return None

        current = self.resolver.resolve_status_groups(
            result.data,
            bool(row.has_used_trial),
            now=now,
        )
        if current is None:
            return expired

        if current.subscription_status != SubscriptionStatus.EXPIRED:
            logger.info(
                "Transaction %s expired but lineage %s is %s (user=%s)",
                expired.last_transaction_id,
                original_transaction_id,
                current.subscription_status.value,
                user_id,
            )
        return current

    def _degraded(
        self,
        snapshot: SubscriptionRecord,
        has_entitlement: bool,
        cache_age: Optional[int],
    ) -> StatusResult:
        if not has_entitlement:
            return self._unverified(snapshot.has_used_trial)
        return StatusResult(
            record=snapshot,
            state=StatusState.STALE_REFRESH,
            data_source=DataSource.STALE_CACHE,
            cache_age_ms=cache_age,
            degraded=True,
        )

    @staticmethod
    def _unverified(has_used_trial: bool = False) -> StatusResult:
        record = SubscriptionRecord(
            entitlement=Entitlement.FREE,
            subscription_status=SubscriptionStatus.UNVERIFIED,
            has_used_trial=has_used_trial,
        )
        return StatusResult(
            record=record,
            state=StatusState.UNVERIFIED,
            data_source=DataSource.UNVERIFIED,
        )

    @staticmethod
    def _cache_age(row: Optional[Subscription], now: int) -> Optional[int]:
        if row is None or row.last_updated_at is None:
            return None
        return max(0, now - datetime_to_ms(row.last_updated_at))
