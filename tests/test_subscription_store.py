"""
Subscription Store Tests
========================

Tests for field-level merges and the store's error contract.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.errors import SubscriptionStoreError
from app.models.subscription import (
    Entitlement,
    EventOutcome,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    UpdateSource,
)
from app.models.user import User
from app.services.subscription_store import SubscriptionStore, clean_update
from app.utils.helpers import ms_to_datetime
from tests.conftest import DAY_MS, NOW, OTHER_USER_ID, USER_ID


class Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def make_session(row=None) -> AsyncMock:
    """AsyncSession double whose selects return *row*."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = row

    db = AsyncMock()
    db.execute.return_value = result
    db.add = MagicMock()
    db.begin_nested = MagicMock(side_effect=Savepoint)
    return db


def make_store(db) -> SubscriptionStore:
    return SubscriptionStore(db, clock=lambda: ms_to_datetime(NOW), legacy_lookup=False)


class TestCleanUpdate:
    """Partial update filtering."""

    def test_drops_none_values(self):
        assert clean_update({"product_id": "p", "expiration_date": None}) == {"product_id": "p"}

    def test_keeps_false_values(self):
        assert clean_update({"auto_renew_enabled": False}) == {"auto_renew_enabled": False}

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            clean_update({"premium_until": 1})

    def test_rejects_provenance_fields(self):
        with pytest.raises(ValueError):
            clean_update({"last_update_source": UpdateSource.WEBHOOK})


class TestUpdate:
    """Merge semantics of SubscriptionStore.update."""

    @pytest.mark.asyncio
    async def test_creates_row_when_missing(self):
        db = make_session(row=None)
        store = make_store(db)

        row = await store.update(USER_ID, {"entitlement": Entitlement.PREMIUM}, UpdateSource.WEBHOOK)

        db.add.assert_called_once_with(row)
        assert row.user_id == USER_ID
        assert row.entitlement == Entitlement.PREMIUM
        assert row.has_used_trial is False
        assert row.last_update_source == UpdateSource.WEBHOOK
        assert row.data_version == "v2"

    @pytest.mark.asyncio
    async def test_merges_into_existing_row(self):
        existing = Subscription(
            user_id=USER_ID,
            has_used_trial=False,
            product_id="com.entitlements.premium.monthly",
            original_transaction_id="1000",
        )
        db = make_session(row=existing)
        store = make_store(db)

        row = await store.update(
            USER_ID,
            {"entitlement": Entitlement.TRIAL, "product_id": None},
            UpdateSource.SYNC_PURCHASE_INFO,
        )

        assert row is existing
        assert row.entitlement == Entitlement.TRIAL
        assert row.product_id == "com.entitlements.premium.monthly"
        assert row.original_transaction_id == "1000"
        db.add.assert_not_called()
        db.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_has_used_trial_never_resets(self):
        existing = Subscription(user_id=USER_ID, has_used_trial=True)
        store = make_store(make_session(row=existing))

        row = await store.update(USER_ID, {"has_used_trial": False}, UpdateSource.WEBHOOK)

        assert row.has_used_trial is True

    @pytest.mark.asyncio
    async def test_last_updated_at_never_moves_backwards(self):
        future = ms_to_datetime(NOW) + timedelta(minutes=5)
        existing = Subscription(user_id=USER_ID, has_used_trial=False, last_updated_at=future)
        store = make_store(make_session(row=existing))

        row = await store.update(USER_ID, {"product_id": "p"}, UpdateSource.CHECK_SUBSCRIPTION_STATUS)

        assert row.last_updated_at == future
        assert row.last_update_source == UpdateSource.CHECK_SUBSCRIPTION_STATUS

    @pytest.mark.asyncio
    async def test_untouched_write_keeps_last_updated_at(self):
        earlier = ms_to_datetime(NOW) - timedelta(days=1)
        existing = Subscription(user_id=USER_ID, has_used_trial=False, last_updated_at=earlier)
        store = make_store(make_session(row=existing))

        row = await store.update(
            USER_ID,
            {"last_transaction_id": "2000000000000002"},
            UpdateSource.WEBHOOK,
            touch=False,
        )

        assert row.last_updated_at == earlier
        assert row.last_transaction_id == "2000000000000002"
        assert row.last_update_source == UpdateSource.WEBHOOK

    @pytest.mark.asyncio
    async def test_database_error_becomes_store_error(self):
        db = make_session()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))
        store = make_store(db)

        with pytest.raises(SubscriptionStoreError):
            await store.update(USER_ID, {"product_id": "p"}, UpdateSource.WEBHOOK)

    @pytest.mark.asyncio
    async def test_concurrent_create_merges_into_winner(self):
        winner = Subscription(user_id=USER_ID, has_used_trial=True)
        missing, found = MagicMock(), MagicMock()
        missing.scalar_one_or_none.return_value = None
        found.scalar_one_or_none.return_value = winner
        db = make_session()
        db.execute.side_effect = [missing, found]
        db.flush.side_effect = [IntegrityError("INSERT", {}, Exception("duplicate key")), None]

        row = await make_store(db).update(USER_ID, {"product_id": "p"}, UpdateSource.WEBHOOK)

        assert row is winner
        assert row.product_id == "p"
        assert row.has_used_trial is True

    @pytest.mark.asyncio
    async def test_unknown_field_is_rejected_before_io(self):
        db = make_session()
        store = make_store(db)

        with pytest.raises(ValueError):
            await store.update(USER_ID, {"bogus": 1}, UpdateSource.WEBHOOK)

        db.execute.assert_not_awaited()


class TestReads:
    """Reads and reverse lookups."""

    @pytest.mark.asyncio
    async def test_get_returns_row(self):
        existing = Subscription(user_id=USER_ID, has_used_trial=False)
        store = make_store(make_session(row=existing))

        assert await store.get(USER_ID) is existing

    @pytest.mark.asyncio
    async def test_get_wraps_database_errors(self):
        db = make_session()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("timeout"))

        with pytest.raises(SubscriptionStoreError):
            await make_store(db).get(USER_ID)

    @pytest.mark.asyncio
    async def test_reverse_lookup_skips_empty_id(self):
        db = make_session()

        assert await make_store(db).find_user_by_original_transaction_id("") is None
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reverse_lookup_without_legacy_queries_once(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        db = make_session()
        db.execute.return_value = result

        assert await make_store(db).find_user_by_original_transaction_id("1000") is None
        assert db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_reverse_lookup_falls_back_to_legacy(self):
        canonical, legacy = MagicMock(), MagicMock()
        canonical.scalar_one_or_none.return_value = None
        legacy.scalar_one_or_none.return_value = USER_ID
        db = make_session()
        db.execute.side_effect = [canonical, legacy]
        store = SubscriptionStore(db, legacy_lookup=True)

        assert await store.find_user_by_original_transaction_id("1000") == USER_ID
        assert db.execute.await_count == 2


class TestRecordEvent:
    """Audit trail writes."""

    @pytest.mark.asyncio
    async def test_adds_event_row(self):
        db = make_session()

        await make_store(db).record_event(
            USER_ID,
            notification_type="DID_RENEW",
            outcome=EventOutcome.APPLIED,
            entitlement=Entitlement.PREMIUM,
        )

        event = db.add.call_args.args[0]
        assert isinstance(event, SubscriptionEvent)
        assert event.notification_type == "DID_RENEW"
        assert event.outcome == EventOutcome.APPLIED


class TestUnlinkLineage:
    """Moving an App Store lineage away from its previous owner."""

    @pytest.mark.asyncio
    async def test_detaches_previous_owner(self):
        previous = Subscription(
            user_id=OTHER_USER_ID,
            has_used_trial=True,
            entitlement=Entitlement.PREMIUM,
            subscription_status=SubscriptionStatus.ACTIVE,
            original_transaction_id="1000000000000001",
            last_transaction_id="2000000000000001",
            product_id="com.entitlements.premium.monthly",
            expiration_date=NOW + DAY_MS,
            auto_renew_enabled=True,
        )
        db = make_session()
        db.execute.return_value.scalars.return_value.all.return_value = [previous]

        detached = await make_store(db).unlink_lineage(
            "1000000000000001", USER_ID, UpdateSource.SYNC_PURCHASE_INFO
        )

        assert detached == [OTHER_USER_ID]
        assert previous.entitlement == Entitlement.FREE
        assert previous.subscription_status == SubscriptionStatus.UNVERIFIED
        assert previous.original_transaction_id is None
        assert previous.last_transaction_id is None
        assert previous.expiration_date is None
        assert previous.auto_renew_enabled is None
        assert previous.has_used_trial is True
        assert previous.last_update_source == UpdateSource.SYNC_PURCHASE_INFO
        db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_other_owner(self):
        db = make_session()
        db.execute.return_value.scalars.return_value.all.return_value = []

        detached = await make_store(db).unlink_lineage(
            "1000000000000001", USER_ID, UpdateSource.SYNC_PURCHASE_INFO
        )

        assert detached == []

    @pytest.mark.asyncio
    async def test_database_error_becomes_store_error(self):
        db = make_session()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))

        with pytest.raises(SubscriptionStoreError):
            await make_store(db).unlink_lineage(
                "1000000000000001", USER_ID, UpdateSource.SYNC_PURCHASE_INFO
            )


class TestUserRelationship:
    """The store always queries subscriptions explicitly."""

    def test_user_subscription_is_never_lazy_loaded(self):
        relationship = inspect(User).relationships["subscription"]
        assert relationship.lazy == "raise"
