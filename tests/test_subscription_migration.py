"""
Legacy Migration Tests
======================

Tests for mapping legacy subscription documents and migrating them in
batches.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.subscription import UpdateSource
from app.models.user import User
from app.services.subscription_migration import (
    SubscriptionMigrationService,
    map_legacy_subscription,
)
from tests.conftest import FakeSubscriptionStore, OTHER_USER_ID, USER_ID

WEBHOOK_DOC = {
    "lastWebhookNotification": {
        "originalTransactionId": "1000000000000001",
        "lastTransactionId": "2000000000000003",
        "productId": "com.entitlements.premium.monthly",
        "expiresDate": "1760000000000",
        "notificationType": "DID_RENEW",
    },
    "lastTransactionInfo": {
        "originalTransactionId": "1000000000000001",
        "lastTransactionId": "2000000000000001",
    },
}


class Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def make_session(users) -> AsyncMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = users

    db = AsyncMock()
    db.execute.return_value = result
    db.begin_nested = MagicMock(side_effect=Savepoint)
    return db


class TestMapLegacySubscription:
    """Legacy document translation."""

    def test_webhook_copy_wins(self):
        fields = map_legacy_subscription(WEBHOOK_DOC)

        assert fields["last_transaction_id"] == "2000000000000003"
        assert fields["expiration_date"] == 1760000000000
        assert fields["notification_type"] == "DID_RENEW"

    def test_transaction_info_only(self):
        fields = map_legacy_subscription({
            "lastTransactionInfo": {
                "originalTransactionId": 1000000000000001,
                "offerType": 1,
                "appAccountToken": "0e8b2f4c-58a8-4a38-9b5c-0d2f3a1c9e77",
            }
        })

        assert fields == {
            "original_transaction_id": "1000000000000001",
            "offer_type": 1,
            "app_account_token": "0e8b2f4c-58a8-4a38-9b5c-0d2f3a1c9e77",
        }

    def test_non_numeric_dates_are_dropped(self):
        fields = map_legacy_subscription({
            "lastTransactionInfo": {"originalTransactionId": "1", "expiresDate": "soon"}
        })
        assert "expiration_date" not in fields

    @pytest.mark.parametrize(
        "legacy",
        [
            None,
            {},
            {"somethingElse": {}},
            {"lastTransactionInfo": {"productId": "com.entitlements.premium.monthly"}},
        ],
    )
    def test_unusable_documents(self, legacy):
        assert map_legacy_subscription(legacy) is None


class TestMigrateBatch:
    """Batch migration into the canonical record."""

    @pytest.mark.asyncio
    async def test_migrates_and_clears_legacy_data(self):
        user = User(user_id=USER_ID, email="a@example.com", legacy_subscription=WEBHOOK_DOC)
        store = FakeSubscriptionStore()
        service = SubscriptionMigrationService(make_session([user]), store=store)

        summary = await service.migrate_batch()

        assert summary["migrated"] == 1
        assert summary["errors"] == []
        assert user.legacy_subscription is None
        row = store.rows[USER_ID]
        assert row.original_transaction_id == "1000000000000001"
        assert row.entitlement is None
        assert store.updates[-1][2] == UpdateSource.MIGRATION

    @pytest.mark.asyncio
    async def test_existing_record_wins(self):
        user = User(user_id=USER_ID, email="a@example.com", legacy_subscription=WEBHOOK_DOC)
        store = FakeSubscriptionStore()
        store.seed(USER_ID, original_transaction_id="9000000000000009")
        service = SubscriptionMigrationService(make_session([user]), store=store)

        summary = await service.migrate_batch()

        assert summary["skipped"] == 1
        assert store.rows[USER_ID].original_transaction_id == "9000000000000009"
        assert user.legacy_subscription is None

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self):
        user = User(user_id=USER_ID, email="a@example.com", legacy_subscription=WEBHOOK_DOC)
        store = FakeSubscriptionStore()
        service = SubscriptionMigrationService(make_session([user]), store=store)

        summary = await service.migrate_batch(dry_run=True)

        assert summary["migrated"] == 1
        assert summary["dry_run"] is True
        assert store.updates == []
        assert user.legacy_subscription == WEBHOOK_DOC

    @pytest.mark.asyncio
    async def test_failure_is_reported_per_user(self):
        failing = User(user_id=USER_ID, email="a@example.com", legacy_subscription=WEBHOOK_DOC)
        store = FakeSubscriptionStore()
        store.fail_writes = True
        service = SubscriptionMigrationService(make_session([failing]), store=store)

        summary = await service.migrate_batch()

        assert summary["migrated"] == 0
        assert summary["errors"][0]["user_id"] == str(USER_ID)
        assert failing.legacy_subscription == WEBHOOK_DOC

    @pytest.mark.asyncio
    async def test_unusable_document_is_cleared(self):
        user = User(
            user_id=OTHER_USER_ID,
            email="b@example.com",
            legacy_subscription={"lastTransactionInfo": {}},
        )
        store = FakeSubscriptionStore()
        service = SubscriptionMigrationService(make_session([user]), store=store)

        summary = await service.migrate_batch()

        assert summary["skipped"] == 1
        assert store.rows == {}
        assert user.legacy_subscription is None
