"""
Purchase Sync Tests
===================

Tests for client-submitted purchases and transaction id lookups.
"""

import pytest

from app.core.errors import ErrorCodes, InternalError, ValidationError
from app.models.subscription import Entitlement, SubscriptionStatus, UpdateSource
from app.schemas.subscription import RenewalInfo, StatusGroupItem
from app.services.app_store import GatewayErrorKind, GatewayResult
from app.services.purchase_sync import PurchaseSyncService
from tests.conftest import DAY_MS, NOW, OTHER_USER_ID, USER_ID, YEARLY, make_jws, make_transaction, transaction_payload

SIGNED = make_jws(transaction_payload())


@pytest.fixture
def service(store, gateway, resolver) -> PurchaseSyncService:
    return PurchaseSyncService(
        store,
        gateway,
        resolver,
        test_accounts={"review@example.com": "premium"},
    )


class TestSyncPurchase:
    """Verified purchases are resolved and persisted."""

    @pytest.mark.asyncio
    async def test_trial_purchase(self, service, store, gateway):
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction(offerType=1))

        result = await service.sync_purchase(USER_ID, SIGNED)

        assert result.data_source == "signed-transaction"
        assert result.record.entitlement == Entitlement.TRIAL
        assert result.record.has_used_trial is True
        assert result.transaction.original_transaction_id == "1000000000000001"

        user_id, fields, source = store.updates[-1]
        assert user_id == USER_ID
        assert source == UpdateSource.SYNC_PURCHASE_INFO
        assert fields["last_transaction_id"] == "2000000000000001"

    @pytest.mark.asyncio
    async def test_keeps_prior_trial_flag(self, service, store, gateway):
        store.seed(USER_ID, has_used_trial=True)
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())

        result = await service.sync_purchase(USER_ID, SIGNED)

        assert result.record.entitlement == Entitlement.PREMIUM
        assert result.record.has_used_trial is True

    @pytest.mark.asyncio
    async def test_bad_signature_is_invalid_argument(self, service, store, gateway):
        gateway.verify_transaction.return_value = GatewayResult.fail(
            GatewayErrorKind.VERIFICATION, "bad signature"
        )

        with pytest.raises(ValidationError) as exc_info:
            await service.sync_purchase(USER_ID, SIGNED)

        assert exc_info.value.code == ErrorCodes.SUB_VERIFICATION_FAILED
        assert exc_info.value.status_code == 400
        assert store.updates == []

    @pytest.mark.asyncio
    async def test_missing_fields_is_invalid_argument(self, service, gateway):
        gateway.verify_transaction.return_value = GatewayResult.fail(
            GatewayErrorKind.INVALID_PAYLOAD, "Required field missing: productId"
        )

        with pytest.raises(ValidationError) as exc_info:
            await service.sync_purchase(USER_ID, SIGNED)

        assert exc_info.value.code == ErrorCodes.SUB_INVALID_TRANSACTION
        assert exc_info.value.field == "signed_transaction"

    @pytest.mark.asyncio
    async def test_verifier_not_configured_is_internal(self, service):
        with pytest.raises(InternalError) as exc_info:
            await service.sync_purchase(USER_ID, SIGNED)

        assert exc_info.value.code == ErrorCodes.SUB_APP_STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_store_failure_is_internal(self, service, store, gateway):
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())
        store.fail_writes = True

        with pytest.raises(InternalError) as exc_info:
            await service.sync_purchase(USER_ID, SIGNED)

        assert exc_info.value.code == ErrorCodes.SUB_STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_relinks_lineage_owned_by_another_user(self, service, store, gateway):
        """The previous owner loses the lineage and its entitlement."""
        store.seed(
            OTHER_USER_ID,
            updated_at_ms=NOW - DAY_MS,
            has_used_trial=True,
            entitlement=Entitlement.PREMIUM,
            subscription_status=SubscriptionStatus.ACTIVE,
            original_transaction_id="1000000000000001",
            last_transaction_id="2000000000000001",
            expiration_date=NOW + 29 * DAY_MS,
            auto_renew_enabled=True,
        )
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())

        result = await service.sync_purchase(USER_ID, SIGNED)

        assert result.record.entitlement == Entitlement.PREMIUM
        current = store.rows[USER_ID]
        assert current.original_transaction_id == "1000000000000001"
        assert current.entitlement == Entitlement.PREMIUM

        previous = store.rows[OTHER_USER_ID]
        assert previous.entitlement == Entitlement.FREE
        assert previous.subscription_status == SubscriptionStatus.UNVERIFIED
        assert previous.original_transaction_id is None
        assert previous.last_transaction_id is None
        assert previous.expiration_date is None
        assert previous.has_used_trial is True
        assert previous.last_update_source == UpdateSource.SYNC_PURCHASE_INFO
        assert await store.find_user_by_original_transaction_id("1000000000000001") == USER_ID

    @pytest.mark.asyncio
    async def test_own_lineage_is_not_unlinked(self, service, store, gateway):
        store.seed(USER_ID, original_transaction_id="1000000000000001")
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())

        await service.sync_purchase(USER_ID, SIGNED)

        assert store.rows[USER_ID].entitlement == Entitlement.PREMIUM
        assert len(store.updates) == 1

    @pytest.mark.asyncio
    async def test_test_account_skips_verification(self, service, store, gateway):
        result = await service.sync_purchase(USER_ID, SIGNED, email="review@example.com")

        assert result.data_source == "test-account"
        assert result.record.entitlement == Entitlement.PREMIUM
        gateway.verify_transaction.assert_not_awaited()
        assert store.updates == []


class TestRealTimeStatus:
    """Optional status lookup after verification."""

    @pytest.mark.asyncio
    async def test_uses_status_groups(self, service, gateway):
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())
        gateway.get_subscription_status.return_value = GatewayResult.ok([
            StatusGroupItem(
                status=1,
                transaction=make_transaction(transactionId="3", productId=YEARLY, expiresDate=NOW + 10**10),
                renewal=RenewalInfo(autoRenewStatus=0),
            )
        ])

        result = await service.sync_purchase(USER_ID, SIGNED, check_real_time_status=True)

        assert result.data_source == "real-time-status"
        assert result.record.product_id == YEARLY
        assert result.record.subscription_status == SubscriptionStatus.CANCELLING

    @pytest.mark.asyncio
    async def test_falls_back_to_submitted_transaction(self, service, gateway):
        gateway.verify_transaction.return_value = GatewayResult.ok(make_transaction())

        result = await service.sync_purchase(USER_ID, SIGNED, check_real_time_status=True)

        assert result.data_source == "signed-transaction"
        assert result.record.entitlement == Entitlement.PREMIUM


class TestExtractOriginalTransactionId:
    """Resolving a transaction id to its lineage."""

    @pytest.mark.asyncio
    async def test_links_lineage(self, service, store, gateway):
        gateway.get_transaction_info.return_value = GatewayResult.ok(make_transaction())

        original_id = await service.extract_original_transaction_id(USER_ID, "2000000000000001")

        assert original_id == "1000000000000001"
        row = store.rows[USER_ID]
        assert row.original_transaction_id == "1000000000000001"
        assert row.entitlement is None
        assert row.last_updated_at is None

    @pytest.mark.asyncio
    async def test_not_found(self, service, gateway):
        gateway.get_transaction_info.return_value = GatewayResult.fail(
            GatewayErrorKind.NOT_FOUND, "HTTP 404"
        )

        with pytest.raises(InternalError) as exc_info:
            await service.extract_original_transaction_id(USER_ID, "missing")

        assert exc_info.value.code == ErrorCodes.SUB_TRANSACTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_remote_failure(self, service):
        with pytest.raises(InternalError) as exc_info:
            await service.extract_original_transaction_id(USER_ID, "2000000000000001")

        assert exc_info.value.code == ErrorCodes.SUB_APP_STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_lineage_of_another_user_is_not_linked(self, service, store, gateway):
        store.seed(
            OTHER_USER_ID,
            entitlement=Entitlement.PREMIUM,
            original_transaction_id="1000000000000001",
        )
        gateway.get_transaction_info.return_value = GatewayResult.ok(make_transaction())

        original_id = await service.extract_original_transaction_id(USER_ID, "2000000000000001")

        assert original_id == "1000000000000001"
        assert USER_ID not in store.rows
        assert store.rows[OTHER_USER_ID].entitlement == Entitlement.PREMIUM
        assert store.updates == []
