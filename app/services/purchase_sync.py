"""
Purchase Sync Service
=====================

Client-initiated reconciliation: the app submits the signed transaction
StoreKit handed it after a purchase or restore, and the backend verifies
it, resolves entitlement and persists the result.

Also resolves a bare transaction id to its original transaction id for
clients that only kept the former.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional
import uuid

from app.core.errors import (
    ErrorCodes,
    InternalError,
    SubscriptionStoreError,
    ValidationError,
)
from app.core.internal_accounts import canned_record, find_test_account
from app.models.subscription import UpdateSource
from app.schemas.subscription import SubscriptionRecord, TransactionRecord, TransactionSummary
from app.services.app_store import AppStoreGateway, GatewayErrorKind
from app.services.entitlement import EntitlementResolver, ResolvedSubscription
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import is_uuid

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    record: SubscriptionRecord
    data_source: str
    transaction: Optional[TransactionSummary] = None


class PurchaseSyncService:
    """Verifies client-submitted purchases and writes them to the store."""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: AppStoreGateway,
        resolver: EntitlementResolver,
        *,
        test_accounts: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.test_accounts = test_accounts

    async def sync_purchase(
        self,
        user_id: uuid.UUID,
        signed_transaction: str,
        *,
        email: Optional[str] = None,
        check_real_time_status: bool = False,
    ) -> SyncResult:
        """
        Verify *signed_transaction* and merge the resolved state for the user.

        Raises:
            ValidationError: the transaction is malformed or fails verification
            InternalError: verification is unavailable or the store write failed
        """
        profile = find_test_account(email, self.test_accounts)
        if profile is not None:
            return SyncResult(record=canned_record(profile), data_source="test-account")

        verified = await self.gateway.verify_transaction(signed_transaction)
        if not verified.success:
            self._raise_for_verification(user_id, verified.error_kind)
        transaction: TransactionRecord = verified.data

        if transaction.app_account_token and not is_uuid(transaction.app_account_token):
            logger.warning(
                "appAccountToken %r on transaction %s is not a UUID",
                transaction.app_account_token,
                transaction.transaction_id,
            )

        try:
            row = await self.store.get(user_id)
            owner = await self.store.find_user_by_original_transaction_id(
                transaction.original_transaction_id
            )
        except SubscriptionStoreError as exc:
            raise InternalError(
                code=ErrorCodes.SUB_STORE_UNAVAILABLE,
                message="Subscription data is temporarily unavailable",
            ) from exc

        prior_trial = bool(row.has_used_trial) if row is not None else False

        resolved = None
        data_source = "signed-transaction"
        if check_real_time_status:
            resolved = await self._resolve_real_time(transaction, prior_trial)
            if resolved is not None:
                data_source = "real-time-status"
        if resolved is None:
            resolved = self.resolver.resolve([transaction], prior_trial)

        try:
            if owner is not None and owner != user_id:
                # One purchase, one account: the previous owner loses the lineage.
                detached = await self.store.unlink_lineage(
                    transaction.original_transaction_id,
                    user_id,
                    UpdateSource.SYNC_PURCHASE_INFO,
                )
                logger.warning(
                    "Original transaction %s relinked from user(s) %s to user=%s",
                    transaction.original_transaction_id,
                    ", ".join(str(previous) for previous in detached) or owner,
                    user_id,
                )
            updated = await self.store.update(
                user_id,
                resolved.to_update(),
                UpdateSource.SYNC_PURCHASE_INFO,
            )
        except SubscriptionStoreError as exc:
            raise InternalError(
                code=ErrorCodes.SUB_STORE_UNAVAILABLE,
                message="Purchase could not be saved",
            ) from exc

        logger.info(
            "Synced purchase for user=%s: transaction=%s product=%s -> %s/%s",
            user_id,
            transaction.transaction_id,
            transaction.product_id,
            resolved.entitlement.value,
            resolved.subscription_status.value,
        )

        return SyncResult(
            record=SubscriptionRecord.from_row(updated),
            data_source=data_source,
            transaction=TransactionSummary(
                transaction_id=transaction.transaction_id,
                original_transaction_id=transaction.original_transaction_id,
                product_id=transaction.product_id,
                purchase_date=transaction.purchase_date,
                expires_date=transaction.expires_date,
                offer_type=transaction.offer_type,
                environment=transaction.environment,
            ),
        )

    async def extract_original_transaction_id(
        self,
        user_id: uuid.UUID,
        transaction_id: str,
    ) -> str:
        """
        Look up *transaction_id* on the App Store and link its lineage to the user.

        A lineage that already belongs to another user is returned but not
        linked.

        Raises:
            InternalError: the transaction could not be fetched or saved
        """
        result = await self.gateway.get_transaction_info(transaction_id)
        if not result.success:
            logger.error(
                "Could not fetch transaction %s for user=%s: %s",
                transaction_id,
                user_id,
                result.error,
            )
            if result.error_kind == GatewayErrorKind.NOT_FOUND:
                raise InternalError(
                    code=ErrorCodes.SUB_TRANSACTION_NOT_FOUND,
                    message="Transaction not found",
                )
            raise InternalError(
                code=ErrorCodes.SUB_APP_STORE_UNAVAILABLE,
                message="Failed to retrieve transaction information",
            )

        transaction = result.data
        try:
            owner = await self.store.find_user_by_original_transaction_id(
                transaction.original_transaction_id
            )
            if owner is not None and owner != user_id:
                # Only a signed transaction (sync) moves a lineage between users.
                logger.warning(
                    "Original transaction %s belongs to user=%s, not linking it to user=%s",
                    transaction.original_transaction_id,
                    owner,
                    user_id,
                )
                return transaction.original_transaction_id

            await self.store.update(
                user_id,
                {
                    "original_transaction_id": transaction.original_transaction_id,
                    "last_transaction_id": transaction.transaction_id,
                    "product_id": transaction.product_id,
                },
                UpdateSource.SYNC_PURCHASE_INFO,
                touch=False,
            )
        except SubscriptionStoreError as exc:
            raise InternalError(
                code=ErrorCodes.SUB_STORE_UNAVAILABLE,
                message="Transaction could not be saved",
            ) from exc

        logger.info(
            "Linked original transaction %s to user=%s",
            transaction.original_transaction_id,
            user_id,
        )
        return transaction.original_transaction_id

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _resolve_real_time(
        self,
        transaction: TransactionRecord,
        prior_has_used_trial: bool,
    ) -> Optional[ResolvedSubscription]:
        result = await self.gateway.get_subscription_status(transaction.original_transaction_id)
        if not result.success:
            logger.warning(
                "Real-time status unavailable for %s, using the submitted transaction: %s",
                transaction.original_transaction_id,
                result.error,
            )
            return None

        resolved = self.resolver.resolve_status_groups(result.data, prior_has_used_trial)
        if resolved is None:
            logger.info(
                "Subscription status for %s has no transactions, using the submitted transaction",
                transaction.original_transaction_id,
            )
        return resolved

    @staticmethod
    def _raise_for_verification(user_id: uuid.UUID, kind: Optional[GatewayErrorKind]) -> None:
        if kind == GatewayErrorKind.NOT_CONFIGURED:
            logger.error("Purchase sync for user=%s rejected: verifier not configured", user_id)
            raise InternalError(
                code=ErrorCodes.SUB_APP_STORE_UNAVAILABLE,
                message="Purchase verification is unavailable",
            )
        if kind == GatewayErrorKind.INVALID_PAYLOAD:
            raise ValidationError(
                message="Signed transaction is missing required fields",
                field="signed_transaction",
                code=ErrorCodes.SUB_INVALID_TRANSACTION,
            )
        raise ValidationError(
            message="Signed transaction could not be verified",
            field="signed_transaction",
            code=ErrorCodes.SUB_VERIFICATION_FAILED,
        )
