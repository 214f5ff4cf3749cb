"""
App Store Notification Ingestion
================================

Processes App Store Server Notifications V2.

Trust comes only from the signature on ``signedPayload`` and on the
transaction and renewal info inside it. The flow per delivery:

1. verify the notification envelope (401 on failure)
2. acknowledge notification types that carry no transaction
3. verify the transaction and renewal info (400 when missing, 401 when forged)
4. find the user who owns the original transaction id (unknown: 200, no write)
5. resolve, from the latest transaction or the full lineage
6. persist with ``source = webhook``

If the lineage cannot be fetched, EXPIRED, REFUND and REVOKE style
notifications (and revoked transactions) are still resolved from the
notified transaction, since their outcome is forced. For other types only
the identifiers are stored, and the cache timestamp is left as it was so
the write does not make the stored entitlement look fresh. Either way the delivery is
acknowledged; the App Store retrying would not bring new information.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import uuid

from fastapi import status

from app.core.errors import SubscriptionStoreError
from app.models.subscription import EventOutcome, UpdateSource
from app.schemas.subscription import NotificationPayload, RenewalInfo, TransactionRecord
from app.services.app_store import AppStoreGateway, GatewayErrorKind, GatewayResult
from app.services.cache import NotificationRegistry
from app.services.entitlement import (
    FORCED_EXPIRED_NOTIFICATIONS,
    FORCED_REFUNDED_NOTIFICATIONS,
    EntitlementResolver,
    requires_full_history,
)
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


# Notification types without signedTransactionInfo
NO_TRANSACTION_NOTIFICATIONS = frozenset({
    "TEST",
    "CONSUMPTION_REQUEST",
    "EXTERNAL_PURCHASE_TOKEN",
    "RENEWAL_EXTENSION",
})

FORCED_NOTIFICATIONS = FORCED_EXPIRED_NOTIFICATIONS | FORCED_REFUNDED_NOTIFICATIONS

AUTO_RENEW_SUBTYPES = {
    "AUTO_RENEW_DISABLED": False,
    "AUTO_RENEW_ENABLED": True,
}


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    PARTIAL = "partial"
    IGNORED = "ignored"
    UNKNOWN_USER = "unknown_user"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass
class WebhookResult:
    status_code: int
    outcome: WebhookOutcome
    notification_type: Optional[str] = None
    notification_uuid: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return self.status_code == status.HTTP_200_OK


def _rejected(status_code: int, reason: str, payload: Optional[NotificationPayload] = None) -> WebhookResult:
    return WebhookResult(
        status_code=status_code,
        outcome=WebhookOutcome.REJECTED,
        notification_type=payload.notification_type if payload else None,
        notification_uuid=payload.notification_uuid if payload else None,
        reason=reason,
    )


def _status_for_verification(result: GatewayResult) -> int:
    if result.error_kind == GatewayErrorKind.NOT_CONFIGURED:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if result.error_kind == GatewayErrorKind.INVALID_PAYLOAD:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_401_UNAUTHORIZED


class NotificationService:
    """Applies verified App Store notifications to subscription records."""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: AppStoreGateway,
        resolver: EntitlementResolver,
        registry: Optional[NotificationRegistry] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.registry = registry

    async def handle(self, signed_payload: str) -> WebhookResult:
        """Process one notification delivery and return the HTTP outcome."""
        verified = await self.gateway.verify_signed_payload(signed_payload)
        if not verified.success:
            logger.error("Rejected App Store notification: %s", verified.error)
            return _rejected(_status_for_verification(verified), verified.error)

        payload: NotificationPayload = verified.data
        notification_type = payload.notification_type
        subtype = payload.subtype
        logger.info(
            "App Store notification received: type=%s subtype=%s uuid=%s",
            notification_type,
            subtype,
            payload.notification_uuid,
        )

        if notification_type in NO_TRANSACTION_NOTIFICATIONS:
            return self._result(payload, WebhookOutcome.IGNORED)

        if self.registry is not None and await self.registry.is_processed(payload.notification_uuid):
            logger.info("Duplicate notification %s, skipping", payload.notification_uuid)
            return self._result(payload, WebhookOutcome.DUPLICATE)

        data = payload.data
        if data is None or not data.signed_transaction_info:
            logger.warning("Notification %s has no signedTransactionInfo", notification_type)
            return _rejected(status.HTTP_400_BAD_REQUEST, "Missing signedTransactionInfo", payload)

        tx_result = await self.gateway.verify_transaction(data.signed_transaction_info)
        if not tx_result.success:
            return _rejected(_status_for_verification(tx_result), tx_result.error, payload)
        transaction: TransactionRecord = tx_result.data

        renewal: Optional[RenewalInfo] = None
        if data.signed_renewal_info:
            renewal_result = await self.gateway.verify_renewal_info(data.signed_renewal_info)
            if not renewal_result.success:
                return _rejected(_status_for_verification(renewal_result), renewal_result.error, payload)
            renewal = renewal_result.data

        try:
            user_id = await self.store.find_user_by_original_transaction_id(
                transaction.original_transaction_id
            )
        except SubscriptionStoreError:
            logger.exception("Owner lookup failed for %s", transaction.original_transaction_id)
            return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, "Store unavailable", payload)

        if user_id is None:
            logger.warning(
                "No user linked to original transaction %s (notification %s), ignoring",
                transaction.original_transaction_id,
                notification_type,
            )
            return self._result(payload, WebhookOutcome.UNKNOWN_USER)

        return await self._apply(payload, user_id, transaction, renewal)

    async def mark_processed(self, result: WebhookResult) -> None:
        """Remember a fully handled delivery so redeliveries are skipped."""
        if self.registry is None:
            return
        if result.outcome in (WebhookOutcome.APPLIED, WebhookOutcome.PARTIAL):
            await self.registry.mark_processed(result.notification_uuid)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _apply(
        self,
        payload: NotificationPayload,
        user_id: uuid.UUID,
        transaction: TransactionRecord,
        renewal: Optional[RenewalInfo],
    ) -> WebhookResult:
        notification_type = payload.notification_type

        try:
            row = await self.store.get(user_id)
        except SubscriptionStoreError:
            logger.exception("Could not load subscription for user=%s", user_id)
            return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, "Store unavailable", payload)
        prior_trial = bool(row.has_used_trial) if row is not None else False

        full_history = requires_full_history(notification_type)
        transactions = [transaction]
        if full_history:
            history = await self.gateway.get_transaction_history(transaction.original_transaction_id)
            if history.success:
                transactions = _with_transaction(history.data, transaction)
            elif notification_type in FORCED_NOTIFICATIONS or transaction.is_revoked:
                # The outcome does not depend on the rest of the lineage.
                logger.warning(
                    "History unavailable for %s (%s), resolving %s from the notified transaction",
                    transaction.original_transaction_id,
                    history.error,
                    notification_type,
                )
            else:
                return await self._persist_partial(payload, user_id, transaction, history.error)

        auto_renew = AUTO_RENEW_SUBTYPES.get(payload.subtype)
        if auto_renew is None and renewal is not None:
            auto_renew = renewal.auto_renew_enabled

        try:
            resolved = self.resolver.resolve(
                transactions,
                prior_trial,
                full_history=full_history,
                notification_type=notification_type,
                auto_renew=auto_renew,
                grace_period_expires_date=renewal.grace_period_expires_date if renewal else None,
            )
        except ValueError as exc:
            return await self._persist_partial(payload, user_id, transaction, str(exc))

        update = resolved.to_update()
        update["notification_type"] = notification_type
        update["notification_subtype"] = payload.subtype

        try:
            await self.store.update(user_id, update, UpdateSource.WEBHOOK)
            await self.store.record_event(
                user_id,
                notification_type=notification_type,
                notification_subtype=payload.subtype,
                notification_uuid=payload.notification_uuid,
                transaction_id=transaction.transaction_id,
                outcome=EventOutcome.APPLIED,
                entitlement=resolved.entitlement,
            )
        except SubscriptionStoreError:
            logger.exception("Could not persist notification %s for user=%s", notification_type, user_id)
            return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, "Store unavailable", payload)

        logger.info(
            "Applied %s for user=%s: %s/%s",
            notification_type,
            user_id,
            resolved.entitlement.value,
            resolved.subscription_status.value,
        )
        return self._result(payload, WebhookOutcome.APPLIED, user_id)

    async def _persist_partial(
        self,
        payload: NotificationPayload,
        user_id: uuid.UUID,
        transaction: TransactionRecord,
        error: Optional[str],
    ) -> WebhookResult:
        """
        Store the identifiers we have and leave status fields alone.

        The cache timestamp is not advanced, so the stored entitlement is not
        served as fresh on the strength of this write.
        """
        logger.error(
            "Reconciliation failed for %s (user=%s, original transaction %s): %s",
            payload.notification_type,
            user_id,
            transaction.original_transaction_id,
            error,
        )
        try:
            await self.store.update(
                user_id,
                {
                    "original_transaction_id": transaction.original_transaction_id,
                    "last_transaction_id": transaction.transaction_id,
                    "product_id": transaction.product_id,
                    "purchase_date": transaction.purchase_date,
                    "expiration_date": transaction.expires_date,
                    "notification_type": payload.notification_type,
                    "notification_subtype": payload.subtype,
                },
                UpdateSource.WEBHOOK,
                touch=False,
            )
            await self.store.record_event(
                user_id,
                notification_type=payload.notification_type,
                notification_subtype=payload.subtype,
                notification_uuid=payload.notification_uuid,
                transaction_id=transaction.transaction_id,
                outcome=EventOutcome.PARTIAL,
                error=error,
            )
        except SubscriptionStoreError:
            logger.exception("Partial persistence failed for user=%s", user_id)

        return self._result(payload, WebhookOutcome.PARTIAL, user_id, reason=error)

    @staticmethod
    def _result(
        payload: NotificationPayload,
        outcome: WebhookOutcome,
        user_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> WebhookResult:
        return WebhookResult(
            status_code=status.HTTP_200_OK,
            outcome=outcome,
            notification_type=payload.notification_type,
            notification_uuid=payload.notification_uuid,
            user_id=user_id,
            reason=reason,
        )


def _with_transaction(
    history: list[TransactionRecord],
    transaction: TransactionRecord,
) -> list[TransactionRecord]:
    """History plus the notified transaction, if the history lags behind it."""
    if any(tx.transaction_id == transaction.transaction_id for tx in history):
        return list(history)
    return [*history, transaction]
