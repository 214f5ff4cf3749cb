"""
App Store Gateway
=================

Wraps the App Store Server API client and the signed-data verifier from
``app-store-server-library``.

Every operation returns a ``GatewayResult``; nothing raises across this
boundary. Remote calls are bounded by ``APPSTORE_API_TIMEOUT_SECONDS`` and
retried once with backoff on timeouts, connection failures and 5xx
responses. Any further retrying is the caller's decision.

Signed data is verified and decoded by ``SignedDataVerifier`` wherever it
comes from (a client, a notification or an API response); the verified
library payloads are then mapped onto the local records.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx
from appstoreserverlibrary.api_client import APIException, AsyncAppStoreServerAPIClient
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.models.JWSRenewalInfoDecodedPayload import JWSRenewalInfoDecodedPayload
from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload
from appstoreserverlibrary.models.ResponseBodyV2DecodedPayload import ResponseBodyV2DecodedPayload
from appstoreserverlibrary.models.TransactionHistoryRequest import TransactionHistoryRequest
from appstoreserverlibrary.signed_data_verifier import SignedDataVerifier, VerificationException

from app.config import Settings, settings
from app.core.errors import DecodeError
from app.schemas.subscription import (
    NotificationPayload,
    RenewalInfo,
    StatusGroupItem,
    TransactionRecord,
)
from app.services.transaction_decoder import (
    notification_from_payload,
    renewal_from_payload,
    transaction_from_payload,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GatewayErrorKind(str, Enum):
    """Failure categories reported by the gateway."""
    VERIFICATION = "verification"
    INVALID_PAYLOAD = "invalid_payload"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({GatewayErrorKind.TIMEOUT, GatewayErrorKind.SERVER_ERROR})


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    """Tagged success/failure result."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[GatewayErrorKind] = None

    @classmethod
    def ok(cls, data: T) -> "GatewayResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: GatewayErrorKind, error: str) -> "GatewayResult[T]":
        return cls(success=False, error=error, error_kind=kind)


def _kind_for_status(status_code: Optional[int]) -> GatewayErrorKind:
    if status_code is None:
        return GatewayErrorKind.UNKNOWN
    if status_code == 401:
        return GatewayErrorKind.UNAUTHORIZED
    if status_code == 404:
        return GatewayErrorKind.NOT_FOUND
    if status_code == 429:
        return GatewayErrorKind.RATE_LIMITED
    if status_code >= 500:
        return GatewayErrorKind.SERVER_ERROR
    if status_code == 400:
        return GatewayErrorKind.INVALID_PAYLOAD
    return GatewayErrorKind.UNKNOWN


def transaction_record(payload: JWSTransactionDecodedPayload) -> TransactionRecord:
    """Map a verified library transaction onto a TransactionRecord."""
    return transaction_from_payload({
        "transactionId": payload.transactionId,
        "originalTransactionId": payload.originalTransactionId,
        "productId": payload.productId,
        "purchaseDate": payload.purchaseDate,
        "expiresDate": payload.expiresDate,
        "offerType": payload.rawOfferType,
        "revocationDate": payload.revocationDate,
        "revocationReason": payload.rawRevocationReason,
        "appAccountToken": payload.appAccountToken,
        "environment": payload.rawEnvironment,
        "bundleId": payload.bundleId,
    })


def renewal_record(payload: JWSRenewalInfoDecodedPayload) -> RenewalInfo:
    """Map verified library renewal info onto RenewalInfo."""
    return renewal_from_payload({
        "originalTransactionId": payload.originalTransactionId,
        "autoRenewStatus": payload.rawAutoRenewStatus,
        "autoRenewProductId": payload.autoRenewProductId,
        "expirationIntent": payload.rawExpirationIntent,
        "gracePeriodExpiresDate": payload.gracePeriodExpiresDate,
        "isInBillingRetryPeriod": payload.isInBillingRetryPeriod,
    })


def notification_record(payload: ResponseBodyV2DecodedPayload) -> NotificationPayload:
    """Map a verified library notification body onto a NotificationPayload."""
    data = payload.data
    return notification_from_payload({
        "notificationType": payload.rawNotificationType,
        "subtype": payload.rawSubtype,
        "notificationUUID": payload.notificationUUID,
        "signedDate": payload.signedDate,
        "data": None if data is None else {
            "signedTransactionInfo": data.signedTransactionInfo,
            "signedRenewalInfo": data.signedRenewalInfo,
            "bundleId": data.bundleId,
            "environment": data.rawEnvironment,
            "status": getattr(data, "rawStatus", None),
        },
    })


def load_root_certificates(directory: str) -> list[bytes]:
    """Read Apple root certificates (``.cer``/``.der``) from *directory*."""
    path = Path(directory)
    if not path.is_dir():
        return []
    return [
        cert.read_bytes()
        for cert in sorted(path.iterdir())
        if cert.suffix.lower() in (".cer", ".der")
    ]


class AppStoreGateway:
    """App Store Server API and signature verification behind tagged results."""

    def __init__(
        self,
        client: Optional[AsyncAppStoreServerAPIClient] = None,
        verifier: Optional[SignedDataVerifier] = None,
        *,
        timeout: float = 10.0,
        retry_backoff: float = 0.5,
        max_history_pages: int = 20,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.verifier = verifier
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.max_history_pages = max_history_pages
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "AppStoreGateway":
        """Build the client and verifier from application settings."""
        environment = Environment(config.APPSTORE_ENVIRONMENT)
        client = None
        verifier = None

        if config.appstore_configured:
            client = AsyncAppStoreServerAPIClient(
                signing_key=config.appstore_private_key_bytes,
                key_id=config.APPSTORE_KEY_ID,
                issuer_id=config.APPSTORE_ISSUER_ID,
                bundle_id=config.APPSTORE_BUNDLE_ID,
                environment=environment,
            )
            logger.info("App Store Server API client initialized (%s)", environment.value)
        else:
            logger.warning("App Store API credentials not configured; remote calls disabled")

        root_certificates = load_root_certificates(config.APPSTORE_ROOT_CERTIFICATES_DIR)
        if root_certificates and config.APPSTORE_BUNDLE_ID:
            verifier = SignedDataVerifier(
                root_certificates=root_certificates,
                enable_online_checks=config.APPSTORE_ENABLE_ONLINE_CHECKS,
                environment=environment,
                bundle_id=config.APPSTORE_BUNDLE_ID,
                app_apple_id=config.APPSTORE_APP_APPLE_ID,
            )
        else:
            logger.warning(
                "No Apple root certificates in %s; signed payloads cannot be verified",
                config.APPSTORE_ROOT_CERTIFICATES_DIR,
            )

        return cls(
            client,
            verifier,
            timeout=config.APPSTORE_API_TIMEOUT_SECONDS,
            retry_backoff=config.APPSTORE_API_RETRY_BACKOFF_SECONDS,
            max_history_pages=config.APPSTORE_HISTORY_MAX_PAGES,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.async_close()

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def verify_signed_payload(self, envelope: str) -> GatewayResult[NotificationPayload]:
        """Verify a server notification ``signedPayload`` and decode it."""
        return await self._verify(
            "notification",
            envelope,
            "verify_and_decode_notification",
            notification_record,
        )

    async def verify_transaction(self, envelope: str) -> GatewayResult[TransactionRecord]:
        """Verify a signed transaction from a client, a notification or the API."""
        return await self._verify(
            "transaction",
            envelope,
            "verify_and_decode_signed_transaction",
            transaction_record,
        )

    async def verify_renewal_info(self, envelope: str) -> GatewayResult[RenewalInfo]:
        """Verify signed renewal info from a notification."""
        return await self._verify(
            "renewal info",
            envelope,
            "verify_and_decode_renewal_info",
            renewal_record,
        )

    async def _verify(
        self,
        label: str,
        envelope: str,
        method_name: str,
        to_record: Callable[[Any], T],
    ) -> GatewayResult[T]:
        if self.verifier is None:
            return GatewayResult.fail(
                GatewayErrorKind.NOT_CONFIGURED,
                "Signed data verifier not configured",
            )

        try:
            # Online revocation checks do blocking network I/O.
            decoded = await asyncio.to_thread(getattr(self.verifier, method_name), envelope)
        except VerificationException as exc:
            logger.error("App Store %s signature verification failed: %s", label, exc.status)
            return GatewayResult.fail(GatewayErrorKind.VERIFICATION, f"{label} verification failed")
        except Exception as exc:
            logger.error("App Store %s could not be verified: %s", label, exc)
            return GatewayResult.fail(GatewayErrorKind.VERIFICATION, f"{label} verification failed")

        try:
            return GatewayResult.ok(to_record(decoded))
        except DecodeError as exc:
            logger.warning("Verified %s has an unexpected payload: %s", label, exc)
            return GatewayResult.fail(GatewayErrorKind.INVALID_PAYLOAD, str(exc))

    # -------------------------------------------------------------------------
    # Remote API
    # -------------------------------------------------------------------------

    async def get_transaction_info(self, transaction_id: str) -> GatewayResult[TransactionRecord]:
        """Fetch a single transaction and verify its signature."""
        result = await self._call(
            "get_transaction_info",
            lambda: self.client.get_transaction_info(transaction_id),
        )
        if not result.success:
            return result

        signed = result.data.signedTransactionInfo
        if not signed:
            return GatewayResult.fail(
                GatewayErrorKind.INVALID_PAYLOAD,
                "Response has no signedTransactionInfo",
            )
        return await self.verify_transaction(signed)

    async def get_transaction_history(
        self,
        original_transaction_id: str,
    ) -> GatewayResult[list[TransactionRecord]]:
        """Fetch every transaction in a lineage, following pagination."""
        records: list[TransactionRecord] = []
        revision: Optional[str] = None

        for _ in range(self.max_history_pages):
            result = await self._call(
                "get_transaction_history",
                lambda: self.client.get_transaction_history(
                    original_transaction_id,
                    revision,
                    TransactionHistoryRequest(),
                ),
            )
            if not result.success:
                return result

            response = result.data
            for signed in response.signedTransactions or []:
                decoded = await self.verify_transaction(signed)
                if not decoded.success:
                    return decoded
                records.append(decoded.data)

            if not response.hasMore:
                break
            revision = response.revision
        else:
            logger.warning(
                "Transaction history for %s exceeds %d pages, using what was fetched",
                original_transaction_id,
                self.max_history_pages,
            )

        if not records:
            return GatewayResult.fail(
                GatewayErrorKind.NOT_FOUND,
                "No transactions in history",
            )
        return GatewayResult.ok(records)

    async def get_subscription_status(
        self,
        original_transaction_id: str,
    ) -> GatewayResult[list[StatusGroupItem]]:
        """Fetch the latest transaction and renewal info per subscription group."""
        result = await self._call(
            "get_all_subscription_statuses",
            lambda: self.client.get_all_subscription_statuses(original_transaction_id),
        )
        if not result.success:
            return result

        items: list[StatusGroupItem] = []
        for group in result.data.data or []:
            for last in group.lastTransactions or []:
                status = getattr(last, "rawStatus", None)
                if status is None and last.status is not None:
                    status = last.status.value
                if status is None or not last.signedTransactionInfo:
                    continue

                transaction = await self.verify_transaction(last.signedTransactionInfo)
                if not transaction.success:
                    return transaction

                renewal = None
                if last.signedRenewalInfo:
                    decoded_renewal = await self.verify_renewal_info(last.signedRenewalInfo)
                    if decoded_renewal.success:
                        renewal = decoded_renewal.data
                    else:
                        logger.warning(
                            "Ignoring renewal info for %s: %s",
                            last.originalTransactionId,
                            decoded_renewal.error,
                        )

                items.append(StatusGroupItem(
                    status=status,
                    original_transaction_id=last.originalTransactionId,
                    transaction=transaction.data,
                    renewal=renewal,
                ))

        return GatewayResult.ok(items)

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
    ) -> GatewayResult[T]:
        if self.client is None:
            return GatewayResult.fail(
                GatewayErrorKind.NOT_CONFIGURED,
                "App Store API client not configured",
            )

        attempts = 2
        for attempt in range(1, attempts + 1):
            try:
                return GatewayResult.ok(
                    await asyncio.wait_for(factory(), timeout=self.timeout)
                )
            except asyncio.TimeoutError:
                kind, error = GatewayErrorKind.TIMEOUT, f"{operation} timed out"
            except APIException as exc:
                kind = _kind_for_status(exc.http_status_code)
                error = f"{operation} failed with HTTP {exc.http_status_code}"
            except httpx.HTTPError as exc:
                kind, error = GatewayErrorKind.SERVER_ERROR, f"{operation} connection error: {exc}"
            except Exception as exc:
                logger.exception("Unexpected App Store API error in %s", operation)
                return GatewayResult.fail(GatewayErrorKind.UNKNOWN, f"{operation} failed: {exc}")

            if kind in RETRYABLE_KINDS and attempt < attempts:
                logger.warning("%s (attempt %d), retrying", error, attempt)
                await self._sleep(self.retry_backoff * attempt)
                continue

            logger.error("%s", error)
            return GatewayResult.fail(kind, error)

        return GatewayResult.fail(GatewayErrorKind.UNKNOWN, f"{operation} failed")
