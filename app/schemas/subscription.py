"""
Subscription Schemas
====================

Pydantic models for decoded App Store payloads, the subscription record
and the subscription endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import (
    Entitlement,
    SubscriptionStatus,
    SubscriptionType,
    UpdateSource,
)


# ─── Decoded App Store Payloads ──────────────────────────────────────────────


class AppStorePayload(BaseModel):
    """Base for models parsed from decoded JWS payloads (camelCase keys)."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


class TransactionRecord(AppStorePayload):
    """
    A single decoded App Store transaction.

    ``original_transaction_id`` is stable across every renewal of one
    subscription; ``transaction_id`` changes on each renewal.
    """

    transaction_id: str = Field(alias="transactionId")
    original_transaction_id: str = Field(alias="originalTransactionId")
    product_id: str = Field(alias="productId")
    purchase_date: Optional[int] = Field(default=None, alias="purchaseDate")
    expires_date: Optional[int] = Field(default=None, alias="expiresDate")
    offer_type: Optional[int] = Field(default=None, alias="offerType")
    revocation_date: Optional[int] = Field(default=None, alias="revocationDate")
    revocation_reason: Optional[int] = Field(default=None, alias="revocationReason")
    app_account_token: Optional[str] = Field(default=None, alias="appAccountToken")
    environment: Optional[str] = None
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")

    @property
    def is_revoked(self) -> bool:
        return self.revocation_date is not None


class RenewalInfo(AppStorePayload):
    """Decoded ``signedRenewalInfo``."""

    original_transaction_id: Optional[str] = Field(default=None, alias="originalTransactionId")
    auto_renew_status: Optional[int] = Field(default=None, alias="autoRenewStatus")
    auto_renew_product_id: Optional[str] = Field(default=None, alias="autoRenewProductId")
    expiration_intent: Optional[int] = Field(default=None, alias="expirationIntent")
    grace_period_expires_date: Optional[int] = Field(default=None, alias="gracePeriodExpiresDate")
    is_in_billing_retry_period: Optional[bool] = Field(default=None, alias="isInBillingRetryPeriod")

    @property
    def auto_renew_enabled(self) -> Optional[bool]:
        if self.auto_renew_status is None:
            return None
        return self.auto_renew_status == 1


class NotificationData(AppStorePayload):
    signed_transaction_info: Optional[str] = Field(default=None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[str] = Field(default=None, alias="signedRenewalInfo")
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    environment: Optional[str] = None
    status: Optional[int] = None


class NotificationPayload(AppStorePayload):
    """Decoded App Store Server Notification V2 body."""

    notification_type: str = Field(alias="notificationType")
    subtype: Optional[str] = None
    notification_uuid: Optional[str] = Field(default=None, alias="notificationUUID")
    signed_date: Optional[int] = Field(default=None, alias="signedDate")
    data: Optional[NotificationData] = None


class StatusGroupItem(BaseModel):
    """
    One lineage entry from the subscription status endpoint.

    ``status`` uses App Store codes: 1 active, 2 expired, 3 billing retry,
    4 billing grace period, 5 revoked.
    """

    status: int
    original_transaction_id: Optional[str] = None
    transaction: TransactionRecord
    renewal: Optional[RenewalInfo] = None


# ─── Subscription Record ─────────────────────────────────────────────────────


class SubscriptionRecord(BaseModel):
    """Serialized view of the canonical per-user subscription record."""

    model_config = ConfigDict(from_attributes=True)

    entitlement: Entitlement = Entitlement.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.NEVER_SUBSCRIBED
    has_used_trial: bool = False
    auto_renew_enabled: Optional[bool] = None
    subscription_type: Optional[SubscriptionType] = None
    expiration_date: Optional[int] = None
    grace_period_expires_date: Optional[int] = None
    original_transaction_id: Optional[str] = None
    last_transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    offer_type: Optional[int] = None
    purchase_date: Optional[int] = None
    app_account_token: Optional[str] = None
    environment: Optional[str] = None
    notification_type: Optional[str] = None
    notification_subtype: Optional[str] = None
    last_updated_at: Optional[datetime] = None
    last_update_source: Optional[UpdateSource] = None
    data_version: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "SubscriptionRecord":
        """Build from an ORM row; a partial row reads as FREE/UNVERIFIED."""
        data = {
            name: getattr(row, name)
            for name in cls.model_fields
            if getattr(row, name, None) is not None
        }
        if "entitlement" not in data:
            data["entitlement"] = Entitlement.FREE
            data.setdefault("subscription_status", SubscriptionStatus.UNVERIFIED)
        return cls(**data)


# ─── Request / Response Schemas ──────────────────────────────────────────────


class SubscriptionStatusData(BaseModel):
    subscription: SubscriptionRecord
    data_source: str
    cache_age_ms: Optional[int] = None
    throttled: bool = False
    test_account: Optional[str] = None


class SubscriptionStatusResponse(BaseModel):
    """Response schema for subscription status."""

    success: bool = True
    data: SubscriptionStatusData


class SyncPurchaseRequest(BaseModel):
    """Request schema for a client-submitted purchase."""

    signed_transaction: str = Field(min_length=1, description="JWS transaction from StoreKit 2")
    check_real_time_status: bool = False
    user_id: Optional[str] = None


class TransactionSummary(BaseModel):
    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: Optional[int] = None
    expires_date: Optional[int] = None
    offer_type: Optional[int] = None
    environment: Optional[str] = None


class SyncPurchaseData(BaseModel):
    transaction: Optional[TransactionSummary] = None
    subscription: SubscriptionRecord
    data_source: str


class SyncPurchaseResponse(BaseModel):
    """Response schema for purchase sync."""

    success: bool = True
    data: SyncPurchaseData
    message: str = "Purchase synchronized"


class OriginalTransactionRequest(BaseModel):
    """Request schema for resolving a transaction's lineage id."""

    transaction_id: str = Field(min_length=1)
    user_id: Optional[str] = None


class OriginalTransactionResponse(BaseModel):
    success: bool = True
    data: dict[str, str]
