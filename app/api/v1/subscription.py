"""
Subscription API Endpoints
==========================

Subscription status checks, client purchase sync and transaction
lineage lookup for the authenticated user.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.core.errors import (
    AuthenticationError,
    ErrorCodes,
    InternalError,
    SubscriptionStoreError,
)
from app.dependencies import (
    CurrentUser,
    get_purchase_sync_service,
    get_status_controller,
)
from app.schemas.common import ErrorResponse
from app.schemas.subscription import (
    OriginalTransactionRequest,
    OriginalTransactionResponse,
    SubscriptionStatusData,
    SubscriptionStatusResponse,
    SyncPurchaseData,
    SyncPurchaseRequest,
    SyncPurchaseResponse,
)
from app.services.purchase_sync import PurchaseSyncService
from app.services.subscription_status import SubscriptionStatusController

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid argument"},
    401: {"model": ErrorResponse, "description": "Not authenticated"},
    500: {"model": ErrorResponse, "description": "Internal error"},
}


def _ensure_same_user(current_user, requested_user_id) -> None:
    """Reject requests that name a different user than the token."""
    if requested_user_id and requested_user_id != str(current_user.user_id):
        logger.warning(
            "User %s attempted to act on behalf of %s",
            current_user.user_id,
            requested_user_id,
        )
        raise AuthenticationError(
            code=ErrorCodes.AUTH_USER_MISMATCH,
            message="Authenticated user does not match the requested user",
        )


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
    responses=ERROR_RESPONSES,
)
async def get_subscription_status(
    current_user: CurrentUser,
    controller: Annotated[SubscriptionStatusController, Depends(get_status_controller)],
    force_refresh: bool = Query(default=False),
):
    """
    Get current subscription status.

    Served from the stored record while it is fresh; use force_refresh=true
    to reconcile with the App Store immediately.
    """
    try:
        result = await controller.check_status(
            current_user.user_id,
            email=current_user.email,
            force_refresh=force_refresh,
        )
    except SubscriptionStoreError as exc:
        logger.error("Status check failed for user=%s: %s", current_user.user_id, exc)
        raise InternalError(
            code=ErrorCodes.SUB_STORE_UNAVAILABLE,
            message="Subscription data is temporarily unavailable",
        )

    return SubscriptionStatusResponse(
        success=True,
        data=SubscriptionStatusData(
            subscription=result.record,
            data_source=result.data_source,
            cache_age_ms=result.cache_age_ms,
            throttled=result.throttled,
            test_account=result.test_account,
        ),
    )


@router.post(
    "/sync",
    response_model=SyncPurchaseResponse,
    responses=ERROR_RESPONSES,
)
async def sync_purchase(
    sync_data: SyncPurchaseRequest,
    current_user: CurrentUser,
    service: Annotated[PurchaseSyncService, Depends(get_purchase_sync_service)],
):
    """
    Sync a StoreKit purchase.

    The client sends the signed transaction it received from StoreKit;
    the backend verifies it and updates the subscription record.
    """
    _ensure_same_user(current_user, sync_data.user_id)

    result = await service.sync_purchase(
        current_user.user_id,
        sync_data.signed_transaction,
        email=current_user.email,
        check_real_time_status=sync_data.check_real_time_status,
    )

    return SyncPurchaseResponse(
        success=True,
        data=SyncPurchaseData(
            transaction=result.transaction,
            subscription=result.record,
            data_source=result.data_source,
        ),
    )


@router.post(
    "/original-transaction",
    response_model=OriginalTransactionResponse,
    responses=ERROR_RESPONSES,
)
async def extract_original_transaction_id(
    request_data: OriginalTransactionRequest,
    current_user: CurrentUser,
    service: Annotated[PurchaseSyncService, Depends(get_purchase_sync_service)],
):
    """Resolve a transaction id to its original transaction id and link it."""
    _ensure_same_user(current_user, request_data.user_id)

    original_transaction_id = await service.extract_original_transaction_id(
        current_user.user_id,
        request_data.transaction_id,
    )
    return OriginalTransactionResponse(
        success=True,
        data={"original_transaction_id": original_transaction_id},
    )
