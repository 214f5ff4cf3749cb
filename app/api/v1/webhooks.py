"""
Webhooks API Endpoints
======================

Receives App Store Server Notifications V2.

Authentication:
    None at the HTTP level. Apple signs ``signedPayload`` (and the
    transaction and renewal info inside it); only verified payloads are
    acted on.

Idempotency:
    Each notification carries a ``notificationUUID``. Processed ids are
    kept in Redis (with TTL) so redeliveries are acknowledged without
    reprocessing.

Responses:
    200 processed or nothing to do, 400 malformed, 401 verification
    failed, 405 wrong method, 500 store failure (Apple retries).
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import DBSession, get_notification_service
from app.services.notifications import NotificationService, WebhookOutcome

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/app-store")
async def app_store_notification(
    request: Request,
    db: DBSession,
    service: Annotated[NotificationService, Depends(get_notification_service)],
):
    """
    Handle an App Store server notification.

    Body: ``{"signedPayload": "<JWS>"}``.
    """
    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Invalid webhook payload: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    signed_payload = payload.get("signedPayload") if isinstance(payload, dict) else None
    if not signed_payload or not isinstance(signed_payload, str):
        logger.warning("Webhook received without signedPayload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing signedPayload",
        )

    # ── Process notification ──────────────────────────────────────────────
    result = await service.handle(signed_payload)

    if not result.acknowledged:
        await db.rollback()
        raise HTTPException(
            status_code=result.status_code,
            detail=result.reason or "Notification rejected",
        )

    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        if result.outcome != WebhookOutcome.PARTIAL:
            logger.exception(
                "Webhook commit failed: type=%s uuid=%s",
                result.notification_type,
                result.notification_uuid,
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error processing webhook",
            )
        logger.exception(
            "Partial reconciliation could not be saved: type=%s uuid=%s",
            result.notification_type,
            result.notification_uuid,
        )
        return {"received": True, "outcome": result.outcome.value}

    # Mark as processed only after a successful commit
    await service.mark_processed(result)

    logger.info(
        "Webhook processed: type=%s uuid=%s outcome=%s user=%s",
        result.notification_type,
        result.notification_uuid,
        result.outcome.value,
        result.user_id,
    )
    return {"received": True, "outcome": result.outcome.value}
