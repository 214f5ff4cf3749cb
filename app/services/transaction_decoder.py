"""
Transaction Decoder
===================

Decodes the payload part of App Store JWS envelopes
(``header.payload.signature``) into typed records.

Nothing here checks signatures. The App Store gateway verifies envelopes
with the signed-data verifier and builds records from the verified
payloads through the ``*_from_payload`` helpers.
"""

import base64
import binascii
import json
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import InvalidEncodingError, MalformedEnvelopeError, MissingFieldError
from app.schemas.subscription import NotificationPayload, RenewalInfo, TransactionRecord

REQUIRED_TRANSACTION_FIELDS = ("transactionId", "originalTransactionId", "productId")


def decode_payload(envelope: str) -> dict[str, Any]:
    """
    Return the JSON object carried in the middle part of *envelope*.

    Raises:
        MalformedEnvelopeError: the envelope does not have three parts
        InvalidEncodingError: the payload is not base64url JSON object
    """
    if not isinstance(envelope, str):
        raise MalformedEnvelopeError("Signed envelope must be a string")

    parts = envelope.split(".")
    if len(parts) != 3:
        raise MalformedEnvelopeError(
            f"Signed envelope must have 3 parts, got {len(parts)}"
        )

    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidEncodingError(f"Payload is not base64url JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidEncodingError("Payload is not a JSON object")
    return payload


def transaction_from_payload(payload: dict[str, Any]) -> TransactionRecord:
    """Build a TransactionRecord from an already decoded payload dict."""
    for field in REQUIRED_TRANSACTION_FIELDS:
        if payload.get(field) in (None, ""):
            raise MissingFieldError(field)
    try:
        return TransactionRecord.model_validate(payload)
    except PydanticValidationError as exc:
        raise InvalidEncodingError(f"Unexpected transaction payload: {exc}") from exc


def renewal_from_payload(payload: dict[str, Any]) -> RenewalInfo:
    """Build RenewalInfo from an already decoded payload dict."""
    try:
        return RenewalInfo.model_validate(payload)
    except PydanticValidationError as exc:
        raise InvalidEncodingError(f"Unexpected renewal payload: {exc}") from exc


def notification_from_payload(payload: dict[str, Any]) -> NotificationPayload:
    """Build a NotificationPayload from an already decoded payload dict."""
    if not payload.get("notificationType"):
        raise MissingFieldError("notificationType")
    try:
        return NotificationPayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise InvalidEncodingError(f"Unexpected notification payload: {exc}") from exc


def decode_transaction(envelope: str) -> TransactionRecord:
    """Decode a signed transaction envelope."""
    return transaction_from_payload(decode_payload(envelope))


def decode_renewal_info(envelope: str) -> RenewalInfo:
    """Decode a signed renewal info envelope."""
    return renewal_from_payload(decode_payload(envelope))


def decode_notification(envelope: str) -> NotificationPayload:
    """Decode a server notification envelope (``signedPayload``)."""
    return notification_from_payload(decode_payload(envelope))
