"""Stripe webhook signature verification.

Verification runs over the exact raw request bytes. Re-serializing the JSON
before checking would change whitespace or key order and break the HMAC.
"""

import json
from typing import Any

import stripe

from app.core.exceptions import VerificationError


def verify(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int | None = None,
) -> dict[str, Any]:
    """Authenticate a webhook delivery and return its decoded event payload.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header (t=...,v1=...)
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum accepted age of the signature timestamp, in seconds.
            None or 0 disables the age check.

    Returns:
        The event as a dict with at least ``id``, ``type`` and ``data.object``.

    Raises:
        VerificationError: reason is missing_signature, bad_signature or malformed_payload
    """
    if not signature_header or not signature_header.strip():
        raise VerificationError(VerificationError.MISSING_SIGNATURE)

    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "body is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise VerificationError(VerificationError.BAD_SIGNATURE, str(exc))

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "body is not valid JSON")

    _check_shape(payload)
    return payload


def _check_shape(payload: Any) -> None:
    if not isinstance(payload, dict):
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "event is not an object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "missing event id")
    if not isinstance(event_type, str) or not event_type:
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "missing event type")

    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise VerificationError(VerificationError.MALFORMED_PAYLOAD, "missing data.object")
