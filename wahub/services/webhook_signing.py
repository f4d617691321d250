"""
Webhook payload serialization and HMAC-SHA256 signing.

The body posted to a subscriber is the canonical JSON of the envelope, and
the signature header is the hex HMAC-SHA256 of exactly those bytes, keyed by
the subscription secret. Receivers verify with verify_signature.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

from wahub.errors import SigningError, ValidationError


def canonical_json(payload: Any) -> bytes:
    """
    Serialize payload deterministically: sorted keys, no whitespace, UTF-8.

    Raises ValidationError if payload is not JSON-serializable.
    """
    try:
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload is not JSON-serializable: {e}") from e


def build_envelope(event_type: str, data: Any, occurred_at: datetime | None = None) -> dict:
    """Wrap event data in the wire envelope {event, timestamp, data}."""
    occurred_at = occurred_at or datetime.now(timezone.utc)
    return {
        "event": event_type,
        "timestamp": occurred_at.isoformat(),
        "data": data,
    }


def _as_bytes(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return canonical_json(payload)


def compute_signature(payload: Any, secret: str) -> str:
    """
    Compute the hex HMAC-SHA256 signature of a payload.

    Args:
        payload: Raw body bytes/str, or a structure that is canonicalized first.
        secret: Subscription secret.

    Returns:
        Lowercase hex digest.

    Raises:
        SigningError: If the secret is missing or HMAC computation fails.
    """
    if not secret:
        raise SigningError("Webhook secret is missing")
    body = _as_bytes(payload)
    try:
        return hmac.new(
            key=secret.encode("utf-8"),
            msg=body,
            digestmod=hashlib.sha256,
        ).hexdigest()
    except (TypeError, ValueError) as e:
        raise SigningError(f"Could not sign webhook payload: {e}") from e


def verify_signature(payload: Any, signature: str, secret: str) -> bool:
    """
    Verify a signature in constant time.

    Returns False for a missing secret or a malformed signature instead of
    raising.
    """
    if not isinstance(signature, str) or not secret:
        return False
    try:
        expected = compute_signature(payload, secret)
    except (SigningError, ValidationError):
        return False
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
