"""
Webhook Security Module

Signature verification for the inbound reply webhook posted by the inbox sync:
- Constant-time signature comparison
- Timestamp validation against replays
- Raw body read before parsing so the signed bytes are exact
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

from .config import INBOUND_WEBHOOK_SECRET

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

SIGNATURE_HEADER = "X-Scheduler-Signature"
TIMESTAMP_HEADER = "X-Scheduler-Timestamp"


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign_payload(secret: str, payload: bytes, timestamp: Optional[str] = None) -> str:
    """Header value the sender must present: sha256=<hex of HMAC over "timestamp.body" or body>"""
    message = f"{timestamp}.".encode("utf-8") + payload if timestamp else payload
    return f"sha256={compute_hmac_sha256(secret, message)}"


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[float] = None) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid (or absent), False otherwise
    """
    if not timestamp:
        return True

    try:
        webhook_time = int(timestamp)
        current_time = int(now if now is not None else time.time())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def verify_signature(secret: str, payload: bytes, signature_header: str, timestamp: Optional[str] = None) -> None:
    """Raise WebhookSignatureError unless signature_header matches the payload"""
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature")
    if not signature_header.startswith("sha256="):
        raise WebhookSignatureError("Invalid signature format")
    if not verify_timestamp(timestamp):
        raise WebhookSignatureError("Webhook timestamp expired")

    expected = sign_payload(secret, payload, timestamp)
    if not constant_time_compare(expected, signature_header):
        raise WebhookSignatureError("Invalid webhook signature")


async def verify_inbound_signature(request: Request) -> bytes:
    """
    FastAPI dependency for the inbound reply webhook. Returns the raw body.
    When INBOUND_WEBHOOK_SECRET is unset verification is skipped (local development).
    """
    raw_body = await request.body()

    if not INBOUND_WEBHOOK_SECRET:
        logger.warning("⚠️ INBOUND_WEBHOOK_SECRET not set - accepting unsigned inbound webhook")
        return raw_body

    try:
        verify_signature(
            INBOUND_WEBHOOK_SECRET,
            raw_body,
            request.headers.get(SIGNATURE_HEADER, ""),
            request.headers.get(TIMESTAMP_HEADER),
        )
    except WebhookSignatureError as e:
        logger.error(f"❌ Inbound webhook rejected: {str(e)}")
        raise HTTPException(status_code=401, detail=str(e)) from e

    logger.debug("✅ Inbound webhook signature verified")
    return raw_body
