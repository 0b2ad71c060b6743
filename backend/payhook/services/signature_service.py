"""Webhook signature and freshness verification

- HMAC-SHA256 (hex) over the signed sub-object, compared in constant time
- No secret configured -> signatures are not checked (logged at startup by config)
- Timestamp header is optional; when present it must be within the tolerance window
"""
import hashlib
import hmac
import logging
import time
from typing import Optional

from payhook.core.config import settings
from payhook.core.errors import WebhookValidationError

logger = logging.getLogger(__name__)


def compute_signature(content: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), content, hashlib.sha256).hexdigest()


def verify_signature(content: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Return True when signature matches HMAC-SHA256(secret, content)"""
    secret = settings.PROVIDER_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        return True
    if not signature:
        return False
    expected = compute_signature(content, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def is_timestamp_fresh(timestamp: str, tolerance_seconds: Optional[int] = None, now: Optional[float] = None) -> bool:
    """Unix-seconds timestamp within +/- tolerance of now; unparseable is stale"""
    tolerance = settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    try:
        ts = int(str(timestamp).strip())
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    return abs(current - ts) <= tolerance


def validate_webhook(
    content: bytes,
    signature: Optional[str],
    timestamp: Optional[str] = None,
    secret: Optional[str] = None
) -> None:
    """Raise WebhookValidationError for a bad signature or stale timestamp"""
    if timestamp is not None and not is_timestamp_fresh(timestamp):
        logger.warning(f"Rejected webhook with stale or invalid timestamp: {timestamp}")
        raise WebhookValidationError("Invalid timestamp", "Webhook timestamp outside tolerance window")

    if not verify_signature(content, signature, secret):
        logger.warning("Rejected webhook with invalid signature")
        raise WebhookValidationError("Invalid signature", "Webhook signature verification failed")
