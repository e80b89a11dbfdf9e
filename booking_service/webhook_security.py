import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)

# Maximum age of a signed webhook in seconds
MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    pass


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split a "t=...,v1=...,v1=..." header into timestamp and v1 signatures."""
    timestamp = None
    signatures = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    tolerance: int = MAX_WEBHOOK_AGE_SECONDS,
    now: float | None = None,
):
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = parse_signature_header(header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError:
        raise WebhookSignatureError("Invalid signature timestamp")
    if age > tolerance:
        logger.warning("Webhook timestamp too old: %ss (max: %ss)", int(age), tolerance)
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_hmac_sha256(secret, f"{timestamp}.".encode("utf-8") + payload)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")
