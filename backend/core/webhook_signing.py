"""HMAC-SHA256 signing for inbound webhook deliveries.

A sender signs ``f"{timestamp}.".encode() + body`` with the workflow's
webhook secret and sends:

  X-Signature: sha256=<hex_digest>
  X-Timestamp: <unix_timestamp>

Verification rejects stale timestamps and compares digests in constant
time.
"""

import hashlib
import hmac
import secrets
import time
from typing import Optional

from core.exceptions import WebhookSignatureError

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + payload,
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> dict[str, str]:
    """Headers a sender attaches to a signed delivery."""
    ts = timestamp or int(time.time())
    return {
        SIGNATURE_HEADER: compute_signature(payload, secret, ts),
        TIMESTAMP_HEADER: str(ts),
        "Content-Type": "application/json",
    }


def verify_signature(
    payload: bytes,
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """Check a delivery's signature.

    Raises:
        WebhookSignatureError: missing headers, stale timestamp or bad digest
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature or not timestamp:
        raise WebhookSignatureError("Missing webhook signature headers")

    try:
        ts = int(timestamp)
    except (TypeError, ValueError) as e:
        raise WebhookSignatureError("Invalid webhook timestamp") from e

    current = int(now if now is not None else time.time())
    if tolerance and abs(current - ts) > tolerance:
        raise WebhookSignatureError("Webhook timestamp outside tolerance")

    if not signature.startswith(SIGNATURE_PREFIX):
        raise WebhookSignatureError("Unsupported signature scheme")

    expected = compute_signature(payload, secret, ts)
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError()


def generate_webhook_secret() -> str:
    """Generate a webhook signing secret."""
    return f"whsec_{secrets.token_urlsafe(32)}"
