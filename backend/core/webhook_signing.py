"""Webhook HMAC signature generation and verification.

Webhook steps configured with a ``secret`` sign their JSON body with
HMAC-SHA256 so receivers can verify the payload came from this engine.

Headers added to outbound webhooks:
  X-Workflow-Signature: sha256=<hex_digest>
  X-Workflow-Timestamp: <unix_timestamp>
  X-Workflow-Delivery: <unique_delivery_id>

Verification:
  1. Check timestamp is within tolerance (default: 5 minutes)
  2. Compute HMAC-SHA256 over: f"{timestamp}.{body}"
  3. Compare computed signature with X-Workflow-Signature using constant-time comparison
"""

import hashlib
import hmac
import secrets
import time
from typing import Optional
from uuid import uuid4


DEFAULT_TOLERANCE_SECONDS = 300  # 5 minutes

SIGNATURE_HEADER = "X-Workflow-Signature"
TIMESTAMP_HEADER = "X-Workflow-Timestamp"
DELIVERY_HEADER = "X-Workflow-Delivery"


def _compute_signature(payload: bytes, secret: str, ts: int) -> str:
    sign_input = f"{ts}.".encode() + payload
    return hmac.new(secret.encode(), sign_input, hashlib.sha256).hexdigest()


def sign_webhook_payload(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
    delivery_id: Optional[str] = None,
) -> dict[str, str]:
    """Sign a webhook payload and return headers to include in the request.

    Args:
        payload: Raw request body bytes
        secret: Webhook signing secret (shared with receiver)
        timestamp: Unix timestamp (defaults to now)
        delivery_id: Unique delivery ID (defaults to UUID). Webhook steps pass
            their idempotency key so retried deliveries share one ID.

    Returns:
        Dict of headers to add to the webhook request
    """
    ts = timestamp or int(time.time())
    delivery = delivery_id or str(uuid4())

    return {
        SIGNATURE_HEADER: f"sha256={_compute_signature(payload, secret, ts)}",
        TIMESTAMP_HEADER: str(ts),
        DELIVERY_HEADER: delivery,
    }


def verify_webhook_signature(
    payload: bytes,
    secret: str,
    signature_header: str,
    timestamp_header: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Verify a webhook signature produced by sign_webhook_payload.

    Returns:
        True if signature is valid and timestamp is within tolerance
    """
    try:
        ts = int(timestamp_header)
    except (ValueError, TypeError):
        return False

    if abs(int(time.time()) - ts) > tolerance:
        return False

    if not signature_header.startswith("sha256="):
        return False
    expected_sig = signature_header[len("sha256="):]

    return hmac.compare_digest(_compute_signature(payload, secret, ts), expected_sig)


def generate_webhook_secret() -> str:
    """Generate a cryptographically secure webhook signing secret."""
    return f"whsec_{secrets.token_urlsafe(32)}"
