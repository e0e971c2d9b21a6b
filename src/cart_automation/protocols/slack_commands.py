"""Slack slash command support: request signing and command replies.

Slack signs every command request with the app's signing secret::

    v0=hex(hmac_sha256(secret, "v0:{timestamp}:{raw body}"))

Requests older than :data:`MAX_REQUEST_AGE` seconds are rejected to stop
replays.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

MAX_REQUEST_AGE = 60 * 5

CHECKOUT_USAGE = "Please provide a run ID. Usage: /target-checkout [run_id]"


def compute_signature(signing_secret: str, timestamp: str, body: bytes) -> str:
    """Return the ``X-Slack-Signature`` value Slack would send for *body*."""
    base = b"v0:" + timestamp.encode() + b":" + body
    digest = hmac.new(signing_secret.encode(), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def verify_slack_request(
    signing_secret: str,
    signature: str | None,
    timestamp: str | None,
    body: bytes,
    now: float | None = None,
) -> bool:
    """Check a slash command request against the signing secret."""
    if not signing_secret or not signature or not timestamp:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > MAX_REQUEST_AGE:
        logger.warning("slack_request_stale", timestamp=timestamp)
        return False

    expected = compute_signature(signing_secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def ephemeral(text: str) -> dict[str, Any]:
    """Reply only the invoking user sees."""
    return {"response_type": "ephemeral", "text": text}


def in_channel(text: str) -> dict[str, Any]:
    """Reply visible to the whole channel."""
    return {"response_type": "in_channel", "text": text}


def checkout_started_reply(run_id: str) -> dict[str, Any]:
    return in_channel(
        f"✅ Checkout process initiated for run {run_id}. "
        "You'll receive updates when the process completes."
    )


def checkout_failed_reply(reason: str) -> dict[str, Any]:
    return ephemeral(f"❌ Failed to initiate checkout: {reason}")
