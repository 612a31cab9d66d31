"""Slack request signature verification.

Slack signs every webhook with HMAC-SHA256 over ``v0:{timestamp}:{body}``
keyed by the app's signing secret. Verification must run on the exact
bytes received; re-serialising a parsed payload changes the digest.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from slack_gateway import conventions

logger = logging.getLogger(__name__)


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(raw_body: bytes | str, timestamp: str, secret: str) -> str:
    """Return the ``v0=<hex>`` signature Slack would send for this body."""
    base = (
        conventions.SIGNATURE_VERSION.encode("ascii")
        + b":"
        + timestamp.encode("ascii")
        + b":"
        + _as_bytes(raw_body)
    )
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{conventions.SIGNATURE_VERSION}={digest}"


def verify(
    raw_body: bytes | str,
    signature: str | None,
    timestamp: str | None,
    secret: str,
    *,
    now: float | None = None,
) -> bool:
    """Check a request signature against the tenant's signing secret.

    Args:
        raw_body: The request body exactly as received.
        signature: Value of the ``X-Slack-Signature`` header.
        timestamp: Value of the ``X-Slack-Request-Timestamp`` header.
        secret: The tenant's signing secret.
        now: Current unix time (injectable for tests).

    Returns:
        True only if both headers are present, the timestamp is inside the
        replay window and the signature matches.
    """
    if not signature or not timestamp or not secret:
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        logger.warning("Rejecting request with non-numeric timestamp")
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > conventions.REPLAY_WINDOW_SECONDS:
        logger.warning("Rejecting request outside replay window (ts=%s)", timestamp)
        return False

    try:
        expected = compute_signature(raw_body, timestamp, secret)
    except UnicodeEncodeError:
        return False

    # compare_digest is constant-time for equal lengths only
    if len(expected) != len(signature):
        return False
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
