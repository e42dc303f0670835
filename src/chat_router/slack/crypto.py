from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable

DEFAULT_MAX_AGE_S = 300


def compute_signature(body: bytes | str, timestamp: str, secret: str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    base = b"v0:" + timestamp.encode("utf-8") + b":" + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def verify_signature(
    body: bytes | str,
    signature: str | None,
    timestamp: str | None,
    secret: str,
    *,
    max_age_s: float = DEFAULT_MAX_AGE_S,
    clock: Callable[[], float] = time.time,
) -> bool:
    """Check an ``X-Slack-Signature`` header against the raw request body.

    Requests older than ``max_age_s`` are rejected to limit replays.
    """
    if not signature or not timestamp:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    if abs(clock() - sent_at) > max_age_s:
        return False
    expected = compute_signature(body, timestamp, secret)
    return hmac.compare_digest(expected, signature)
