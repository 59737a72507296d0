"""Signature checks for inbound platform webhooks.

All comparisons are constant time. Header names are matched case-insensitively.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Mapping


def _lower(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_slack_signature(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: float | None = None,
    window_seconds: int = 300,
) -> bool:
    if not secret:
        return False
    lowered = _lower(headers)
    signature = lowered.get("x-slack-signature")
    timestamp = lowered.get("x-slack-request-timestamp")
    if not signature or not timestamp:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > window_seconds:
        return False
    base = b"v0:" + timestamp.encode() + b":" + body
    expected = "v0=" + _hmac_hex(secret, base)
    return hmac.compare_digest(expected, signature)


def verify_dropbox_signature(headers: Mapping[str, str], body: bytes, secret: str | None) -> bool:
    if not secret:
        return False
    signature = _lower(headers).get("x-dropbox-signature")
    if not signature:
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)


def verify_google_channel_token(headers: Mapping[str, str], expected_token: str | None) -> bool:
    if not expected_token:
        return False
    token = _lower(headers).get("x-goog-channel-token")
    if not token:
        return False
    return hmac.compare_digest(token, expected_token)


def verify_linear_signature(headers: Mapping[str, str], body: bytes, secret: str | None) -> bool:
    if not secret:
        return False
    signature = _lower(headers).get("linear-signature")
    if not signature:
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)
