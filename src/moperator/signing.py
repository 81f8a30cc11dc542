# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HMAC-SHA256 signing and verification of webhook payloads.

The signature covers the UTF-8 bytes of the compact JSON serialization of the
payload without its ``signature`` field, keys in insertion order. This is the
same byte sequence a JavaScript receiver obtains with ``JSON.stringify`` after
removing ``signature`` from the parsed body, so agents written in either
language can verify deliveries.

Example:
    Verifying a delivery on the receiving side::

        body = await request.json()
        if not verify_payload(body, request.headers["X-Moperator-Signature"], secret):
            raise HTTPException(401, "Invalid signature")
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize ``payload`` minus any ``signature`` field as compact JSON."""
    unsigned = {key: value for key, value in payload.items() if key != "signature"}
    return json.dumps(unsigned, separators=(",", ":"), ensure_ascii=False)


def sign_payload(payload: str, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    """Check ``signature`` against ``payload`` in constant time."""
    if not signature:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.lower().encode("utf-8"))


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def verify_payload(
    body: dict[str, Any],
    signature: str,
    secret: str,
    max_age: timedelta | None = None,
    now: datetime | None = None,
) -> bool:
    """Verify a parsed webhook body against the signature header.

    Args:
        body: The decoded JSON body as received (``signature`` may be present).
        signature: Value of the ``X-Moperator-Signature`` header.
        secret: Shared signing key.
        max_age: When given, also reject payloads whose ``timestamp`` is older
            than this. Off by default: the delivery protocol itself carries no
            freshness guarantee.
        now: Reference time for ``max_age``; defaults to the current UTC time.
    """
    if not verify_signature(canonical_json(body), signature, secret):
        return False
    if max_age is None:
        return True
    sent_at = _parse_timestamp(str(body.get("timestamp", "")))
    if sent_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - sent_at <= max_age
