# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter for the HTTP entry points.

Each client key owns a counter stored under ``ratelimit:{client_key}``. The
first request of a window (or any request after ``reset_at``) starts a fresh
window with ``count=1``; later requests increment the counter. A request is
allowed while ``count <= max_requests``.

Counters are updated through the storage port's compare-and-set, so
concurrent requests for the same key never under-count. Fixed windows allow
up to twice ``max_requests`` in a short span straddling a window boundary,
which is fine for coarse abuse prevention but not for hard quotas.

Example:
    Gating a request::

        limiter = RateLimiter(storage)
        result = await limiter.check(get_client_id(request.headers), STRICT_CONFIG)
        if not result.allowed:
            return rate_limit_response(result.reset_at)
"""

import hashlib
import math
import time
from collections.abc import Mapping

from .logger import get_logger
from .models import RateLimitConfig, RateLimitEntry, RateLimitResult
from .storage import Storage

DEFAULT_CONFIG = RateLimitConfig(window_ms=60_000, max_requests=60)
STRICT_CONFIG = RateLimitConfig(window_ms=60_000, max_requests=10)

# Entries outlive their window by this margin so the store can reclaim them.
MIN_ENTRY_TTL_SECONDS = 60


def tenant_config(rate_limit_per_minute: int) -> RateLimitConfig:
    """Per-tenant configuration built from the tenant's per-minute allowance."""
    return RateLimitConfig(window_ms=60_000, max_requests=rate_limit_per_minute)


class RateLimiter:
    """Per-client fixed-window request counter.

    The limiter is config-agnostic: callers pass the configuration for the
    operation being gated (read, write, tenant override).

    Attributes:
        storage: The storage port holding the counters.
    """

    def __init__(self, storage: Storage, logger=None):
        self.storage = storage
        self.logger = logger or get_logger("RateLimiter")

    async def check(self, client_key: str, config: RateLimitConfig = DEFAULT_CONFIG) -> RateLimitResult:
        """Count one request for ``client_key`` and decide whether it is allowed.

        Args:
            client_key: IP address, ``tenant:{id}`` or another stable identifier.
            config: Window length and request allowance.

        Returns:
            ``allowed``, the ``remaining`` requests in the window and the
            window's ``reset_at`` as epoch milliseconds.
        """
        now = int(time.time() * 1000)

        def bump(raw: bytes | None) -> bytes:
            entry = RateLimitEntry.from_json(raw) if raw else None
            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=now + config.window_ms)
            else:
                entry = RateLimitEntry(count=entry.count + 1, reset_at=entry.reset_at)
            return entry.to_json()

        ttl = max(MIN_ENTRY_TTL_SECONDS, math.ceil(config.window_ms / 1000) + 1)
        raw = await self.storage.update(f"ratelimit:{client_key}", bump, ttl=ttl)
        entry = RateLimitEntry.from_json(raw)

        allowed = entry.count <= config.max_requests
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded for %s (%d/%d)", client_key, entry.count, config.max_requests
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - entry.count),
            reset_at=entry.reset_at,
        )

    async def check_tenant(self, tenant_id: str, rate_limit_per_minute: int) -> RateLimitResult:
        """Check the allowance of an authenticated tenant."""
        return await self.check(f"tenant:{tenant_id}", tenant_config(rate_limit_per_minute))


def _hash_string(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def get_client_id(headers: Mapping[str, str]) -> str:
    """Derive the rate limit key for an anonymous caller.

    Prefers the proxy-supplied client IP, then the first ``X-Forwarded-For``
    hop, then a hash of the User-Agent.
    """
    proxy_ip = headers.get("CF-Connecting-IP") or headers.get("X-Real-IP")
    if proxy_ip:
        return proxy_ip.strip()
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    user_agent = headers.get("User-Agent") or "unknown"
    return f"anon-{_hash_string(user_agent)}"


def retry_after_seconds(reset_at: int) -> int:
    """Seconds until ``reset_at`` (epoch ms), never negative."""
    return max(0, math.ceil((reset_at - time.time() * 1000) / 1000))
