"""Fixed-window request counting.

SECURITY: this limiter fails closed. If the backend cannot count the request,
the request is denied; availability is traded for protection on this path.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..backend import Backend
from .keys import rate_limit_key

logger = logging.getLogger(__name__)

WINDOW_BUFFER_SECONDS = 10

PHOTO_RATE_LIMIT_WINDOW = 300
PHOTO_RATE_LIMIT_MAX = 20

# Methods counted against the write budget
WRITE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


@dataclass
class RateLimitPolicy:
    """Per-resource limits for one window."""

    window: int = 60
    max_requests: int = 100
    max_posts: int = 30

    def limit_for(self, method: str) -> int:
        return self.max_posts if method.upper() in WRITE_METHODS else self.max_requests


@dataclass
class RateLimitResult:
    allowed: bool
    count: int
    remaining: int
    reset: int  # unix seconds when the window closes
    limit: int
    error: str | None = None


def _unavailable(reset: int, limit: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=False,
        count=0,
        remaining=0,
        reset=reset,
        limit=limit,
        error="Rate limiting unavailable",
    )


class RateLimiter:
    """Counts requests per (prefix, method, identity, window)."""

    def __init__(self, backend: Backend, clock: Callable[[], float] = time.time):
        self.backend = backend
        self._clock = clock

    async def check(
        self,
        prefix: str,
        method: str,
        identity: str,
        window_seconds: int,
        limit: int,
    ) -> RateLimitResult:
        """Count one request and decide whether it is within ``limit``.

        Any backend error denies the request.
        """
        now = int(self._clock())
        if window_seconds < 1:
            logger.error(
                f"Rate limit window for {prefix}/{method} must be positive: {window_seconds}"
            )
            return _unavailable(now, limit)

        window_start = now - (now % window_seconds)
        reset = window_start + window_seconds
        key = rate_limit_key(prefix, method, identity, window_start)

        try:
            count = await self.backend.incr_with_expire(
                key, window_seconds + WINDOW_BUFFER_SECONDS
            )
        except Exception as e:
            logger.error(f"Rate limit check error for {prefix}/{method}: {e}")
            return _unavailable(reset, limit)

        return RateLimitResult(
            allowed=count <= limit,
            count=count,
            remaining=max(0, limit - count),
            reset=reset,
            limit=limit,
        )

    async def check_request(
        self, prefix: str, method: str, identity: str, policy: RateLimitPolicy
    ) -> RateLimitResult:
        """Check a request against a policy's read or write budget."""
        method = method.upper()
        return await self.check(
            prefix, method, identity, policy.window, policy.limit_for(method)
        )

    async def check_photo(
        self,
        race_id: str,
        device_id: str,
        window_seconds: int = PHOTO_RATE_LIMIT_WINDOW,
        limit: int = PHOTO_RATE_LIMIT_MAX,
    ) -> RateLimitResult:
        """Per-device photo upload budget for a race."""
        return await self.check("photo", "POST", f"{race_id}:{device_id}", window_seconds, limit)
