# Overview: In-process sliding-window rate limiter for abuse-prone endpoints.

"""
Rate Limiting

Sliding 60-second window per bucket key, e.g. "webhook:203.0.113.9" or
"payment_init:42". State lives in the worker process, so each worker
enforces its limit on its own.

A limit of 0 or less disables the check for that bucket.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta

from marketcore.time_utils import utcnow


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    retry_after_seconds: float = 0.0


class RateLimiter:
    """
    Sliding window rate limiter.

    Tracks request timestamps per bucket key. Time can be injected for
    deterministic tests.
    """

    def __init__(self, window_seconds: int = 60) -> None:
        self._window = timedelta(seconds=window_seconds)
        self._buckets: dict[str, deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, now: datetime | None = None) -> RateLimitResult:
        """
        Count one request against `key` if it fits in the window.

        Returns:
            RateLimitResult; a denied request is not recorded.
        """
        if limit <= 0:
            return RateLimitResult(allowed=True, remaining=0, limit=limit)

        now = now or utcnow()
        with self._lock:
            bucket = self._buckets[key]

            # Evict timestamps outside the window
            cutoff = now - self._window
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= limit:
                retry_after = (bucket[0] + self._window - now).total_seconds()
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    retry_after_seconds=max(0.0, retry_after),
                )

            bucket.append(now)
            return RateLimitResult(allowed=True, remaining=limit - len(bucket), limit=limit)

    def reset(self, key: str | None = None) -> None:
        """Forget one bucket, or every bucket when key is None."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)


limiter = RateLimiter()
