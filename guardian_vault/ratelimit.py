"""
Keyed fixed-window rate limiter for sensitive reads.

Each key (``actor:resource:action``) gets ``max_requests`` per ``window``
seconds; the allowance resets once a full window has passed since the
window started. Buckets idle for more than two windows are dropped by
``evict_stale`` (also run opportunistically from ``check``).

The limiter is advisory. ``check`` is synchronous and never awaits, so on a
single event loop it cannot interleave with itself.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("guardian_vault.auth")


@dataclass
class _Bucket:
    tokens: int
    window_start: float


def rate_limit_key(actor_id: str, resource_id: str, action: str) -> str:
    return f"{actor_id}:{resource_id}:{action}"


class RateLimiter:

    def __init__(
        self,
        window: float = 60.0,
        max_requests: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.window = window
        self.max_requests = max_requests
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._last_eviction = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str) -> bool:
        """Consume one request for ``key``.

        Returns:
            True if the request is allowed, False if the key is throttled.
        """
        now = self._clock()
        if now - self._last_eviction > self.window:
            self.evict_stale(now)

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=self.max_requests, window_start=now)
            self._buckets[key] = bucket
        elif now - bucket.window_start >= self.window:
            bucket.tokens = self.max_requests
            bucket.window_start = now

        if bucket.tokens >= 1:
            bucket.tokens -= 1
            return True

        logger.warning("Rate limit exceeded for key: %s", key)
        return False

    def evict_stale(self, now: Optional[float] = None) -> int:
        """Drop buckets whose window started more than two windows ago."""
        if now is None:
            now = self._clock()
        stale = [
            key for key, bucket in self._buckets.items()
            if now - bucket.window_start > self.window * 2
        ]
        for key in stale:
            del self._buckets[key]
        self._last_eviction = now
        if stale:
            logger.debug("Evicted %d stale rate-limit buckets", len(stale))
        return len(stale)

    def reset(self, key: str) -> None:
        self._buckets.pop(key, None)
