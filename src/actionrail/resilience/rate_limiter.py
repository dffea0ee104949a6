"""Per-key rate limiting with fixed or sliding windows.

Fixed window: the used count resets to zero every ``window_ms``.

Sliding window: instead of storing per-request timestamps, the used count
decays in proportion to the time since the last refill,
``floor(elapsed / window_ms * max_requests)``. A full window of inactivity
empties the bucket.

Buckets with no activity for ``idle_ms`` are evicted by a lazy sweep.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable

from actionrail.core.errors import RateLimitError
from actionrail.core.models import RateLimitAlgorithm, RateLimitBucket, RateLimitPolicy

logger = logging.getLogger("actionrail.rate_limiter")

PRESETS: dict[str, RateLimitPolicy] = {
    "STRICT": RateLimitPolicy(max_requests=10, window_ms=60_000, algorithm=RateLimitAlgorithm.SLIDING),
    "MODERATE": RateLimitPolicy(max_requests=100, window_ms=60_000, algorithm=RateLimitAlgorithm.SLIDING),
    "LENIENT": RateLimitPolicy(max_requests=1000, window_ms=60_000, algorithm=RateLimitAlgorithm.SLIDING),
    "BURST": RateLimitPolicy(max_requests=50, window_ms=1_000, algorithm=RateLimitAlgorithm.FIXED),
}


class RateLimiter:
    def __init__(
        self,
        *,
        idle_ms: int = 300_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_ms = idle_ms
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._last_sweep = clock()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _bucket(self, key: str, now: float) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateLimitBucket(used=0, window_start=now, last_refill=now, last_seen=now)
            self._buckets[key] = bucket
        return bucket

    def _refresh(self, bucket: RateLimitBucket, policy: RateLimitPolicy, now: float) -> None:
        if policy.algorithm is RateLimitAlgorithm.FIXED:
            if now - bucket.window_start >= policy.window_ms:
                bucket.used = 0
                bucket.window_start = now
            return

        elapsed = now - bucket.last_refill
        if elapsed >= policy.window_ms:
            bucket.used = 0
            bucket.last_refill = now
            bucket.window_start = now
            return
        decay = math.floor(elapsed / policy.window_ms * policy.max_requests)
        if decay > 0:
            bucket.used = max(0, bucket.used - decay)
            bucket.last_refill = now

    def _reset_in_ms(self, bucket: RateLimitBucket, policy: RateLimitPolicy, now: float) -> float:
        if policy.algorithm is RateLimitAlgorithm.FIXED:
            return max(0.0, bucket.window_start + policy.window_ms - now)
        # One unit decays every window/max milliseconds.
        per_unit = policy.window_ms / max(policy.max_requests, 1)
        return max(0.0, bucket.last_refill + per_unit - now)

    def try_acquire(self, key: str, policy: RateLimitPolicy, cost: int = 1) -> bool:
        """Debit ``cost`` units if the bucket can take them."""
        now = self._now_ms()
        if now - self._last_sweep * 1000 >= self.idle_ms / 5:
            self.sweep()
        bucket = self._bucket(key, now)
        bucket.last_seen = now
        self._refresh(bucket, policy, now)
        if bucket.used + cost > policy.max_requests:
            return False
        bucket.used += cost
        return True

    def enforce(self, key: str, policy: RateLimitPolicy, cost: int = 1) -> None:
        """Debit the bucket or raise RateLimitError."""
        if self.try_acquire(key, policy, cost):
            return
        now = self._now_ms()
        reset_in = self._reset_in_ms(self._buckets[key], policy, now)
        logger.info("Rate limit hit for %s (%d/%dms)", key, policy.max_requests, policy.window_ms)
        raise RateLimitError(
            f"Rate limit exceeded for {key}: {policy.max_requests} requests per {policy.window_ms}ms",
            limit=policy.max_requests,
            window_ms=policy.window_ms,
            reset_at=time.time() + reset_in / 1000,
            action_id=key,
        )

    def remaining(self, key: str, policy: RateLimitPolicy) -> int:
        now = self._now_ms()
        bucket = self._buckets.get(key)
        if bucket is None:
            return policy.max_requests
        self._refresh(bucket, policy, now)
        return max(0, policy.max_requests - bucket.used)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)

    def sweep(self) -> int:
        """Evict idle buckets. Returns how many were removed."""
        now = self._now_ms()
        self._last_sweep = self._clock()
        idle = [k for k, b in self._buckets.items() if now - b.last_seen > self.idle_ms]
        for key in idle:
            del self._buckets[key]
        if idle:
            logger.debug("Evicted %d idle rate-limit buckets", len(idle))
        return len(idle)

    def stats(self) -> dict[str, Any]:
        return {
            "buckets": len(self._buckets),
            "keys": {k: b.to_dict() for k, b in self._buckets.items()},
        }
