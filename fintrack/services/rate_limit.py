"""
In-memory sliding-window rate limiter.

One limiter instance lives on ``app.state``; buckets are keyed by
``operation:key`` (e.g. ``registration:203.0.113.7``).  State is per
process; a multi-instance deployment needs a shared backend instead.
"""

import logging
import math
import threading
import time
from collections import deque

from fintrack.core.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, clock=time.monotonic, sweep_interval_seconds: float = 300) -> None:
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._longest_window = 0.0
        self._last_sweep = clock()

    def check(self, operation: str, key: str, max_attempts: int, window_seconds: float) -> None:
        """Record an attempt, or raise ``RateLimitExceeded`` if the window is full.

        Every ``sweep_interval_seconds`` the call also drops buckets whose
        newest attempt is older than the longest window seen so far.
        """
        bucket_key = f"{operation}:{key}"
        now = self._clock()
        with self._lock:
            self._longest_window = max(self._longest_window, window_seconds)
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now - self._longest_window)
                self._last_sweep = now

            bucket = self._buckets.setdefault(bucket_key, deque())
            _evict(bucket, now - window_seconds)
            if len(bucket) >= max_attempts:
                retry_after = max(1, math.ceil(window_seconds - (now - bucket[0])))
                logger.info("Rate limit exceeded for operation %s", operation)
                raise RateLimitExceeded(retry_after_seconds=retry_after)
            bucket.append(now)

    def reset(self, operation: str, key: str) -> None:
        with self._lock:
            self._buckets.pop(f"{operation}:{key}", None)

    def cleanup(self, max_age_seconds: float = 3600) -> None:
        with self._lock:
            self._sweep(self._clock() - max_age_seconds)

    def _sweep(self, cutoff: float) -> None:
        # Caller holds the lock.
        for bucket_key in list(self._buckets):
            bucket = self._buckets[bucket_key]
            _evict(bucket, cutoff)
            if not bucket:
                del self._buckets[bucket_key]
        logger.debug("Rate limiter holds %d bucket(s) after sweep", len(self._buckets))


def _evict(bucket: deque[float], window_start: float) -> None:
    while bucket and bucket[0] <= window_start:
        bucket.popleft()
