"""Sliding-window admission over a sorted set of attempt timestamps.

Notes:
- Every admitted attempt is one sorted-set member scored by its timestamp.
- No in-process lock: prune, count and insert are separate backend calls,
  each atomic on its own. Under heavy concurrent writes a key can briefly
  exceed its limit by a few attempts.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Callable

from adaptive_limiter.adapters.cache.base import CacheBackend

logger = logging.getLogger(__name__)


class SlidingWindowCounter:
    """Per-key sliding window counter backed by the shared cache."""

    def __init__(
        self,
        cache: CacheBackend,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._clock = clock

    def _prune(self, key: str, window_seconds: int, now: float) -> None:
        # Members exactly one window old are expired, so retry_after() == 0 means admissible.
        self._cache.zremrangebyscore(key, "-inf", now - window_seconds)

    def count(self, key: str, window_seconds: int) -> int:
        """Attempts recorded for ``key`` within the current window."""
        self._prune(key, window_seconds, self._clock())
        return self._cache.zcard(key)

    def is_exceeded(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """Whether the window is already full, without recording anything."""
        return self.count(key, window_seconds) >= max_attempts

    def attempt(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """Record an attempt if the window has room.

        Args:
            key: Namespaced sorted-set key.
            max_attempts: Attempts allowed within the window.
            window_seconds: Window length in seconds.

        Returns:
            True if the attempt was admitted and recorded.
        """
        now = self._clock()
        self._prune(key, window_seconds, now)

        current = self._cache.zcard(key)
        if current >= max_attempts:
            logger.debug(
                "sliding_window.denied",
                extra={"limit": max_attempts, "count": current, "window_s": window_seconds},
            )
            return False

        # Suffix keeps simultaneous attempts distinct members.
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"
        self._cache.zadd(key, {member: now})
        self._cache.expire(key, window_seconds)
        return True

    def remaining(self, key: str, max_attempts: int, window_seconds: int | None = None) -> int:
        """Attempts left before denial; never negative.

        When ``window_seconds`` is given, stale members are pruned first.
        """
        if window_seconds is not None:
            self._prune(key, window_seconds, self._clock())
        return max(0, max_attempts - self._cache.zcard(key))

    def retry_after(self, key: str, window_seconds: int) -> int:
        """Seconds until the oldest attempt in the window ages out (0 if empty)."""
        now = self._clock()
        self._prune(key, window_seconds, now)

        oldest = self._cache.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return 0
        _, oldest_at = oldest[0]
        return max(0, int(math.ceil(oldest_at + window_seconds - now)))

    def reset(self, key: str) -> None:
        self._cache.delete(key)
