"""In-memory cache backend.

Notes:
- Per-process only: running multiple workers gives each its own counters.
- Thread-safe: uses a lock around shared state.
- Expiry is lazy, checked on access against the injected clock.
"""

from __future__ import annotations

import fnmatch
import logging
import math
import threading
import time
from bisect import insort
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from adaptive_limiter.adapters.cache.base import CacheBackend, PubSubChannel

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str | None = None
    zset: dict[str, float] | None = None
    expires_at: float | None = None


@dataclass
class _Subscriber:
    pattern: str
    callback: Callable[[str, str], None]
    delivered: int = field(default=0)


def _parse_bound(bound: float | str) -> tuple[float, bool]:
    """Parse a redis-style score bound into (value, exclusive)."""
    if isinstance(bound, str):
        if bound == "-inf":
            return -math.inf, False
        if bound in ("+inf", "inf"):
            return math.inf, False
        if bound.startswith("("):
            return float(bound[1:]), True
        return float(bound), False
    return float(bound), False


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed implementation of the cache contract.

    Important:
        This backend is per-process only. Cluster coordination over it is
        only meaningful between coordinators living in the same process
        (which is what the test suite does).
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._store: dict[str, _Entry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryCacheBackend(size={len(self._store)})"

    def _live_entry(self, key: str) -> _Entry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.zset is not None:
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        with self._lock:
            self._store[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))
            return True

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._store[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, int(math.ceil(entry.expires_at - self._clock())))

    def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.expires_at = self._expiry(ttl_seconds)
            return True

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [
                key
                for key in list(self._store)
                if fnmatch.fnmatchcase(key, pattern) and self._live_entry(key) is not None
            ]

    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.zset is None:
                entry = _Entry(zset={})
                self._store[key] = entry
            added = 0
            for member, score in mapping.items():
                if member not in entry.zset:
                    added += 1
                entry.zset[member] = float(score)
            return added

    def zcard(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.zset is None:
                return 0
            return len(entry.zset)

    def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        *,
        withscores: bool = False,
    ) -> list[str] | list[tuple[str, float]]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or not entry.zset:
                return []
            ordered: list[tuple[float, str]] = []
            for member, score in entry.zset.items():
                insort(ordered, (score, member))
            # Redis semantics: negative indices count from the end, stop is inclusive.
            size = len(ordered)
            if start < 0:
                start = max(0, size + start)
            if stop < 0:
                stop = size + stop
            window = ordered[start : stop + 1]
            if withscores:
                return [(member, score) for score, member in window]
            return [member for _, member in window]

    def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        low, low_exclusive = _parse_bound(min_score)
        high, high_exclusive = _parse_bound(max_score)
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.zset is None:
                return 0
            doomed = [
                member
                for member, score in entry.zset.items()
                if (score > low if low_exclusive else score >= low)
                and (score < high if high_exclusive else score <= high)
            ]
            for member in doomed:
                del entry.zset[member]
            if not entry.zset:
                self._store.pop(key, None)
            return len(doomed)

    def ping(self) -> bool:
        return True

    def clear(self) -> None:
        """Drop every key."""
        with self._lock:
            self._store.clear()


class InMemoryPubSubChannel(PubSubChannel):
    """Process-local publish/subscribe channel.

    Subscribers register a glob pattern and a callback; every published
    message is also kept in ``messages`` for inspection.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: list[_Subscriber] = []
        self.messages: list[tuple[str, str]] = []

    def subscribe(self, pattern: str, callback: Callable[[str, str], None]) -> None:
        with self._lock:
            self._subscribers.append(_Subscriber(pattern=pattern, callback=callback))

    def publish(self, channel: str, message: str) -> int:
        with self._lock:
            self.messages.append((channel, message))
            receivers = [s for s in self._subscribers if fnmatch.fnmatchcase(channel, s.pattern)]

        for subscriber in receivers:
            subscriber.callback(channel, message)
            subscriber.delivered += 1

        logger.debug(
            "pubsub.published",
            extra={"channel": channel, "receivers": len(receivers)},
        )
        return len(receivers)
