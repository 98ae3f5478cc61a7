"""Cache backend interfaces.

Services depend on these abstractions (not the concrete implementation) so
the same limiter runs against an in-process store or a shared Redis.

Values are strings; callers serialize records to JSON themselves. Sorted-set
operations follow redis-py conventions (``zadd`` takes a ``{member: score}``
mapping).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping


class CacheBackend(ABC):
    """Key/value and sorted-set primitives the limiter relies on.

    Each operation must be individually atomic. Nothing here combines
    several operations into one transaction.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value, or None if missing/expired."""
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store a value, optionally expiring after ``ttl_seconds``."""
        raise NotImplementedError

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store a value only when the key does not exist.

        Returns:
            True if this call created the key.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was deleted."""
        raise NotImplementedError

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Seconds until expiry; -1 for no expiry, -2 for a missing key."""
        raise NotImplementedError

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a key's expiry. Returns False when the key does not exist."""
        raise NotImplementedError

    @abstractmethod
    def keys(self, pattern: str) -> list[str]:
        """List keys matching a glob-style pattern."""
        raise NotImplementedError

    @abstractmethod
    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        """Add members with scores. Returns the number of new members."""
        raise NotImplementedError

    @abstractmethod
    def zcard(self, key: str) -> int:
        """Return the sorted set cardinality (0 when missing)."""
        raise NotImplementedError

    @abstractmethod
    def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        *,
        withscores: bool = False,
    ) -> list[str] | list[tuple[str, float]]:
        """Return members ordered by ascending score (inclusive indices)."""
        raise NotImplementedError

    @abstractmethod
    def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        """Remove members with ``min_score <= score <= max_score``."""
        raise NotImplementedError

    @abstractmethod
    def ping(self) -> bool:
        """Check the backend is reachable."""
        raise NotImplementedError


class PubSubChannel(ABC):
    """Best-effort publish side of a publish/subscribe transport."""

    @abstractmethod
    def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of receivers."""
        raise NotImplementedError
