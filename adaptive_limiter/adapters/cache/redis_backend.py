"""Redis-backed cache backend.

Features:
- Shared counters for multi-instance deployments
- Native TTL support
- Atomic single-command operations (no multi-command transactions)
- Pub/sub channel for cross-node notifications

Requires:
    pip install redis

Environment:
    CACHE_BACKEND=redis
    CACHE_REDIS_URL: Redis connection URL
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import redis

from adaptive_limiter.adapters.cache.base import CacheBackend, PubSubChannel

logger = logging.getLogger(__name__)


class RedisCacheBackend(CacheBackend):
    """Thin adapter from the cache contract to a synchronous redis-py client."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: redis.Redis | None = None,
        socket_timeout: float = 2.5,
        socket_connect_timeout: float = 2.5,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url is required when no client is given")
            client = redis.Redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
            )
        self._redis = client

    @property
    def client(self) -> redis.Redis:
        return self._redis

    def get(self, key: str) -> str | None:
        return self._redis.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        return bool(self._redis.set(key, value, ex=ttl_seconds))

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        # SET NX returns None when the key already exists
        return bool(self._redis.set(key, value, ex=ttl_seconds, nx=True))

    def delete(self, key: str) -> bool:
        return bool(self._redis.delete(key))

    def ttl(self, key: str) -> int:
        return int(self._redis.ttl(key))

    def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self._redis.expire(key, ttl_seconds))

    def keys(self, pattern: str) -> list[str]:
        return list(self._redis.scan_iter(match=pattern))

    def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return int(self._redis.zadd(key, dict(mapping)))

    def zcard(self, key: str) -> int:
        return int(self._redis.zcard(key))

    def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        *,
        withscores: bool = False,
    ) -> list[str] | list[tuple[str, float]]:
        result = self._redis.zrange(key, start, stop, withscores=withscores)
        if withscores:
            return [(member, float(score)) for member, score in result]
        return list(result)

    def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        return int(self._redis.zremrangebyscore(key, min_score, max_score))

    def ping(self) -> bool:
        return bool(self._redis.ping())


class RedisPubSubChannel(PubSubChannel):
    """Publish side of Redis pub/sub."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    def publish(self, channel: str, message: str) -> int:
        return int(self._redis.publish(channel, message))
