"""Factory for cache backends and pub/sub channels."""

from __future__ import annotations

import logging

import redis

from adaptive_limiter.adapters.cache.base import CacheBackend, PubSubChannel
from adaptive_limiter.adapters.cache.in_memory import InMemoryCacheBackend
from adaptive_limiter.adapters.cache.redis_backend import RedisCacheBackend, RedisPubSubChannel
from adaptive_limiter.core.config import CacheSettings, settings
from adaptive_limiter.core.errors import CacheUnavailableError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("memory", "redis")


def create_cache_backend(cache_settings: CacheSettings | None = None) -> CacheBackend:
    """Build the configured cache backend and verify it is reachable.

    Args:
        cache_settings: Optional settings; defaults to global settings.

    Returns:
        A ready CacheBackend.

    Raises:
        CacheUnavailableError: Unknown backend name or the backend does not
            answer a ping. Not retried.
    """

    cfg = cache_settings or settings.cache
    backend_name = cfg.backend.lower().strip()

    if backend_name not in SUPPORTED_BACKENDS:
        raise CacheUnavailableError(
            code="unsupported_cache_backend",
            message=f"Unsupported cache backend: {cfg.backend}",
            details={"backend": cfg.backend, "hint": "Use CACHE_BACKEND=memory or redis"},
        )

    if backend_name == "memory":
        logger.info("cache.backend_ready", extra={"backend": "memory"})
        return InMemoryCacheBackend()

    backend = RedisCacheBackend(
        cfg.redis_url,
        socket_timeout=cfg.socket_timeout,
        socket_connect_timeout=cfg.socket_connect_timeout,
    )
    try:
        backend.ping()
    except redis.RedisError as exc:
        logger.error(
            "cache.backend_unavailable",
            extra={"backend": "redis", "error_type": type(exc).__name__},
        )
        raise CacheUnavailableError(
            code="cache_unavailable",
            message="Redis cache backend is unreachable",
            details={"backend": "redis"},
        ) from exc

    logger.info("cache.backend_ready", extra={"backend": "redis"})
    return backend


def create_pubsub_channel(backend: CacheBackend) -> PubSubChannel | None:
    """Return a pub/sub channel for backends that have one.

    Only the Redis backend spans processes; anything else yields None and
    the cluster coordinator runs in single-node mode.
    """

    if isinstance(backend, RedisCacheBackend):
        return RedisPubSubChannel(backend.client)
    return None
