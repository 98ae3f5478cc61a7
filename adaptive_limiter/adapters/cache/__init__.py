"""Shared cache/coordination backends.

The limiter depends on the abstract ``CacheBackend`` contract only. An
in-memory backend serves single-process deployments and tests; the Redis
backend is used when several service instances share counters.
"""

from adaptive_limiter.adapters.cache.base import CacheBackend, PubSubChannel
from adaptive_limiter.adapters.cache.factory import create_cache_backend, create_pubsub_channel
from adaptive_limiter.adapters.cache.in_memory import InMemoryCacheBackend, InMemoryPubSubChannel

__all__ = [
    "CacheBackend",
    "PubSubChannel",
    "InMemoryCacheBackend",
    "InMemoryPubSubChannel",
    "create_cache_backend",
    "create_pubsub_channel",
]
