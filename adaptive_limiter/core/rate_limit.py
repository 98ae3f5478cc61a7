"""Rate limiting wiring for FastAPI routes.

This module owns the process-wide collaborators (cache backend, audit sink,
cluster coordinator) and builds per-key adaptive limiters from settings.

Rate limiting strategy:
- Adaptive sliding window per caller.
- Callers presenting an X-API-Key are tracked as users (by key hash);
  everyone else by client IP.
- Callers whose behavior score exceeds the block threshold are rejected
  before an attempt is even recorded.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Annotated, Any

from fastapi import Header, Request

from adaptive_limiter.adapters.audit import AuditSink, LoggingAuditSink
from adaptive_limiter.adapters.cache import CacheBackend, create_cache_backend, create_pubsub_channel
from adaptive_limiter.core.config import settings
from adaptive_limiter.core.errors import RateLimitExceededAppError
from adaptive_limiter.core.logging import hash_identifier
from adaptive_limiter.schemas.keys import RateLimitKey
from adaptive_limiter.services.adaptive_limiter import AdaptiveLimiter
from adaptive_limiter.services.cluster_coordinator import ClusterCoordinator

logger = logging.getLogger(__name__)


_cache: CacheBackend | None = None
_audit: AuditSink | None = None
_coordinator: ClusterCoordinator | None = None


def get_cache_backend() -> CacheBackend:
    """Return the process-wide cache backend, creating it on first use.

    Raises:
        CacheUnavailableError: If the configured backend cannot be reached.
    """

    global _cache

    if _cache is None:
        _cache = create_cache_backend(settings.cache)
    return _cache


def get_audit_sink() -> AuditSink:
    global _audit

    if _audit is None:
        _audit = LoggingAuditSink()
    return _audit


def get_coordinator() -> ClusterCoordinator | None:
    """Return the cluster coordinator when cluster mode is enabled."""

    global _coordinator

    if not settings.cluster.enabled:
        return None

    if _coordinator is None:
        cache = get_cache_backend()
        _coordinator = ClusterCoordinator(
            cache,
            channel=create_pubsub_channel(cache),
            node_id=settings.cluster.node_id,
            version=settings.cluster.node_version,
            audit=get_audit_sink(),
            key_prefix=settings.cluster.key_prefix,
            node_max_age_seconds=settings.cluster.node_max_age_seconds,
        )
    return _coordinator


def reset_rate_limit_state() -> None:
    """Drop cached collaborators so the next request rebuilds them."""

    global _cache, _audit, _coordinator
    _cache = None
    _audit = None
    _coordinator = None


def build_limiter(
    key: RateLimitKey,
    max_attempts: int | None = None,
    window_seconds: int | None = None,
    context: Mapping[str, Any] | None = None,
) -> AdaptiveLimiter:
    """Build an adaptive limiter for ``key`` from configured defaults."""

    cfg = settings.limiter
    return AdaptiveLimiter(
        key,
        max_attempts or cfg.default_max_attempts,
        window_seconds or cfg.default_window_seconds,
        cache=get_cache_backend(),
        audit=get_audit_sink(),
        coordinator=get_coordinator(),
        context=context,
        adaptive=cfg.enable_adaptive,
        statistical_adjustment=cfg.enable_ml,
        rules_ttl_seconds=cfg.rules_ttl_seconds,
        profile_ttl_seconds=cfg.profile_ttl_seconds,
        anomaly_ttl_seconds=cfg.anomaly_ttl_seconds,
    )


def _build_rate_limit_key(request: Request, x_api_key: str | None) -> RateLimitKey:
    """Build the limiter key for the current request."""

    if x_api_key:
        return RateLimitKey.for_user(hash_identifier(x_api_key))

    client_host = request.client.host if request.client else "unknown"
    return RateLimitKey.for_ip(client_host)


def enforce_rate_limit(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency enforcing adaptive rate limits.

    Runs in the FastAPI threadpool, never on the event loop: limiter calls
    block on the cache backend.

    Raises:
        RateLimitExceededAppError: When the caller looks automated or has
            used up its window. Rendered as HTTP 429.
    """

    if not settings.limiter.enabled:
        return

    key = _build_rate_limit_key(request, x_api_key)
    context = {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
    }
    limiter = build_limiter(key, context=context)
    key_hash = hash_identifier(key.limiter_key)

    score = limiter.behavior_score()
    if score > settings.limiter.block_score_threshold:
        retry_after = limiter.retry_after()
        logger.warning(
            "rate_limit.suspicious_behavior",
            extra={"key_type": key.type.value, "key_hash": key_hash, "behavior_score": score},
        )
        raise RateLimitExceededAppError(
            code="suspicious_behavior",
            message="Suspicious behavior detected. Please try again later.",
            details={
                "limit": limiter.max_attempts,
                "remaining": limiter.remaining(),
                "retry_after": retry_after,
                "behavior_score": round(score, 4),
            },
        )

    if limiter.attempt():
        logger.info(
            "rate_limit.allowed",
            extra={
                "key_type": key.type.value,
                "key_hash": key_hash,
                "limit": limiter.max_attempts,
                "window_s": limiter.window_seconds,
            },
        )
        return

    retry_after = limiter.retry_after()
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_type": key.type.value,
            "key_hash": key_hash,
            "limit": limiter.max_attempts,
            "window_s": limiter.window_seconds,
            "retry_after_s": retry_after,
        },
    )
    raise RateLimitExceededAppError(
        code="rate_limit_exceeded",
        message=f"Rate limit exceeded. Please try again in {retry_after} seconds.",
        details={
            "limit": limiter.max_attempts,
            "remaining": limiter.remaining(),
            "retry_after": retry_after,
        },
    )
