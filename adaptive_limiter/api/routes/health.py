from __future__ import annotations

import logging

from fastapi import APIRouter

from adaptive_limiter.core.errors import CacheUnavailableError
from adaptive_limiter.core.rate_limit import get_cache_backend

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
def readiness_check() -> dict:
    """Readiness check: the shared cache backend must answer a ping.

    Raises:
        CacheUnavailableError: Rendered as 503 when the backend is down.
    """

    cache = get_cache_backend()
    try:
        reachable = cache.ping()
    except Exception as exc:  # noqa: BLE001
        logger.warning("health.cache_ping_failed", extra={"error_type": type(exc).__name__})
        reachable = False

    if not reachable:
        raise CacheUnavailableError(
            code="cache_unavailable",
            message="Cache backend did not answer a ping",
        )
    return {"status": "ready", "cache": type(cache).__name__}
