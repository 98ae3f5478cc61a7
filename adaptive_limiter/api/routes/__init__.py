from __future__ import annotations

from adaptive_limiter.api.routes.cluster import router as cluster_router
from adaptive_limiter.api.routes.health import router as health_router
from adaptive_limiter.api.routes.limits import router as limits_router
from adaptive_limiter.api.routes.limits import rules_router

__all__ = ["cluster_router", "health_router", "limits_router", "rules_router"]
