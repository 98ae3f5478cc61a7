"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and the
cluster heartbeat) so tests can build fresh instances.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import FastAPI

from adaptive_limiter.api.routes import cluster_router, health_router, limits_router, rules_router
from adaptive_limiter.core.config import settings
from adaptive_limiter.core.exception_handlers import setup_exception_handlers
from adaptive_limiter.core.logging import configure_logging
from adaptive_limiter.core.middleware import request_id_middleware
from adaptive_limiter.core.openapi import apply_openapi_customizations
from adaptive_limiter.core.rate_limit import get_coordinator
from adaptive_limiter.services.cluster_coordinator import ClusterCoordinator

logger = logging.getLogger(__name__)


async def _heartbeat_loop(coordinator: ClusterCoordinator, interval_seconds: int) -> None:
    """Run coordinator maintenance every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await asyncio.to_thread(coordinator.heartbeat)
            logger.debug("cluster.heartbeat", extra={"node_id": coordinator.node_id, **result})
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "cluster.heartbeat_failed",
                extra={"node_id": coordinator.node_id, "error_type": type(exc).__name__},
            )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    coordinator = get_coordinator()
    task: asyncio.Task | None = None
    if coordinator is not None:
        task = asyncio.create_task(
            _heartbeat_loop(coordinator, settings.cluster.sync_interval_seconds)
        )
        logger.info(
            "cluster.heartbeat_started",
            extra={
                "node_id": coordinator.node_id,
                "interval_s": settings.cluster.sync_interval_seconds,
            },
        )
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Adaptive Limiter API",
        description=(
            "Adaptive, cluster-aware rate limiting. Sliding-window admission per "
            "IP, user, endpoint or custom key; limits tighten as a caller's "
            "behavior score rises; per-key rule sets; best-effort cross-node "
            "counts with primary election. Requires X-API-Key."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(limits_router, prefix="/v1")
    app.include_router(rules_router, prefix="/v1")
    app.include_router(cluster_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app
