from __future__ import annotations

from fastapi import APIRouter, Depends

from adaptive_limiter.core.auth import verify_api_key
from adaptive_limiter.core.errors import NotFoundAppError
from adaptive_limiter.core.rate_limit import enforce_rate_limit, get_coordinator
from adaptive_limiter.schemas.api import ClusterStatusResponse
from adaptive_limiter.schemas.cluster import ClusterNode, GlobalLimitState
from adaptive_limiter.schemas.keys import KeyType, RateLimitKey

router = APIRouter(
    prefix="/cluster",
    tags=["Cluster"],
    dependencies=[Depends(verify_api_key), Depends(enforce_rate_limit)],
)


@router.get("/status", response_model=ClusterStatusResponse)
def cluster_status() -> ClusterStatusResponse:
    """Report this node's view of the cluster.

    With cluster mode disabled the response only says so.
    """
    coordinator = get_coordinator()
    if coordinator is None:
        return ClusterStatusResponse(enabled=False)

    return ClusterStatusResponse(
        enabled=True,
        node_id=coordinator.node_id,
        is_primary=coordinator.is_primary_coordinator(),
        primary_node_id=coordinator.primary_node_id(),
        single_node=coordinator.single_node,
        node_count=len(coordinator.get_nodes()),
    )


@router.get("/nodes", response_model=list[ClusterNode])
def list_nodes() -> list[ClusterNode]:
    coordinator = get_coordinator()
    if coordinator is None:
        return []
    return sorted(coordinator.get_nodes().values(), key=lambda node: node.id)


@router.get("/global-limits/{key_type}/{identifier}", response_model=GlobalLimitState)
def get_global_limit(key_type: KeyType, identifier: str) -> GlobalLimitState:
    """Last count any node published for a key. Informational only."""
    key = RateLimitKey(key_type, identifier).limiter_key
    coordinator = get_coordinator()
    state = coordinator.get_global_limit(key) if coordinator is not None else None
    if state is None:
        raise NotFoundAppError(
            code="global_limit_not_found",
            message="No global count has been published for this key",
            details={"key": key, "cluster_enabled": coordinator is not None},
        )
    return state
