"""Cross-node coordination for rate limiting.

Nodes register themselves in the shared cache, elect a primary without a
central coordinator process, and publish their per-key counts as a
best-effort global view. The primary does periodic housekeeping: it purges
stale global-limit entries and nodes that stopped refreshing.

Notes:
- Locks are advisory and self-expiring (set-if-absent with a short TTL).
  A failed acquisition skips the guarded work for this call; nothing
  waits or retries in-line.
- Election is eventually consistent. Two nodes may briefly both believe
  they are primary after a partition heals; the only effect is duplicated,
  idempotent housekeeping. Admission decisions never depend on it.
- Without a pub/sub channel the coordinator runs in single-node mode: it is
  always primary and publishes nothing.
"""

from __future__ import annotations

import json
import logging
import secrets
import socket
import time
import uuid
from typing import Callable

from pydantic import ValidationError

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity, AuditSink, safe_emit
from adaptive_limiter.adapters.cache.base import CacheBackend, PubSubChannel
from adaptive_limiter.schemas.cluster import ClusterNode, GlobalLimitState

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "rate_limit_distributor:"
NODES_KEY = "nodes"
GLOBAL_LIMITS_KEY = "global_limits"
LOCK_PREFIX = "lock:"
PRIMARY_KEY = "primary_coordinator"
LIMIT_UPDATES_CHANNEL = "limit_updates"

UPDATE_LOCK_TTL = 2
HOUSEKEEPING_LOCK_TTL = 5
PRIMARY_TTL = 300
GLOBAL_LIMIT_MAX_AGE = 86400
DEFAULT_NODE_MAX_AGE = 300
# Record TTLs bound how long state outlives a cluster with no primary.
NODE_RECORD_TTL = 3600
GLOBAL_LIMIT_TTL = 2 * GLOBAL_LIMIT_MAX_AGE

# Only log the single-node degradation once per process.
_single_node_logged = False


def _default_node_id() -> str:
    return socket.gethostname() or f"node-{uuid.uuid4().hex[:12]}"


def _local_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class ClusterCoordinator:
    """Node registry, primary election and global count publication."""

    def __init__(
        self,
        cache: CacheBackend,
        *,
        channel: PubSubChannel | None = None,
        node_id: str | None = None,
        version: str = "0.0.0",
        audit: AuditSink | None = None,
        key_prefix: str = DEFAULT_PREFIX,
        node_max_age_seconds: int = DEFAULT_NODE_MAX_AGE,
        clock: Callable[[], float] = time.time,
        auto_register: bool = True,
    ) -> None:
        self._cache = cache
        self._channel = channel
        self._node_id = node_id or _default_node_id()
        self._version = version
        self._audit = audit
        self._prefix = key_prefix
        self._node_max_age = node_max_age_seconds
        self._clock = clock
        self._is_primary = False

        if channel is None:
            self._log_single_node_mode()

        if auto_register:
            self.register_node()

        self._audit_event("distributor_initialized")

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def single_node(self) -> bool:
        return self._channel is None

    def _log_single_node_mode(self) -> None:
        global _single_node_logged
        if _single_node_logged:
            return
        _single_node_logged = True
        logger.warning(
            "cluster.single_node_mode",
            extra={"node_id": self._node_id, "reason": "pubsub_unavailable"},
        )

    # Keys ---------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}{suffix}"

    def _node_key(self, node_id: str) -> str:
        return self._key(f"{NODES_KEY}:{node_id}")

    def _limit_key(self, key: str) -> str:
        return self._key(f"{GLOBAL_LIMITS_KEY}:{key}")

    def _strip(self, full_key: str, kind: str) -> str:
        return full_key[len(self._key(f"{kind}:")) :]

    # Locks --------------------------------------------------------------

    def _acquire_lock(self, name: str, ttl_seconds: int) -> str | None:
        token = secrets.token_hex(8)
        if self._cache.set_if_absent(self._key(LOCK_PREFIX + name), token, ttl_seconds):
            return token
        logger.debug("cluster.lock_busy", extra={"lock": name, "node_id": self._node_id})
        return None

    def _release_lock(self, name: str, token: str) -> None:
        lock_key = self._key(LOCK_PREFIX + name)
        # Only release our own lock; it may have expired and been retaken.
        if self._cache.get(lock_key) == token:
            self._cache.delete(lock_key)

    # Registry -----------------------------------------------------------

    def refresh_node(self) -> ClusterNode:
        """Write (or refresh) this node's registry entry."""
        node = ClusterNode(
            id=self._node_id,
            hostname=socket.gethostname(),
            ip=_local_ip(),
            last_seen=self._clock(),
            version=self._version,
        )
        self._cache.set(
            self._node_key(self._node_id),
            node.model_dump_json(),
            max(NODE_RECORD_TTL, self._node_max_age),
        )
        return node

    def register_node(self) -> None:
        """Register this node and take part in primary election."""
        self.refresh_node()
        self.elect_primary()
        logger.info(
            "cluster.node_registered",
            extra={"node_id": self._node_id, "is_primary": self._is_primary},
        )

    def _node_ids(self) -> list[str]:
        return [self._strip(k, NODES_KEY) for k in self._cache.keys(self._node_key("*"))]

    def get_nodes(self) -> dict[str, ClusterNode]:
        """All readable node registrations keyed by node id."""
        nodes: dict[str, ClusterNode] = {}
        for node_id in self._node_ids():
            raw = self._cache.get(self._node_key(node_id))
            if not raw:
                continue
            try:
                nodes[node_id] = ClusterNode.model_validate_json(raw)
            except ValidationError:
                logger.warning("cluster.node_record_corrupt", extra={"node_id": node_id})
        return nodes

    def _live_node_ids(self) -> set[str]:
        """Nodes seen within the max age; stale records cannot win an election."""
        now = self._clock()
        return {
            node_id
            for node_id, node in self.get_nodes().items()
            if now - node.last_seen <= self._node_max_age
        }

    # Election -----------------------------------------------------------

    def is_primary_coordinator(self) -> bool:
        return self._is_primary

    def primary_node_id(self) -> str | None:
        return self._cache.get(self._key(PRIMARY_KEY))

    def _become_primary(self) -> None:
        self._cache.set(self._key(PRIMARY_KEY), self._node_id, PRIMARY_TTL)
        if not self._is_primary:
            self._is_primary = True
            logger.info("cluster.became_primary", extra={"node_id": self._node_id})
            self._audit_event("became_primary_coordinator")

    def _become_secondary(self) -> None:
        if self._is_primary:
            logger.info("cluster.stepped_down", extra={"node_id": self._node_id})
        self._is_primary = False

    def elect_primary(self) -> bool:
        """Run one election round.

        Returns:
            True if this node is primary afterwards. False when it is
            secondary or the election lock was busy (state unchanged).
        """
        if self.single_node:
            self._become_primary()
            return True

        token = self._acquire_lock("coordinator_election", HOUSEKEEPING_LOCK_TTL)
        if token is None:
            return False

        try:
            live = self._live_node_ids()
            if not live:
                self._become_primary()
                return True

            primary_id = self.primary_node_id()
            if primary_id == self._node_id:
                self._become_primary()
                return True

            if primary_id in live:
                self._become_secondary()
                return False

            if min(live) == self._node_id:
                self._become_primary()
                return True

            self._become_secondary()
            return False
        finally:
            self._release_lock("coordinator_election", token)

    # Global limits ------------------------------------------------------

    def update_global_limit(
        self,
        key: str,
        current_count: int,
        max_attempts: int,
        window_seconds: int,
    ) -> bool:
        """Publish this node's count for ``key``.

        Returns:
            False when the key's lock is held elsewhere; the update is skipped.
        """
        token = self._acquire_lock(key, UPDATE_LOCK_TTL)
        if token is None:
            return False

        try:
            state = GlobalLimitState(
                key=key,
                count=max(0, current_count),
                max=max(1, max_attempts),
                window_seconds=max(1, window_seconds),
                updated_at=self._clock(),
                node_id=self._node_id,
            )
            self._cache.set(self._limit_key(key), state.model_dump_json(), GLOBAL_LIMIT_TTL)

            if self._channel is not None:
                message = json.dumps({"action": "update", "data": state.model_dump()})
                try:
                    self._channel.publish(self._key(LIMIT_UPDATES_CHANNEL), message)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "cluster.publish_failed",
                        extra={"node_id": self._node_id, "error_type": type(exc).__name__},
                    )
            return True
        finally:
            self._release_lock(key, token)

    def get_global_limit(self, key: str) -> GlobalLimitState | None:
        raw = self._cache.get(self._limit_key(key))
        if not raw:
            return None
        try:
            return GlobalLimitState.model_validate_json(raw)
        except ValidationError:
            return None

    def synchronize_global_limits(self) -> int:
        """Count live global-limit entries and purge those older than 24h.

        Primary only; secondaries return 0.
        """
        if not self._is_primary:
            return 0

        now = self._clock()
        live = 0
        stale: list[str] = []
        for full_key in self._cache.keys(self._limit_key("*")):
            key = self._strip(full_key, GLOBAL_LIMITS_KEY)
            state = self.get_global_limit(key)
            if state is None:
                continue
            if now - state.updated_at > GLOBAL_LIMIT_MAX_AGE:
                stale.append(key)
                continue
            live += 1

        if stale:
            token = self._acquire_lock("cleanup", HOUSEKEEPING_LOCK_TTL)
            if token is not None:
                try:
                    for key in stale:
                        self._cache.delete(self._limit_key(key))
                    self._audit_event("limits_cleaned_up", {"count": len(stale)})
                finally:
                    self._release_lock("cleanup", token)

        return live

    def cleanup_inactive_nodes(self, max_age_seconds: int | None = None) -> int:
        """Remove nodes not seen for ``max_age_seconds``. Primary only.

        Returns:
            Number of nodes removed (0 when secondary or the lock is busy).
        """
        if not self._is_primary:
            return 0

        token = self._acquire_lock("node_cleanup", HOUSEKEEPING_LOCK_TTL)
        if token is None:
            return 0

        max_age = self._node_max_age if max_age_seconds is None else max_age_seconds
        removed = 0
        try:
            now = self._clock()
            for node_id, node in self.get_nodes().items():
                if now - node.last_seen > max_age:
                    self._cache.delete(self._node_key(node_id))
                    removed += 1

            if removed:
                self._audit_event("nodes_cleaned_up", {"count": removed})
        finally:
            self._release_lock("node_cleanup", token)

        if removed:
            self.elect_primary()
        return removed

    def heartbeat(self) -> dict[str, int | bool]:
        """One maintenance cycle, meant to run every sync interval."""
        self.refresh_node()
        self.elect_primary()
        synchronized = self.synchronize_global_limits()
        removed = self.cleanup_inactive_nodes()
        return {
            "is_primary": self._is_primary,
            "synchronized": synchronized,
            "removed_nodes": removed,
        }

    def _audit_event(self, action: str, context: dict | None = None) -> None:
        safe_emit(
            self._audit,
            AuditCategory.SYSTEM,
            f"rate_limit_distributor_{action}",
            AuditSeverity.INFO,
            {"node_id": self._node_id, "is_primary": self._is_primary, **(context or {})},
        )
