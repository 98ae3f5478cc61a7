"""Adaptive rate limiter.

Combines the sliding window counter, behavior profiler, rule engine and
(optionally) the cluster coordinator into a single admission decision:

1. Applicable rules may cap the window below the nominal limit.
2. A high behavior score (> 0.6) applies a progressive cap,
   ``round(max * (1 - score * 0.5))``.
3. The node's current count is published to the coordinator (best effort).
4. The nominal sliding window makes the authoritative decision.
5. Admitted attempts update the behavior profile.

Stricter gates can only deny earlier; they never turn a nominal denial into
an admission. They check the window without recording, so each admitted
attempt is counted exactly once, by the nominal gate.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, Callable

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity, AuditSink, safe_emit
from adaptive_limiter.adapters.cache.base import CacheBackend
from adaptive_limiter.core.errors import CacheUnavailableError
from adaptive_limiter.core.logging import hash_identifier
from adaptive_limiter.schemas.keys import RateLimitKey
from adaptive_limiter.schemas.rules import RateLimiterRule
from adaptive_limiter.services.behavior_profiler import BehaviorProfiler
from adaptive_limiter.services.cluster_coordinator import ClusterCoordinator
from adaptive_limiter.services.rule_engine import RuleEngine, round_half_up
from adaptive_limiter.services.sliding_window import SlidingWindowCounter

logger = logging.getLogger(__name__)

PROGRESSIVE_SCORE_THRESHOLD = 0.6


class AdaptiveLimiter:
    """Rate limiter for one key whose strictness follows observed behavior."""

    def __init__(
        self,
        key: RateLimitKey,
        max_attempts: int,
        window_seconds: int,
        *,
        cache: CacheBackend | None,
        audit: AuditSink | None = None,
        coordinator: ClusterCoordinator | None = None,
        context: Mapping[str, Any] | None = None,
        adaptive: bool = True,
        statistical_adjustment: bool = False,
        rules_ttl_seconds: int = 3600,
        profile_ttl_seconds: int = 86400,
        anomaly_ttl_seconds: int = 604800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            key: Identity attempts are counted against.
            max_attempts: Nominal attempts allowed per window.
            window_seconds: Sliding window length in seconds.
            cache: Shared cache backend. Required.
            audit: Sink for violation and policy events.
            coordinator: Cluster coordinator to publish counts to.
            context: Request context (ip, user_agent, ...) merged into each attempt.
            adaptive: When False only the nominal window applies.
            statistical_adjustment: Enable the secondary scoring heuristics.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            CacheUnavailableError: If no cache backend is given.
            ValueError: If max_attempts or window_seconds are invalid.
        """
        if cache is None:
            raise CacheUnavailableError(
                code="cache_required",
                message="A cache backend is required for AdaptiveLimiter",
                details={"hint": "Configure CACHE_BACKEND and make sure it is reachable"},
            )
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        self._key = key
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._audit = audit
        self._coordinator = coordinator
        self._context = dict(context or {})
        self._adaptive = adaptive

        self._counter = SlidingWindowCounter(cache, clock=clock)
        self._profiler = BehaviorProfiler(
            cache,
            audit=audit,
            statistical_adjustment=statistical_adjustment,
            profile_ttl_seconds=profile_ttl_seconds,
            anomaly_ttl_seconds=anomaly_ttl_seconds,
            clock=clock,
        )
        self._rules = RuleEngine(
            cache,
            key,
            max_attempts,
            window_seconds,
            audit=audit,
            ttl_seconds=rules_ttl_seconds,
            clock=clock,
        )

    @property
    def key(self) -> RateLimitKey:
        return self._key

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @property
    def rules(self) -> RuleEngine:
        return self._rules

    def attempt(self, context: Mapping[str, Any] | None = None) -> bool:
        """Record and validate an attempt.

        Args:
            context: Per-request context; ``user_agent`` feeds the profile.

        Returns:
            True if the attempt is admitted.
        """
        ctx = {**self._context, **(context or {})}
        cache_key = self._key.cache_key
        score = self.behavior_score()

        if self._adaptive:
            adjusted = self._rules.adjusted_limit(self._max_attempts, score)
            if adjusted < self._max_attempts and self._counter.is_exceeded(
                cache_key, adjusted, self._window_seconds
            ):
                self._audit_decision(
                    "stricter_rule_applied",
                    ctx,
                    {
                        "normal_limit": self._max_attempts,
                        "adjusted_limit": adjusted,
                        "behavior_score": score,
                        "rules_applied": [r.id for r in self._rules.applicable_rules(score)],
                    },
                )
                return False

            if score > PROGRESSIVE_SCORE_THRESHOLD:
                progressive = round_half_up(self._max_attempts * (1 - score * 0.5))
                if progressive < self._max_attempts and self._counter.is_exceeded(
                    cache_key, progressive, self._window_seconds
                ):
                    self._audit_decision(
                        "progressive_limit_applied",
                        ctx,
                        {
                            "normal_limit": self._max_attempts,
                            "progressive_limit": progressive,
                            "behavior_score": score,
                        },
                    )
                    return False

        if self._coordinator is not None:
            self._publish_count()

        allowed = self._counter.attempt(cache_key, self._max_attempts, self._window_seconds)

        if allowed:
            if self._adaptive:
                self._profiler.record_success(
                    self._key.tracking_id,
                    user_agent=ctx.get("user_agent"),
                )
        else:
            self._audit_decision(
                "normal_limit_exceeded",
                ctx,
                {"behavior_score": score},
            )

        return allowed

    def _publish_count(self) -> None:
        # Informational only; never feeds back into admission.
        try:
            current = self._counter.count(self._key.cache_key, self._window_seconds)
            self._coordinator.update_global_limit(
                self._key.limiter_key,
                current,
                self._max_attempts,
                self._window_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "rate_limit.global_publish_failed",
                extra={
                    "key_hash": hash_identifier(self._key.limiter_key),
                    "error_type": type(exc).__name__,
                },
            )

    def remaining(self) -> int:
        return self._counter.remaining(self._key.cache_key, self._max_attempts, self._window_seconds)

    def retry_after(self) -> int:
        return self._counter.retry_after(self._key.cache_key, self._window_seconds)

    def is_exceeded(self) -> bool:
        return self._counter.is_exceeded(self._key.cache_key, self._max_attempts, self._window_seconds)

    def reset(self) -> None:
        self._counter.reset(self._key.cache_key)
        safe_emit(
            self._audit,
            AuditCategory.SECURITY,
            "rate_limit_reset",
            AuditSeverity.INFO,
            {"key": self._key.limiter_key},
        )

    def behavior_score(self) -> float:
        if not self._adaptive:
            return 0.0
        return self._profiler.score(self._key.tracking_id)

    def adjusted_limit(self) -> int:
        return self._rules.adjusted_limit(self._max_attempts, self.behavior_score())

    def add_rule(self, rule: RateLimiterRule) -> AdaptiveLimiter:
        self._rules.add_rule(rule)
        return self

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.remove_rule(rule_id)

    def list_rules(self) -> list[RateLimiterRule]:
        return self._rules.list_rules()

    def active_applicable_rules(self) -> dict[str, RateLimiterRule]:
        return {rule.id: rule for rule in self._rules.applicable_rules(self.behavior_score())}

    def status(self) -> dict[str, Any]:
        """Snapshot of the limiter state for reporting."""
        score = self.behavior_score()
        return {
            "key": self._key.limiter_key,
            "limit": self._max_attempts,
            "window_seconds": self._window_seconds,
            "adjusted_limit": self._rules.adjusted_limit(self._max_attempts, score),
            "remaining": self.remaining(),
            "retry_after": self.retry_after(),
            "behavior_score": score,
            "exceeded": self.is_exceeded(),
        }

    def _audit_decision(
        self,
        action: str,
        ctx: Mapping[str, Any],
        extra: Mapping[str, Any],
    ) -> None:
        logger.info(
            "rate_limit.denied",
            extra={
                "reason": action,
                "key_type": self._key.type.value,
                "key_hash": hash_identifier(self._key.limiter_key),
                "limit": self._max_attempts,
                "window_s": self._window_seconds,
            },
        )
        safe_emit(
            self._audit,
            AuditCategory.SECURITY,
            f"adaptive_rate_limit_{action}",
            AuditSeverity.WARNING,
            {
                "key": self._key.limiter_key,
                "max_attempts": self._max_attempts,
                "window_seconds": self._window_seconds,
                "ip_address": ctx.get("ip"),
                **extra,
            },
        )

    @classmethod
    def _create(
        cls,
        key: RateLimitKey,
        max_attempts: int,
        window_seconds: int,
        audit_context: Mapping[str, Any],
        **kwargs: Any,
    ) -> AdaptiveLimiter:
        safe_emit(
            kwargs.get("audit"),
            AuditCategory.SYSTEM,
            f"adaptive_rate_limit_{key.type.value}_created",
            AuditSeverity.INFO,
            {
                **audit_context,
                "max_attempts": max_attempts,
                "window_seconds": window_seconds,
                "distributed": kwargs.get("coordinator") is not None,
            },
        )
        return cls(key, max_attempts, window_seconds, **kwargs)

    @classmethod
    def per_ip(cls, ip: str, max_attempts: int, window_seconds: int, **kwargs: Any) -> AdaptiveLimiter:
        kwargs.setdefault("context", {"ip": ip})
        return cls._create(RateLimitKey.for_ip(ip), max_attempts, window_seconds, {"ip": ip}, **kwargs)

    @classmethod
    def per_user(
        cls, user_id: str, max_attempts: int, window_seconds: int, **kwargs: Any
    ) -> AdaptiveLimiter:
        return cls._create(
            RateLimitKey.for_user(user_id), max_attempts, window_seconds, {"user_id": user_id}, **kwargs
        )

    @classmethod
    def per_endpoint(
        cls,
        endpoint: str,
        identifier: str,
        max_attempts: int,
        window_seconds: int,
        **kwargs: Any,
    ) -> AdaptiveLimiter:
        return cls._create(
            RateLimitKey.for_endpoint(endpoint, identifier),
            max_attempts,
            window_seconds,
            {"endpoint": endpoint, "identifier": identifier},
            **kwargs,
        )
