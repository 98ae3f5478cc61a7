"""Tests for the adaptive limiter decision pipeline."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity
from adaptive_limiter.adapters.cache import InMemoryPubSubChannel
from adaptive_limiter.core.errors import CacheUnavailableError
from adaptive_limiter.schemas.keys import RateLimitKey
from adaptive_limiter.schemas.profile import BehaviorProfile
from adaptive_limiter.services.adaptive_limiter import AdaptiveLimiter
from adaptive_limiter.services.behavior_profiler import BEHAVIOR_PREFIX
from adaptive_limiter.services.cluster_coordinator import ClusterCoordinator


def _seed_score(cache, tracking_id: str, score: float) -> None:
    profile = BehaviorProfile(request_count=10, first_seen=0.0, anomaly_score=score)
    cache.set(BEHAVIOR_PREFIX + tracking_id, profile.model_dump_json())


def _limiter(cache, clock, key=None, max_attempts=5, window_seconds=60, **kwargs) -> AdaptiveLimiter:
    return AdaptiveLimiter(
        key or RateLimitKey.for_ip("10.0.0.1"),
        max_attempts,
        window_seconds,
        cache=cache,
        clock=clock,
        **kwargs,
    )


class TestNominalWindow:
    def test_end_to_end_window(self, cache, clock, audit):
        limiter = _limiter(cache, clock, audit=audit)

        assert [limiter.attempt() for _ in range(5)] == [True] * 5
        assert limiter.remaining() == 0

        assert limiter.attempt() is False
        assert limiter.retry_after() == 60
        assert limiter.is_exceeded() is True

        clock.advance(61)
        assert limiter.attempt() is True

    def test_denial_is_audited(self, cache, clock, audit):
        limiter = _limiter(cache, clock, max_attempts=1, audit=audit, context={"ip": "10.0.0.1"})
        limiter.attempt()
        limiter.attempt()

        events = audit.find("adaptive_rate_limit_normal_limit_exceeded")
        assert len(events) == 1
        assert events[0]["category"] is AuditCategory.SECURITY
        assert events[0]["severity"] is AuditSeverity.WARNING
        assert events[0]["context"]["ip_address"] == "10.0.0.1"
        assert events[0]["context"]["key"] == "ip:10.0.0.1"

    def test_per_call_context_overrides_bound_context(self, cache, clock, audit):
        limiter = _limiter(cache, clock, max_attempts=1, audit=audit, context={"ip": "old"})
        limiter.attempt()
        limiter.attempt({"ip": "new"})

        assert audit.find("adaptive_rate_limit_normal_limit_exceeded")[0]["context"]["ip_address"] == "new"

    def test_admitted_attempts_update_profile(self, cache, clock):
        limiter = _limiter(cache, clock)
        limiter.attempt({"user_agent": "pytest"})

        raw = cache.get(BEHAVIOR_PREFIX + "10.0.0.1")
        profile = BehaviorProfile.model_validate_json(raw)
        assert profile.request_count == 1
        assert profile.user_agent == "pytest"

    def test_denied_attempts_do_not_update_profile(self, cache, clock):
        limiter = _limiter(cache, clock, max_attempts=1)
        limiter.attempt()
        limiter.attempt()

        profile = BehaviorProfile.model_validate_json(cache.get(BEHAVIOR_PREFIX + "10.0.0.1"))
        assert profile.request_count == 1

    def test_reset_clears_window_and_is_audited(self, cache, clock, audit):
        limiter = _limiter(cache, clock, max_attempts=1, audit=audit)
        limiter.attempt()

        limiter.reset()

        assert limiter.attempt() is True
        assert audit.find("rate_limit_reset")[0]["context"] == {"key": "ip:10.0.0.1"}


class TestAdaptiveGates:
    def test_stricter_rule_denies_early(self, cache, clock, audit):
        _seed_score(cache, "10.0.0.1", 0.9)
        limiter = _limiter(cache, clock, max_attempts=10, audit=audit)

        assert limiter.adjusted_limit() == 3
        assert [limiter.attempt() for _ in range(4)] == [True, True, True, False]

        event = audit.find("adaptive_rate_limit_stricter_rule_applied")[0]
        assert event["context"]["adjusted_limit"] == 3
        assert event["context"]["normal_limit"] == 10
        assert "multiple_accounts" in event["context"]["rules_applied"]

    def test_stricter_gate_does_not_double_count(self, cache, clock):
        _seed_score(cache, "10.0.0.1", 0.9)
        limiter = _limiter(cache, clock, max_attempts=10)
        for _ in range(5):
            limiter.attempt()

        assert limiter.remaining() == 7

    def test_progressive_limit(self, cache, clock, audit):
        key = RateLimitKey("custom", "tenant-7")
        _seed_score(cache, key.tracking_id, 0.7)
        limiter = _limiter(cache, clock, key=key, max_attempts=10, audit=audit)
        limiter.remove_rule("burst_traffic")
        limiter.remove_rule("suspicious_activity")

        results = [limiter.attempt() for _ in range(8)]

        # round(10 * (1 - 0.7 * 0.5)) == 7
        assert results == [True] * 7 + [False]
        event = audit.find("adaptive_rate_limit_progressive_limit_applied")[0]
        assert event["context"]["progressive_limit"] == 7

    def test_low_score_uses_nominal_limit(self, cache, clock):
        _seed_score(cache, "10.0.0.1", 0.1)
        limiter = _limiter(cache, clock, max_attempts=10)

        assert sum(limiter.attempt() for _ in range(12)) == 10

    def test_non_adaptive_mode_ignores_behavior(self, cache, clock):
        _seed_score(cache, "10.0.0.1", 0.95)
        limiter = _limiter(cache, clock, max_attempts=10, adaptive=False)

        assert limiter.behavior_score() == 0.0
        assert sum(limiter.attempt() for _ in range(12)) == 10

    def test_active_applicable_rules(self, cache, clock):
        _seed_score(cache, "10.0.0.1", 0.72)
        limiter = _limiter(cache, clock, max_attempts=10)

        assert set(limiter.active_applicable_rules()) == {"burst_traffic", "multiple_accounts"}

    def test_add_rule_tightens_limit(self, cache, clock):
        from adaptive_limiter.schemas.rules import RateLimiterRule

        limiter = _limiter(cache, clock, max_attempts=10)
        limiter.add_rule(RateLimiterRule("everyone", "Everyone", "", 2, 60, 0.0))

        assert [limiter.attempt() for _ in range(3)] == [True, True, False]
        assert "everyone" in {rule.id for rule in limiter.list_rules()}


class TestFailureModes:
    def test_missing_cache_is_fatal(self, clock):
        with pytest.raises(CacheUnavailableError) as exc_info:
            AdaptiveLimiter(RateLimitKey.for_ip("10.0.0.1"), 5, 60, cache=None, clock=clock)

        assert exc_info.value.code == "cache_required"

    @pytest.mark.parametrize(("max_attempts", "window"), [(0, 60), (5, 0)])
    def test_invalid_limits_rejected(self, cache, clock, max_attempts, window):
        with pytest.raises(ValueError):
            _limiter(cache, clock, max_attempts=max_attempts, window_seconds=window)

    def test_audit_failures_do_not_change_decisions(self, cache, clock, exploding_audit):
        _seed_score(cache, "10.0.0.1", 0.9)
        limiter = _limiter(cache, clock, max_attempts=10, audit=exploding_audit)

        assert [limiter.attempt() for _ in range(4)] == [True, True, True, False]
        assert exploding_audit.calls > 0

    def test_coordinator_failure_is_swallowed(self, cache, clock):
        coordinator = MagicMock()
        coordinator.update_global_limit.side_effect = RuntimeError("redis down")
        limiter = _limiter(cache, clock, coordinator=coordinator)

        assert limiter.attempt() is True
        coordinator.update_global_limit.assert_called_once()


class TestClusterPublication:
    def test_publishes_current_count(self, cache, clock):
        channel = InMemoryPubSubChannel()
        coordinator = ClusterCoordinator(cache, channel=channel, node_id="node-a", clock=clock)
        limiter = _limiter(cache, clock, coordinator=coordinator)

        for _ in range(3):
            limiter.attempt()

        state = coordinator.get_global_limit("ip:10.0.0.1")
        assert state.count == 2
        assert state.max == 5
        assert state.node_id == "node-a"
        assert len(channel.messages) == 3


class TestFactories:
    def test_per_ip(self, cache, clock, audit):
        limiter = AdaptiveLimiter.per_ip("10.0.0.9", 5, 60, cache=cache, audit=audit, clock=clock)

        assert limiter.key == RateLimitKey.for_ip("10.0.0.9")
        event = audit.find("adaptive_rate_limit_ip_created")[0]
        assert event["context"]["ip"] == "10.0.0.9"
        assert event["context"]["distributed"] is False

    def test_per_user(self, cache, clock, audit):
        limiter = AdaptiveLimiter.per_user("alice", 5, 60, cache=cache, audit=audit, clock=clock)

        assert limiter.key.limiter_key == "user:alice"
        assert audit.find("adaptive_rate_limit_user_created")

    def test_per_endpoint(self, cache, clock, audit):
        limiter = AdaptiveLimiter.per_endpoint(
            "/login", "10.0.0.9", 5, 60, cache=cache, audit=audit, clock=clock
        )

        assert limiter.key.cache_key == "rate_limit:endpoint:/login:10.0.0.9"
        assert audit.find("adaptive_rate_limit_endpoint_created")[0]["context"]["endpoint"] == "/login"


def test_status_snapshot(cache, clock):
    limiter = _limiter(cache, clock)
    limiter.attempt()

    status = limiter.status()

    assert status == {
        "key": "ip:10.0.0.1",
        "limit": 5,
        "window_seconds": 60,
        "adjusted_limit": 5,
        "remaining": 4,
        "retry_after": 60,
        "behavior_score": 0.25,
        "exceeded": False,
    }
