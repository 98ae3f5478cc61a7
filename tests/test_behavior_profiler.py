"""Tests for behavior profiling and anomaly scoring."""

from __future__ import annotations

import pytest

from adaptive_limiter.schemas.profile import BehaviorProfile
from adaptive_limiter.services.behavior_profiler import (
    ANOMALY_PREFIX,
    BEHAVIOR_PREFIX,
    NEUTRAL_SCORE,
    BehaviorProfiler,
    interval_stats,
    raw_anomaly_signal,
)


def _feed(profiler: BehaviorProfiler, clock, tracking_id: str, count: int, interval: float) -> float:
    score = NEUTRAL_SCORE
    for i in range(count):
        if i:
            clock.advance(interval)
        score = profiler.record_success(tracking_id)
    return score


class TestRawSignal:
    def test_interval_stats(self):
        mean, variance, rapid = interval_stats([0.5, 1.5, 0.5, 1.5])
        assert mean == pytest.approx(1.0)
        assert variance == pytest.approx(0.25)
        assert rapid == pytest.approx(0.5)

    def test_machine_like_traffic_saturates(self):
        assert raw_anomaly_signal(1.0, 0.3, 0.0, 3.0) == pytest.approx(1.0)

    def test_slow_irregular_traffic_is_quiet(self):
        assert raw_anomaly_signal(0.0, 30.0, 100.0, 0.05) == 0.0

    def test_rate_contribution_is_capped(self):
        assert raw_anomaly_signal(0.0, 5.0, 10.0, 100.0) == pytest.approx(0.3)


class TestScore:
    def test_unknown_identity_scores_neutral(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        assert profiler.score("nobody") == NEUTRAL_SCORE

    def test_empty_tracking_id_scores_neutral(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        assert profiler.score("") == NEUTRAL_SCORE
        assert profiler.record_success("") == NEUTRAL_SCORE

    def test_corrupt_profile_scores_neutral(self, cache, clock):
        cache.set(BEHAVIOR_PREFIX + "user-1", "{not json")
        profiler = BehaviorProfiler(cache, clock=clock)

        assert profiler.score("user-1") == NEUTRAL_SCORE
        assert profiler.load_profile("user-1") is None

    def test_neutral_until_enough_intervals(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        _feed(profiler, clock, "user-1", 5, 0.3)

        profile = profiler.load_profile("user-1")
        assert profile.request_count == 5
        assert len(profile.intervals) == 4
        assert profile.anomaly_score is None
        assert profiler.score("user-1") == NEUTRAL_SCORE

    def test_rapid_regular_traffic_scores_high(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        score = _feed(profiler, clock, "bot", 21, 0.3)

        profile = profiler.load_profile("bot")
        assert profile.rapid_request_ratio == pytest.approx(1.0)
        assert profile.interval_variance == pytest.approx(0.0, abs=1e-9)
        assert score >= 0.4
        assert 0.0 <= profiler.score("bot") <= 1.0

    def test_rapid_intervals_raise_a_low_smoothed_score(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        seeded = BehaviorProfile(
            request_count=21,
            first_seen=clock.now - 6.0,
            last_request_time=clock.now,
            intervals=[0.3] * 20,
            anomaly_score=0.2,
        )
        cache.set(BEHAVIOR_PREFIX + "bot", seeded.model_dump_json())

        clock.advance(0.3)
        score = profiler.record_success("bot")

        # raw signal saturates at 1.0, smoothed as 0.7 * 0.2 + 0.3 * 1.0
        assert score > 0.2
        assert score == pytest.approx(0.44)
        assert profiler.load_profile("bot").rapid_request_ratio == pytest.approx(1.0)

    def test_slow_traffic_scores_low(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        score = _feed(profiler, clock, "human", 10, 10.0)

        assert score == pytest.approx(0.0)

    def test_single_burst_moves_score_gradually(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        _feed(profiler, clock, "human", 10, 10.0)

        clock.advance(0.1)
        score = profiler.record_success("human")

        assert 0.0 < score < 0.1

    def test_intervals_buffer_is_bounded(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        _feed(profiler, clock, "user-1", 30, 1.5)

        profile = profiler.load_profile("user-1")
        assert len(profile.intervals) == 20
        assert profile.request_count == 30

    def test_zero_interval_is_not_recorded(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        profiler.record_success("user-1")
        profiler.record_success("user-1")

        profile = profiler.load_profile("user-1")
        assert profile.request_count == 2
        assert profile.intervals == []

    def test_user_agent_is_kept(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        profiler.record_success("user-1", user_agent="curl/8.0")

        assert profiler.load_profile("user-1").user_agent == "curl/8.0"


class TestPersistence:
    def test_profile_and_snapshot_ttls(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        _feed(profiler, clock, "bot", 6, 0.3)

        assert cache.ttl(BEHAVIOR_PREFIX + "bot") == 86400
        assert cache.ttl(ANOMALY_PREFIX + "bot") == 604800
        assert profiler.anomaly_snapshot("bot") == pytest.approx(profiler.score("bot"))

    def test_profile_expires_after_a_day(self, cache, clock):
        profiler = BehaviorProfiler(cache, clock=clock)
        _feed(profiler, clock, "bot", 6, 0.3)

        clock.advance(86401)

        assert profiler.score("bot") == NEUTRAL_SCORE


class TestStatisticalAdjustment:
    def test_adjustment_layers_on_base_score(self, cache, clock, audit):
        profiler = BehaviorProfiler(cache, audit=audit, statistical_adjustment=True, clock=clock)
        _feed(profiler, clock, "bot", 21, 0.3)

        # base 1.0, additional 0.15 + 0.2 + 0.25
        assert profiler.score("bot") == pytest.approx(0.88)
        assert audit.find("statistical_adjustment_applied")

    def test_reading_the_score_does_not_emit(self, cache, clock, audit):
        profiler = BehaviorProfiler(cache, audit=audit, statistical_adjustment=True, clock=clock)
        _feed(profiler, clock, "bot", 6, 0.3)
        emitted = len(audit.find("statistical_adjustment_applied"))

        for _ in range(3):
            profiler.score("bot")

        assert emitted == 1
        assert len(audit.find("statistical_adjustment_applied")) == emitted

    def test_disabled_by_default(self, cache, clock, audit):
        profiler = BehaviorProfiler(cache, audit=audit, clock=clock)
        _feed(profiler, clock, "bot", 21, 0.3)

        assert profiler.score("bot") == pytest.approx(1.0)
        assert not audit.find("statistical_adjustment_applied")
