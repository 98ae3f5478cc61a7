"""Behavior profiling and anomaly scoring.

Each tracking identity gets a rolling profile of its recent request
intervals. From it we derive an anomaly score in [0, 1] describing how
automation-like or bursty the identity looks:

- rapid requests (intervals under one second) weigh 0.4
- low, fast interval variance (machine-like regularity) adds 0.3
- a sustained request rate above 0.2/s adds up to 0.3

The persisted score is an exponential moving average (0.7 old, 0.3 new) so a
single burst cannot swing it far.

The optional statistical adjustment pass (``LIMITER_ENABLE_ML``) is a second
set of hand-tuned heuristics layered on top. It is not a trained model and
has no ML dependency.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from pydantic import ValidationError

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity, AuditSink, safe_emit
from adaptive_limiter.adapters.cache.base import CacheBackend
from adaptive_limiter.core.logging import hash_identifier
from adaptive_limiter.schemas.profile import BehaviorProfile

logger = logging.getLogger(__name__)

BEHAVIOR_PREFIX = "behavior_profile:"
ANOMALY_PREFIX = "anomaly_score:"

NEUTRAL_SCORE = 0.25
MIN_INTERVALS_FOR_STATS = 5
RAPID_INTERVAL_SECONDS = 1.0
SMOOTHING_OLD_WEIGHT = 0.7


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def interval_stats(intervals: list[float]) -> tuple[float, float, float]:
    """Return (mean, population variance, rapid ratio) for a non-empty list."""
    n = len(intervals)
    mean = sum(intervals) / n
    variance = sum((x - mean) ** 2 for x in intervals) / n
    rapid = sum(1 for x in intervals if x < RAPID_INTERVAL_SECONDS) / n
    return mean, variance, rapid


def raw_anomaly_signal(
    rapid_request_ratio: float,
    avg_interval: float,
    interval_variance: float,
    request_rate: float,
) -> float:
    """Unsmoothed anomaly signal, clamped to [0, 1]."""
    signal = rapid_request_ratio * 0.4
    if interval_variance < 0.1 and avg_interval < 2.0:
        signal += 0.3
    if request_rate > 0.2:
        signal += min(0.3, request_rate * 0.5)
    return _clamp(signal)


class BehaviorProfiler:
    """Maintains behavior profiles in the shared cache and scores them."""

    def __init__(
        self,
        cache: CacheBackend,
        *,
        audit: AuditSink | None = None,
        statistical_adjustment: bool = False,
        profile_ttl_seconds: int = 86400,
        anomaly_ttl_seconds: int = 604800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._audit = audit
        self._statistical_adjustment = statistical_adjustment
        self._profile_ttl = profile_ttl_seconds
        self._anomaly_ttl = anomaly_ttl_seconds
        self._clock = clock

    def load_profile(self, tracking_id: str) -> BehaviorProfile | None:
        """Read a profile; unreadable data counts as no profile."""
        raw = self._cache.get(BEHAVIOR_PREFIX + tracking_id)
        if not raw:
            return None
        try:
            return BehaviorProfile.model_validate_json(raw)
        except ValidationError:
            logger.warning(
                "behavior_profile.corrupt",
                extra={"tracking_hash": hash_identifier(tracking_id)},
            )
            return None

    def anomaly_snapshot(self, tracking_id: str) -> float | None:
        """Last persisted anomaly score from the long-retention snapshot."""
        raw = self._cache.get(ANOMALY_PREFIX + tracking_id)
        if raw is None:
            return None
        try:
            return _clamp(float(raw))
        except ValueError:
            return None

    def score(self, tracking_id: str) -> float:
        """Current behavior score for an identity (0.25 without a usable profile).

        Read-only: the statistical adjustment event is emitted by
        ``record_success``, once per admitted attempt.
        """
        if not tracking_id:
            return NEUTRAL_SCORE
        profile = self.load_profile(tracking_id)
        if profile is None or profile.anomaly_score is None:
            return NEUTRAL_SCORE
        return self._score_from_profile(tracking_id, profile, self._clock(), emit=False)

    def record_success(
        self,
        tracking_id: str,
        now: float | None = None,
        user_agent: str | None = None,
    ) -> float:
        """Fold an admitted attempt into the profile and return the new score."""
        if not tracking_id:
            return NEUTRAL_SCORE

        now = self._clock() if now is None else now
        profile = self.load_profile(tracking_id) or BehaviorProfile()

        profile.request_count += 1
        profile.last_seen = now
        if user_agent is not None:
            profile.user_agent = user_agent

        if profile.last_request_time is not None:
            delta = now - profile.last_request_time
            if delta > 0:
                profile.push_interval(delta)
        profile.last_request_time = now

        if profile.first_seen is None:
            profile.first_seen = now

        if len(profile.intervals) >= MIN_INTERVALS_FOR_STATS:
            self._update_statistics(profile, now)

        self._cache.set(
            BEHAVIOR_PREFIX + tracking_id,
            profile.model_dump_json(),
            self._profile_ttl,
        )
        if profile.anomaly_score is not None:
            self._cache.set(
                ANOMALY_PREFIX + tracking_id,
                repr(profile.anomaly_score),
                self._anomaly_ttl,
            )
            return self._score_from_profile(tracking_id, profile, now)

        return NEUTRAL_SCORE

    def _update_statistics(self, profile: BehaviorProfile, now: float) -> None:
        avg, variance, rapid = interval_stats(profile.intervals)
        first_seen = profile.first_seen if profile.first_seen is not None else now
        elapsed = max(1.0, now - first_seen)
        rate = profile.request_count / elapsed

        profile.avg_interval = avg
        profile.interval_variance = variance
        profile.rapid_request_ratio = rapid
        profile.request_rate = rate

        raw = raw_anomaly_signal(rapid, avg, variance, rate)
        if profile.anomaly_score is None:
            profile.anomaly_score = raw
        else:
            profile.anomaly_score = _clamp(
                profile.anomaly_score * SMOOTHING_OLD_WEIGHT + raw * (1 - SMOOTHING_OLD_WEIGHT)
            )

    def _score_from_profile(
        self,
        tracking_id: str,
        profile: BehaviorProfile,
        now: float,
        *,
        emit: bool = True,
    ) -> float:
        base = _clamp(profile.anomaly_score if profile.anomaly_score is not None else NEUTRAL_SCORE)
        if not self._statistical_adjustment:
            return base

        additional = 0.0
        if profile.rapid_request_ratio is not None and profile.rapid_request_ratio > 0.6:
            additional += 0.15
        if profile.interval_variance is not None and profile.interval_variance < 0.05:
            additional += 0.2
        if profile.first_seen is not None:
            rate = profile.request_count / max(1.0, now - profile.first_seen)
            if rate > 0.5:
                additional += min(0.25, rate * 0.2)

        adjusted = _clamp(base * 0.7 + additional * 0.3)
        if not emit:
            return adjusted
        safe_emit(
            self._audit,
            AuditCategory.SYSTEM,
            "statistical_adjustment_applied",
            AuditSeverity.INFO,
            {
                "original_score": base,
                "adjusted_score": adjusted,
                "tracking_id": tracking_id,
            },
        )
        return adjusted
