"""Pydantic record for persisted behavior profiles."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROFILE_SCHEMA_VERSION = 1
MAX_INTERVALS = 20


class BehaviorProfile(BaseModel):
    """Rolling statistics for one tracking identity.

    Every field has a default so older or partial payloads still load;
    anything that fails validation is treated as "no profile" by the
    profiler.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = Field(default=PROFILE_SCHEMA_VERSION)
    request_count: int = Field(default=0, ge=0)
    first_seen: float | None = Field(default=None, description="Epoch seconds of the first admitted attempt")
    last_seen: float | None = Field(default=None)
    last_request_time: float | None = Field(default=None)
    intervals: list[float] = Field(
        default_factory=list,
        description=f"Most recent inter-request intervals in seconds (max {MAX_INTERVALS})",
    )
    avg_interval: float | None = None
    interval_variance: float | None = None
    rapid_request_ratio: float | None = None
    request_rate: float | None = None
    anomaly_score: float | None = Field(default=None, ge=0.0, le=1.0)
    user_agent: str | None = None

    @field_validator("intervals")
    @classmethod
    def _keep_latest_intervals(cls, value: list[float]) -> list[float]:
        return value[-MAX_INTERVALS:]

    def push_interval(self, interval: float) -> None:
        """Append an interval, dropping the oldest beyond the cap."""
        self.intervals.append(interval)
        if len(self.intervals) > MAX_INTERVALS:
            del self.intervals[: len(self.intervals) - MAX_INTERVALS]
