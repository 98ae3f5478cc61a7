"""Rate limiter rules.

A rule tightens the effective limit once an identity's behavior score
crosses its threshold. Rules are evaluated, never executed: they only
yield a number.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity, AuditSink, safe_emit

RULE_SCHEMA_VERSION = 1


def _clamp_threshold(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleRecord(BaseModel):
    """Versioned persistence shape of a rule.

    Out-of-range numbers are clamped rather than rejected; missing optional
    fields are filled with defaults.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = RULE_SCHEMA_VERSION
    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    max_attempts: int
    window_seconds: int
    threshold: float = 0.5
    conditions: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    priority: int = 10
    last_modified: datetime | None = None

    @field_validator("threshold")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return _clamp_threshold(value)

    @field_validator("max_attempts", "window_seconds")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)


class RateLimiterRule:
    """A named, prioritized policy that caps attempts above a score threshold.

    Every mutation stamps ``last_modified`` and emits an audit event through
    the injected sink.
    """

    def __init__(
        self,
        id: str,
        name: str,
        description: str,
        max_attempts: int,
        window_seconds: int,
        threshold: float = 0.5,
        conditions: dict[str, Any] | None = None,
        active: bool = True,
        priority: int = 10,
        *,
        audit: AuditSink | None = None,
        last_modified: datetime | None = None,
        _emit_created: bool = True,
    ) -> None:
        if not id:
            raise ValueError("rule id must be a non-empty string")
        self._id = id
        self._name = name
        self._description = description
        self._max_attempts = max(1, int(max_attempts))
        self._window_seconds = max(1, int(window_seconds))
        self._threshold = _clamp_threshold(threshold)
        self._conditions = dict(conditions or {})
        self._active = active
        self._priority = int(priority)
        self._last_modified = last_modified or _utcnow()
        self.audit = audit

        if _emit_created:
            self._audit_change("rule_created")

    def __repr__(self) -> str:
        return (
            f"RateLimiterRule(id={self._id!r}, max_attempts={self._max_attempts}, "
            f"threshold={self._threshold}, priority={self._priority}, active={self._active})"
        )

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def last_modified(self) -> datetime:
        return self._last_modified

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @max_attempts.setter
    def max_attempts(self, value: int) -> None:
        self._max_attempts = max(1, int(value))
        self._touch("rule_modified", {"property": "max_attempts"})

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @window_seconds.setter
    def window_seconds(self, value: int) -> None:
        self._window_seconds = max(1, int(value))
        self._touch("rule_modified", {"property": "window_seconds"})

    @property
    def threshold(self) -> float:
        return self._threshold

    @threshold.setter
    def threshold(self, value: float) -> None:
        self._threshold = _clamp_threshold(value)
        self._touch("rule_modified", {"property": "threshold"})

    @property
    def conditions(self) -> dict[str, Any]:
        return dict(self._conditions)

    @conditions.setter
    def conditions(self, value: dict[str, Any]) -> None:
        self._conditions = dict(value)
        self._touch("rule_modified", {"property": "conditions"})

    @property
    def priority(self) -> int:
        return self._priority

    @priority.setter
    def priority(self, value: int) -> None:
        self._priority = int(value)
        self._touch("rule_modified", {"property": "priority"})

    @property
    def active(self) -> bool:
        return self._active

    def add_condition(self, key: str, value: Any) -> RateLimiterRule:
        self._conditions[key] = value
        self._touch("rule_condition_added", {"condition": key})
        return self

    def activate(self) -> RateLimiterRule:
        if not self._active:
            self._active = True
            self._touch("rule_activated")
        return self

    def deactivate(self) -> RateLimiterRule:
        if self._active:
            self._active = False
            self._touch("rule_deactivated")
        return self

    def applies_to(self, score: float) -> bool:
        """Whether the rule is active and the score has reached its threshold."""
        return self._active and score >= self._threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": RULE_SCHEMA_VERSION,
            "id": self._id,
            "name": self._name,
            "description": self._description,
            "max_attempts": self._max_attempts,
            "window_seconds": self._window_seconds,
            "threshold": self._threshold,
            "conditions": dict(self._conditions),
            "active": self._active,
            "priority": self._priority,
            "last_modified": self._last_modified.isoformat(),
        }

    @classmethod
    def from_record(cls, record: RuleRecord, *, audit: AuditSink | None = None) -> RateLimiterRule:
        return cls(
            record.id,
            record.name,
            record.description,
            record.max_attempts,
            record.window_seconds,
            record.threshold,
            record.conditions,
            record.active,
            record.priority,
            audit=audit,
            last_modified=record.last_modified,
            _emit_created=False,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, audit: AuditSink | None = None) -> RateLimiterRule:
        """Rebuild a rule from ``to_dict`` output.

        Raises:
            pydantic.ValidationError: If required fields are missing or malformed.
        """
        return cls.from_record(RuleRecord.model_validate(data), audit=audit)

    def _touch(self, action: str, context: dict[str, Any] | None = None) -> None:
        self._last_modified = _utcnow()
        self._audit_change(action, context)

    def _audit_change(self, action: str, context: dict[str, Any] | None = None) -> None:
        safe_emit(
            self.audit,
            AuditCategory.SYSTEM,
            f"rate_limit_{action}",
            AuditSeverity.INFO,
            {
                "rule_id": self._id,
                "rule_name": self._name,
                "max_attempts": self._max_attempts,
                "window_seconds": self._window_seconds,
                "active": self._active,
                **(context or {}),
            },
        )
