"""Pydantic schemas for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from adaptive_limiter.schemas.rules import RateLimiterRule


class AttemptRequest(BaseModel):
    """Optional overrides and context for a single admission check."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int | None = Field(
        None,
        ge=1,
        description="Nominal attempts per window. Defaults to LIMITER_DEFAULT_MAX_ATTEMPTS.",
    )
    window_seconds: int | None = Field(
        None,
        ge=1,
        description="Sliding window length. Defaults to LIMITER_DEFAULT_WINDOW_SECONDS.",
    )
    ip: str | None = Field(None, description="Client IP, recorded in audit events.")
    user_agent: str | None = Field(None, description="Client user agent, recorded in the profile.")


class AttemptResponse(BaseModel):
    """Outcome of one admission check."""

    key: str = Field(..., description="The ``type:identifier`` key the attempt was counted against.")
    allowed: bool
    limit: int = Field(..., description="Nominal attempts per window.")
    remaining: int = Field(..., ge=0)
    retry_after: int = Field(..., ge=0, description="Seconds until the next attempt may succeed.")
    behavior_score: float = Field(..., ge=0.0, le=1.0)


class LimitStatusResponse(BaseModel):
    """Read-only snapshot of a key's limiter state."""

    key: str
    limit: int
    window_seconds: int
    adjusted_limit: int = Field(..., description="Strictest limit currently imposed by applicable rules.")
    remaining: int
    retry_after: int
    behavior_score: float
    exceeded: bool


class RuleCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1)
    description: str = ""
    max_attempts: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)
    threshold: float = Field(0.5, ge=0.0, le=1.0)
    conditions: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    priority: int = 10


class RuleUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int | None = Field(None, ge=1)
    window_seconds: int | None = Field(None, ge=1)
    threshold: float | None = Field(None, ge=0.0, le=1.0)
    conditions: dict[str, Any] | None = None
    active: bool | None = None
    priority: int | None = None


class RuleResponse(BaseModel):
    id: str
    name: str
    description: str
    max_attempts: int
    window_seconds: int
    threshold: float
    conditions: dict[str, Any]
    active: bool
    priority: int
    last_modified: datetime

    @classmethod
    def from_rule(cls, rule: RateLimiterRule) -> RuleResponse:
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            max_attempts=rule.max_attempts,
            window_seconds=rule.window_seconds,
            threshold=rule.threshold,
            conditions=rule.conditions,
            active=rule.active,
            priority=rule.priority,
            last_modified=rule.last_modified,
        )


class RuleListResponse(BaseModel):
    key: str
    rules: list[RuleResponse] = Field(..., description="All rules, highest priority first.")
    applicable: list[str] = Field(
        ...,
        description="Ids of the active rules the key's current behavior score triggers.",
    )


class ClusterStatusResponse(BaseModel):
    enabled: bool
    node_id: str | None = None
    is_primary: bool = False
    primary_node_id: str | None = None
    single_node: bool = True
    node_count: int = 0
