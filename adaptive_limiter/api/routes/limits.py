from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query, Response, status

from adaptive_limiter.core.auth import verify_api_key
from adaptive_limiter.core.config import settings
from adaptive_limiter.core.errors import NotFoundAppError, ValidationAppError
from adaptive_limiter.core.rate_limit import build_limiter, enforce_rate_limit
from adaptive_limiter.schemas.api import (
    AttemptRequest,
    AttemptResponse,
    LimitStatusResponse,
    RuleCreateRequest,
    RuleListResponse,
    RuleResponse,
    RuleUpdateRequest,
)
from adaptive_limiter.schemas.keys import KeyType, RateLimitKey
from adaptive_limiter.schemas.rules import RateLimiterRule
from adaptive_limiter.services.adaptive_limiter import AdaptiveLimiter

router = APIRouter(prefix="/limits", tags=["Limits"])
rules_router = APIRouter(
    prefix="/limits",
    tags=["Rules"],
    dependencies=[Depends(verify_api_key), Depends(enforce_rate_limit)],
)


def _resolve_key(key_type: KeyType, identifier: str) -> RateLimitKey:
    try:
        return RateLimitKey(key_type, identifier.strip())
    except ValueError as exc:
        raise ValidationAppError(
            code="invalid_rate_limit_key",
            message=str(exc),
            details={"key_type": key_type.value},
        ) from exc


def _rule_not_found(limiter: AdaptiveLimiter, rule_id: str) -> NotFoundAppError:
    return NotFoundAppError(
        code="rule_not_found",
        message=f"Rule '{rule_id}' not found",
        details={"key": limiter.key.limiter_key, "rule_id": rule_id},
    )


@router.post(
    "/{key_type}/{identifier}/attempt",
    response_model=AttemptResponse,
    dependencies=[Depends(verify_api_key)],
)
def attempt(
    key_type: KeyType,
    identifier: str,
    response: Response,
    payload: AttemptRequest | None = Body(None),
) -> AttemptResponse:
    """Record an attempt for a key and report whether it is admitted.

    Always answers 200; the decision is in ``allowed``. Denied attempts
    carry ``Retry-After``.
    """
    payload = payload or AttemptRequest()
    key = _resolve_key(key_type, identifier)
    context = {"ip": payload.ip, "user_agent": payload.user_agent}
    limiter = build_limiter(key, payload.max_attempts, payload.window_seconds, context=context)

    allowed = limiter.attempt()
    remaining = limiter.remaining()
    retry_after = 0 if allowed else limiter.retry_after()

    if settings.limiter.include_headers:
        response.headers["X-RateLimit-Limit"] = str(limiter.max_attempts)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        if not allowed:
            response.headers["Retry-After"] = str(retry_after)

    return AttemptResponse(
        key=key.limiter_key,
        allowed=allowed,
        limit=limiter.max_attempts,
        remaining=remaining,
        retry_after=retry_after,
        behavior_score=limiter.behavior_score(),
    )


@rules_router.get("/{key_type}/{identifier}", response_model=LimitStatusResponse)
def get_status(
    key_type: KeyType,
    identifier: str,
    max_attempts: int | None = Query(None, ge=1),
    window_seconds: int | None = Query(None, ge=1),
) -> LimitStatusResponse:
    """Read a key's limiter state without recording an attempt."""
    limiter = build_limiter(_resolve_key(key_type, identifier), max_attempts, window_seconds)
    return LimitStatusResponse(**limiter.status())


@rules_router.delete("/{key_type}/{identifier}", status_code=status.HTTP_204_NO_CONTENT)
def reset_limit(key_type: KeyType, identifier: str) -> Response:
    """Clear a key's recorded attempts."""
    build_limiter(_resolve_key(key_type, identifier)).reset()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@rules_router.get("/{key_type}/{identifier}/rules", response_model=RuleListResponse)
def list_rules(key_type: KeyType, identifier: str) -> RuleListResponse:
    limiter = build_limiter(_resolve_key(key_type, identifier))
    return RuleListResponse(
        key=limiter.key.limiter_key,
        rules=[RuleResponse.from_rule(rule) for rule in limiter.list_rules()],
        applicable=list(limiter.active_applicable_rules()),
    )


@rules_router.post(
    "/{key_type}/{identifier}/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_rule(key_type: KeyType, identifier: str, payload: RuleCreateRequest) -> RuleResponse:
    """Add a rule to a key's rule set, replacing any rule with the same id."""
    limiter = build_limiter(_resolve_key(key_type, identifier))
    rule = RateLimiterRule(
        payload.id,
        payload.name,
        payload.description,
        payload.max_attempts,
        payload.window_seconds,
        payload.threshold,
        payload.conditions,
        payload.active,
        payload.priority,
        audit=limiter.rules.audit,
    )
    limiter.add_rule(rule)
    return RuleResponse.from_rule(rule)


@rules_router.patch("/{key_type}/{identifier}/rules/{rule_id}", response_model=RuleResponse)
def update_rule(
    key_type: KeyType,
    identifier: str,
    rule_id: str,
    payload: RuleUpdateRequest,
) -> RuleResponse:
    limiter = build_limiter(_resolve_key(key_type, identifier))
    rule = limiter.rules.get_rule(rule_id)
    if rule is None:
        raise _rule_not_found(limiter, rule_id)

    changes = payload.model_dump(exclude_none=True)
    active = changes.pop("active", None)
    for field, value in changes.items():
        setattr(rule, field, value)
    if active is True:
        rule.activate()
    elif active is False:
        rule.deactivate()

    limiter.rules.save()
    return RuleResponse.from_rule(rule)


@rules_router.delete(
    "/{key_type}/{identifier}/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_rule(key_type: KeyType, identifier: str, rule_id: str) -> Response:
    limiter = build_limiter(_resolve_key(key_type, identifier))
    if not limiter.remove_rule(rule_id):
        raise _rule_not_found(limiter, rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
