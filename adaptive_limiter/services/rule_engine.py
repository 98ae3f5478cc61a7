"""Prioritized, mutable rule sets per limiter key.

The engine only ever answers one numeric question: given a behavior score,
what is the strictest limit any applicable rule imposes? Priority orders
rules for listing and reporting and breaks ties between equal limits, but
the lowest limit always wins.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Callable

from adaptive_limiter.adapters.audit import AuditCategory, AuditSeverity, AuditSink, safe_emit
from adaptive_limiter.adapters.cache.base import CacheBackend
from adaptive_limiter.schemas.keys import KeyType, RateLimitKey
from adaptive_limiter.schemas.rules import RateLimiterRule, RuleRecord

logger = logging.getLogger(__name__)

RULES_PREFIX = "rate_limiter_rules:"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class RuleEngine:
    """Rule set bound to a single rate limit key.

    Rules are cached in the shared backend for ``ttl_seconds`` and loaded
    lazily: on first use, and again once the local copy is older than the
    TTL. A missing or unreadable cached set is replaced by the defaults for
    the key type.
    """

    def __init__(
        self,
        cache: CacheBackend,
        key: RateLimitKey,
        nominal_max: int,
        window_seconds: int,
        *,
        audit: AuditSink | None = None,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._key = key
        self._nominal_max = max(1, nominal_max)
        self._window_seconds = max(1, window_seconds)
        self._audit = audit
        self._ttl = ttl_seconds
        self._clock = clock
        self._rules: dict[str, RateLimiterRule] | None = None
        self._loaded_at = 0.0

    @property
    def audit(self) -> AuditSink | None:
        return self._audit

    @property
    def cache_key(self) -> str:
        return RULES_PREFIX + self._key.limiter_key

    def _scaled_rule(
        self,
        rule_id: str,
        name: str,
        description: str,
        fraction: float,
        threshold: float,
    ) -> RateLimiterRule:
        return RateLimiterRule(
            rule_id,
            name,
            description,
            max(1, round_half_up(self._nominal_max * fraction)),
            self._window_seconds,
            threshold,
            audit=self._audit,
        )

    def default_rules(self) -> list[RateLimiterRule]:
        """Baseline rules for this key's type, scaled from the nominal limit."""
        rules = [
            self._scaled_rule(
                "suspicious_activity",
                "Suspicious Activity",
                "Applies stricter limits when suspicious behavior is detected",
                0.5,
                0.75,
            ),
            self._scaled_rule(
                "burst_traffic",
                "Burst Traffic",
                "Limits unusually rapid request bursts",
                0.7,
                0.6,
            ),
        ]

        if self._key.type is KeyType.IP:
            rules.append(
                self._scaled_rule(
                    "multiple_accounts",
                    "Multiple Account Creation",
                    "Detects attempts to create multiple accounts from same IP",
                    0.3,
                    0.7,
                )
            )
        elif self._key.type is KeyType.USER:
            rules.append(
                self._scaled_rule(
                    "account_testing",
                    "Account Testing",
                    "Detects attempts to test account capabilities or limits",
                    0.5,
                    0.65,
                )
            )
        elif self._key.type is KeyType.ENDPOINT:
            rules.append(
                self._scaled_rule(
                    "endpoint_abuse",
                    "Endpoint Abuse",
                    "Detects attempts to abuse specific API endpoints",
                    0.6,
                    0.5,
                )
            )

        return rules

    def _read_cached(self) -> dict[str, RateLimiterRule] | None:
        raw = self._cache.get(self.cache_key)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            records = [RuleRecord.model_validate(item) for item in payload]
        except (ValueError, TypeError):
            # pydantic.ValidationError and JSONDecodeError are both ValueErrors
            logger.warning("rules.cache_corrupt", extra={"rules_key": self._key.type.value})
            return None
        return {
            record.id: RateLimiterRule.from_record(record, audit=self._audit)
            for record in records
        }

    def _ensure_loaded(self) -> dict[str, RateLimiterRule]:
        now = self._clock()
        if self._rules is not None and now - self._loaded_at < self._ttl:
            return self._rules

        rules = self._read_cached()
        if rules is None:
            rules = {rule.id: rule for rule in self.default_rules()}
            self._rules = rules
            self.save()
        else:
            self._rules = rules
        self._loaded_at = now
        return self._rules

    def save(self) -> None:
        """Persist the current rule set with a fresh TTL."""
        rules = self._ensure_loaded() if self._rules is None else self._rules
        payload = json.dumps([rule.to_dict() for rule in rules.values()])
        self._cache.set(self.cache_key, payload, self._ttl)
        self._loaded_at = self._clock()

    def reload(self) -> None:
        """Drop the local copy; the next access re-reads the cache."""
        self._rules = None

    def add_rule(self, rule: RateLimiterRule) -> None:
        """Add or replace a rule and persist the set."""
        rules = self._ensure_loaded()
        if rule.audit is None:
            rule.audit = self._audit
        rules[rule.id] = rule
        self.save()

    def remove_rule(self, rule_id: str) -> bool:
        rules = self._ensure_loaded()
        removed = rules.pop(rule_id, None)
        if removed is None:
            return False
        self.save()
        safe_emit(
            self._audit,
            AuditCategory.SYSTEM,
            "rate_limit_rule_removed",
            AuditSeverity.INFO,
            {"rule_id": rule_id, "key": self._key.limiter_key},
        )
        return True

    def get_rule(self, rule_id: str) -> RateLimiterRule | None:
        return self._ensure_loaded().get(rule_id)

    def list_rules(self) -> list[RateLimiterRule]:
        """All rules, highest priority first."""
        return sorted(self._ensure_loaded().values(), key=lambda r: (-r.priority, r.id))

    def applicable_rules(self, score: float) -> list[RateLimiterRule]:
        """Active rules whose threshold the score has reached, by priority."""
        return [rule for rule in self.list_rules() if rule.applies_to(score)]

    def strictest_rule(self, score: float) -> RateLimiterRule | None:
        """The rule that decides the adjusted limit; higher priority wins ties."""
        applicable = self.applicable_rules(score)
        if not applicable:
            return None
        return min(applicable, key=lambda r: (r.max_attempts, -r.priority))

    def adjusted_limit(self, nominal_max: int, score: float) -> int:
        """Lowest limit among applicable rules, never above ``nominal_max``."""
        strictest = self.strictest_rule(score)
        if strictest is None:
            return nominal_max
        return min(nominal_max, strictest.max_attempts)
