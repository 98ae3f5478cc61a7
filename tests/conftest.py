"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets TESTING so no .env file is loaded, and provides a deterministic
clock, an in-memory cache and audit sinks for the engine tests.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents the .env file from being loaded in tests
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("CLUSTER_ENABLED", "false")

import pytest

from adaptive_limiter.adapters.audit import AuditSink
from adaptive_limiter.adapters.cache import InMemoryCacheBackend
from adaptive_limiter.core.rate_limit import reset_rate_limit_state


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink(AuditSink):
    """Keeps every emitted event for assertions."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    def emit(self, category, action, severity, context) -> None:
        self.events.append(
            {"category": category, "action": action, "severity": severity, "context": dict(context)}
        )

    def actions(self) -> list[str]:
        return [event["action"] for event in self.events]

    def find(self, action: str) -> list[dict]:
        return [event for event in self.events if event["action"] == action]


class ExplodingAuditSink(AuditSink):
    """Fails on every emit."""

    def __init__(self) -> None:
        self.calls = 0

    def emit(self, category, action, severity, context) -> None:
        self.calls += 1
        raise RuntimeError("audit backend down")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=clock)


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def exploding_audit() -> ExplodingAuditSink:
    return ExplodingAuditSink()


@pytest.fixture(autouse=True)
def _fresh_rate_limit_state():
    """Each test starts with new process-wide limiter collaborators."""
    reset_rate_limit_state()
    yield
    reset_rate_limit_state()
