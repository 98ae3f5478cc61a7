"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING", "").lower() != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class AppSettings(BaseSettings):
    """Service-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether admin endpoints require an X-API-Key header",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid admin API keys",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LimiterSettings(BaseSettings):
    """Adaptive rate limiter defaults and policy toggles."""

    enabled: bool = Field(
        True,
        description="Enable the enforce_rate_limit dependency",
    )
    default_max_attempts: int = Field(
        60,
        description="Nominal attempts allowed per window when a caller does not specify one",
        ge=1,
    )
    default_window_seconds: int = Field(
        60,
        description="Nominal sliding window size in seconds",
        ge=1,
    )
    enable_adaptive: bool = Field(
        True,
        description="Use behavior scoring and rules; when false only the nominal window applies",
    )
    enable_ml: bool = Field(
        False,
        description=(
            "Enable the secondary statistical adjustment pass on behavior scores. "
            "This is a heuristic, not a trained model."
        ),
    )
    block_score_threshold: float = Field(
        0.8,
        description="Behavior score above which requests are rejected outright by the HTTP dependency",
        ge=0.0,
        le=1.0,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    rules_ttl_seconds: int = Field(
        3600,
        description="How long a cached rule set lives before it is rehydrated",
        ge=1,
    )
    profile_ttl_seconds: int = Field(
        86400,
        description="Behavior profile retention",
        ge=1,
    )
    anomaly_ttl_seconds: int = Field(
        604800,
        description="Retention of the anomaly score snapshot kept for historical analysis",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Shared cache/coordination backend configuration."""

    backend: str = Field(
        "memory",
        description="Cache backend: 'memory' (single process) or 'redis' (shared)",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL used when backend=redis",
    )
    socket_timeout: float = Field(
        2.5,
        description="Redis socket timeout in seconds",
    )
    socket_connect_timeout: float = Field(
        2.5,
        description="Redis connect timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )


class ClusterSettings(BaseSettings):
    """Cross-node coordination configuration."""

    enabled: bool = Field(
        False,
        description="Publish per-key counts and take part in primary election",
    )
    node_id: str | None = Field(
        None,
        description="Node identifier (defaults to the hostname)",
    )
    node_version: str = Field(
        "0.1.0",
        description="Version string advertised in the node registry",
    )
    node_max_age_seconds: int = Field(
        300,
        description="Nodes not seen for longer than this are removed by the primary",
        ge=1,
    )
    sync_interval_seconds: int = Field(
        30,
        description="Interval between coordinator heartbeats",
        ge=1,
    )
    key_prefix: str = Field(
        "rate_limit_distributor:",
        description="Namespace prefix for coordinator keys",
    )

    model_config = SettingsConfigDict(
        env_prefix="CLUSTER_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="'json' or 'plain'")
    output: str = Field("stdout", description="'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
    )
    backup_count: int = Field(5, description="Rotated files to keep")
    audit_level: str = Field("INFO", description="Level of the adaptive_limiter.audit logger")
    audit_file_path: str | None = Field(
        None,
        description="Write audit events to this file instead of the main log output",
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    limiter: LimiterSettings = Field(default_factory=LimiterSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
