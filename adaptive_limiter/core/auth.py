"""API key authentication for the admin and decision endpoints.

Keys are validated against a comma-separated list from ``APP_API_KEYS``.
Failures are raised as ``AuthenticationAppError`` so they render through the
global handler with the same error envelope as every other domain error.
"""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Header

from adaptive_limiter.core.config import settings
from adaptive_limiter.core.errors import AuthenticationAppError
from adaptive_limiter.core.logging import hash_identifier

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def _matches_any(provided_key: str, valid_keys: set[str]) -> bool:
    return any(secrets.compare_digest(provided_key, key) for key in valid_keys)


def validate_api_key(provided_key: str | None) -> None:
    """Validate that ``provided_key`` matches one of the configured keys.

    Raises:
        AuthenticationAppError: If authentication is required and the key is
            missing, invalid, or no keys are configured at all.
    """
    if not settings.app.api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "auth.keys_not_configured",
            extra={"auth_required": True},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    if not provided_key:
        logger.warning("auth.missing_key", extra={"api_key_present": False})
        raise AuthenticationAppError(
            code="missing_api_key",
            message="Missing API key. Provide X-API-Key header.",
        )

    if not _matches_any(provided_key, valid_keys):
        logger.warning(
            "auth.invalid_key",
            extra={"api_key_hash": hash_identifier(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency for API key authentication.

    Usage:
        @router.get("/admin", dependencies=[Depends(verify_api_key)])

    Raises:
        AuthenticationAppError: Rendered as HTTP 403.
    """
    if not settings.app.api_key_required:
        logger.debug("auth.skipped", extra={"reason": "auth_required_false"})
        return

    validate_api_key(x_api_key)
    logger.debug("auth.success", extra={"api_key_hash": hash_identifier(x_api_key or "")})
