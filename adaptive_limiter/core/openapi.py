"""OpenAPI metadata and customization utilities.

Provides a helper to enrich the generated OpenAPI schema with:
- API metadata (description, version, contact, license)
- Tags metadata
- API Key security scheme (``X-API-Key``) with per-path overrides
- 429 responses with rate limit headers on throttled operations

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

THROTTLED_TAGS = {"Rules", "Cluster"}

THROTTLED_RESPONSE: Dict[str, Any] = {
    "description": "Rate limit exceeded or caller behavior flagged as suspicious.",
    "headers": {
        "Retry-After": {"schema": {"type": "integer"}, "description": "Seconds to wait."},
        "X-RateLimit-Limit": {"schema": {"type": "integer"}},
        "X-RateLimit-Remaining": {"schema": {"type": "integer"}},
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security.

    - Injects components.securitySchemes for API Key auth (header ``X-API-Key``)
    - Marks all operations as requiring API Key by default, then exempts the
      liveness and readiness endpoints by setting ``security: []``
    - Adds tags metadata if not present
    - Documents the 429 response on operations throttled by ``enforce_rate_limit``
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        # Components / security scheme
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Provide your API key via the X-API-Key header.",
            },
        )

        # Global security requirement (applies to all operations)
        schema.setdefault("security", [{"ApiKeyAuth": []}])

        # Tags metadata
        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Limits",
                "description": "Admission checks and per-key limiter state.",
            },
            {
                "name": "Rules",
                "description": "Per-key rule sets that tighten limits as behavior scores rise.",
            },
            {
                "name": "Cluster",
                "description": "Node registry, primary election and published global counts.",
            },
            {
                "name": "Health",
                "description": "Liveness and readiness checks.",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        paths = schema.get("paths", {})
        for path, methods in paths.items():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                # Health endpoints are public
                if path.startswith("/health"):
                    method_obj["security"] = []
                if THROTTLED_TAGS & set(method_obj.get("tags", [])):
                    method_obj.setdefault("responses", {}).setdefault("429", THROTTLED_RESPONSE)

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
