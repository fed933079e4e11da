"""OpenAPI customization.

Adds the admin API key security scheme, tag descriptions, and documents the
429 answer every rate-limited operation can return.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from admission.schemas.rate_limit import RateLimitErrorResponse

_TOO_MANY_REQUESTS = {
    "description": "Rate limit exceeded for the caller's tier.",
    "headers": {
        "Retry-After": {
            "description": "Seconds until the current window resets.",
            "schema": {"type": "integer"},
        }
    },
    "content": {
        "application/json": {
            "schema": {"$ref": "#/components/schemas/RateLimitErrorResponse"}
        }
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation.

    - Registers the ``X-API-Key`` scheme and requires it on admin paths only
    - Documents the 429 response on every operation
    - Adds tags metadata if not present
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "AdminApiKey",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Admin key for operational endpoints.",
            },
        )
        component_schemas = components.setdefault("schemas", {})
        component_schemas.setdefault(
            "RateLimitErrorResponse",
            RateLimitErrorResponse.model_json_schema(by_alias=True),
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {"name": "Health", "description": "Liveness and counter-store health."},
            {"name": "Admin", "description": "Operational remediation of rate-limit counters."},
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                method_obj.setdefault("responses", {}).setdefault("429", _TOO_MANY_REQUESTS)
                if path.startswith("/admin"):
                    method_obj["security"] = [{"AdminApiKey": []}]

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
