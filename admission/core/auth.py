"""Admin API key authentication.

Guards the operational endpoints (counter resets). Caller identity for rate
limiting is NOT established here; that comes from the upstream
authentication layer via ``request.state.user``.

Keys are validated against a comma-separated list from the environment
(``APP_API_KEYS``). Enforcement can be disabled with
``APP_API_KEY_REQUIRED=false`` for local development.
"""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Header, HTTPException, status

from admission.core.config import settings
from admission.core.errors import AuthenticationAppError
from admission.core.logging import fingerprint_key

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Args:
        keys_string: Comma-separated string of API keys, or None.

    Returns:
        Set of trimmed, non-empty API keys.

    Examples:
        >>> sorted(parse_api_keys("key1, key2 ,key1"))
        ['key1', 'key2']
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()
    return {key.strip() for key in keys_string.split(",") if key.strip()}


def validate_api_key(provided_key: str) -> None:
    """Validate that the provided key is one of the configured admin keys.

    Every configured key is compared in constant time, so response timing
    does not reveal how much of a guess matched.

    Args:
        provided_key: Key taken from the ``X-API-Key`` header.

    Raises:
        AuthenticationAppError: If the key is invalid, or authentication is
            required but no keys are configured.
    """
    if not settings.app.api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "admin_auth.failed",
            extra={"reason": "api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="Admin authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    matched = False
    for key in valid_keys:
        if hmac.compare_digest(provided_key.encode(), key.encode()):
            matched = True

    if not matched:
        logger.warning(
            "admin_auth.failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": fingerprint_key(provided_key),
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


async def verify_admin_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency protecting admin routes.

    Usage:
        @router.delete("/admin/...", dependencies=[Depends(verify_admin_key)])

    Args:
        x_api_key: Admin key from the X-API-Key header (injected by FastAPI).

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.api_key_required:
        return

    if not x_api_key:
        logger.warning("admin_auth.missing_key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        validate_api_key(x_api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc
