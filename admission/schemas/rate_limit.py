"""Pydantic schemas for admission-control responses."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class RateLimitErrorResponse(BaseModel):
    """Body of a 429 rejection."""

    model_config = ConfigDict(populate_by_name=True)

    error: str = Field(..., description="Short error title.")
    code: str = Field(
        ...,
        description="Machine-readable code: RATE_LIMIT_EXCEEDED or AUTH_RATE_LIMIT_EXCEEDED.",
    )
    message: str = Field(..., description="Human-readable explanation for the caller.")
    retry_after: int | None = Field(
        default=None,
        alias="retryAfter",
        description="Seconds until the current window resets (mirrors Retry-After).",
    )


class RateLimitHealth(BaseModel):
    status: str = Field("ok", description="Always 'ok' while the limiter is serving.")
    backend: bool = Field(..., description="Whether the shared counter store answered a ping.")


class HealthResponse(BaseModel):
    """Liveness probe payload."""

    status: str = Field("ok", description="Service status.")
    rate_limit: RateLimitHealth


class ResetRateLimitResponse(BaseModel):
    """Result of an administrative counter reset."""

    rate_key: str = Field(..., description="Client key that was reset (user:<id> or ip:<address>).")
    tiers: List[str] = Field(
        default_factory=list,
        description="Tiers whose counters were cleared for this client.",
    )
