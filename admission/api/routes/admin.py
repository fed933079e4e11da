from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from admission.core.auth import verify_admin_key
from admission.core.errors import InvalidRateKeyError, UnknownTierError
from admission.core.rate_limit import reset_client
from admission.core.tiers import TierPolicy
from admission.schemas.rate_limit import ResetRateLimitResponse

router = APIRouter(prefix="/admin", tags=["Admin"])


def _configured_tiers(request: Request) -> dict[str, TierPolicy]:
    return getattr(request.app.state, "tiers", {})


@router.delete(
    "/rate-limits/{rate_key:path}",
    response_model=ResetRateLimitResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def reset_rate_limit(
    rate_key: str,
    tiers: dict[str, TierPolicy] = Depends(_configured_tiers),
    tier: str | None = Query(
        None,
        description="Only reset this tier (general, auth, read, write). Defaults to all tiers.",
    ),
) -> ResetRateLimitResponse:
    """Unblock a client by clearing its counters.

    ``rate_key`` is the client key as the limiter derives it, e.g.
    ``user:42`` or ``ip:203.0.113.7``. Resetting a key that has no counter,
    or resetting while the shared store is down, still succeeds.

    Raises:
        InvalidRateKeyError: 400 if the key has no ``user:``/``ip:`` scheme.
        UnknownTierError: 400 if the tier is not configured.
    """
    scheme, _, value = rate_key.partition(":")
    if scheme not in ("user", "ip") or not value:
        raise InvalidRateKeyError.for_key(rate_key)

    if tier is None:
        selected = list(tiers.values())
    elif tier in tiers:
        selected = [tiers[tier]]
    else:
        raise UnknownTierError.for_tier(tier, tiers)

    reset = await reset_client(rate_key, selected)
    return ResetRateLimitResponse(rate_key=rate_key, tiers=reset)
