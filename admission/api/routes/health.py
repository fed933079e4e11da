from __future__ import annotations

from fastapi import APIRouter

from admission.core.rate_limit import check_health
from admission.schemas.rate_limit import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe.

    Always answers 200 while the process serves requests. The ``rate_limit``
    block reports whether the shared counter store is reachable; when it is
    not, the limiter is running on the local fallback store.

    Returns:
        HealthResponse: ``{"status": "ok", "rate_limit": {"status": "ok", "backend": bool}}``
    """

    return HealthResponse(status="ok", rate_limit=await check_health())
