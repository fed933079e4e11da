"""Application factory for the FastAPI app.

Centralizes app construction (tiers, counter store lifecycle, middleware,
handlers, routers) so tests can build isolated instances.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from admission.adapters.rate_limit.base import AbstractCounterStore
from admission.api.routes import admin_router, health_router
from admission.core.config import settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.limiter import install_rate_limiters
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware
from admission.core.openapi import apply_openapi_customizations
from admission.core.rate_limit import close_counter_store, init_counter_store, set_counter_store
from admission.core.tiers import TierPolicy, build_default_tiers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    store = await init_counter_store()
    logger.info(
        "admission.started",
        extra={
            "tiers": sorted(app.state.tiers),
            "rate_limit_enabled": settings.rate_limit.enabled,
            "store": type(store).__name__,
        },
    )
    try:
        yield
    finally:
        await close_counter_store()


def create_app(
    *,
    tiers: dict[str, TierPolicy] | None = None,
    store: AbstractCounterStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        tiers: Tier policies to enforce; built from settings when omitted.
            Building them validates every policy, so a bad configuration
            raises here and the process never starts serving.
        store: Counter store to install as the process-wide store.

    Returns:
        Configured FastAPI app.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    policies = tiers or build_default_tiers(settings.rate_limit)
    if store is not None:
        set_counter_store(store)

    app = FastAPI(
        title="API Admission Control",
        description=(
            "Tiered, per-client rate limiting for a multi-tenant API. Counters "
            "live in Redis when configured and fall back to process memory when "
            "it is unreachable."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.tiers = policies

    # Rate limiters first: the last registered middleware runs outermost,
    # and request ids must wrap the 429 short-circuit too.
    install_rate_limiters(app, policies)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(admin_router)

    apply_openapi_customizations(app)

    return app
