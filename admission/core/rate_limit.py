"""Process-wide counter store and its operational helpers.

This module wires the counter store adapters to the rest of the
application:

- ``get_counter_store()`` returns the process-wide selector, building it
  lazily from settings (Redis when ``REDIS_URL`` is set, local otherwise).
- ``init_counter_store()`` / ``close_counter_store()`` run in the app
  lifespan: the shared store is probed once at startup and its pool closed
  at shutdown.
- ``check_health()`` and ``reset_key()`` back the health and admin routes.
  Neither raises because of store trouble.
"""

from __future__ import annotations

import logging
from typing import Iterable

from admission.adapters.rate_limit.base import AbstractCounterStore, StoreUnavailableError
from admission.adapters.rate_limit.in_memory import LocalCounterStore
from admission.adapters.rate_limit.redis_store import SharedCounterStore
from admission.adapters.rate_limit.selector import FallbackCounterStore
from admission.core.config import RateLimitSettings, RedisSettings, settings
from admission.core.logging import fingerprint_key
from admission.core.tiers import TierPolicy

logger = logging.getLogger(__name__)


_store: AbstractCounterStore | None = None


def build_counter_store(
    redis_settings: RedisSettings | None = None,
    rate_limit_settings: RateLimitSettings | None = None,
) -> FallbackCounterStore:
    """Build a selector from configuration without touching the network."""

    redis_cfg = redis_settings or settings.redis
    limit_cfg = rate_limit_settings or settings.rate_limit

    local = LocalCounterStore(sweep_interval_ms=limit_cfg.sweep_interval_seconds * 1000)
    shared = None
    if redis_cfg.url:
        shared = SharedCounterStore.from_url(
            redis_cfg.url,
            prefix=limit_cfg.key_prefix,
            socket_timeout=redis_cfg.socket_timeout_seconds,
            operation_timeout=redis_cfg.operation_timeout_seconds,
            max_connections=redis_cfg.max_connections,
        )
    return FallbackCounterStore(local=local, shared=shared)


def get_counter_store() -> AbstractCounterStore:
    """Return the process-wide counter store, creating it on first use."""

    global _store
    if _store is None:
        _store = build_counter_store()
    return _store


def set_counter_store(store: AbstractCounterStore | None) -> None:
    """Replace the process-wide store (None forces a rebuild on next use)."""

    global _store
    _store = store


async def init_counter_store() -> AbstractCounterStore:
    """Select the primary backend; never fails startup on an unreachable Redis."""

    store = get_counter_store()
    if isinstance(store, FallbackCounterStore):
        await store.connect()
    return store


async def close_counter_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None


async def check_health(store: AbstractCounterStore | None = None) -> dict:
    """Report shared-store reachability.

    ``status`` is always ``"ok"``: the limiter keeps serving on the local
    store when the backend is down, so only ``backend`` reflects the outage.

    Returns:
        dict: ``{"status": "ok", "backend": bool}``
    """

    target = store if store is not None else get_counter_store()
    try:
        backend = await target.ping()
    except Exception as exc:  # noqa: BLE001 - health probes must never raise
        logger.warning("counter_store.health_probe_failed", extra={"error": str(exc)})
        backend = False
    return {"status": "ok", "backend": bool(backend)}


async def reset_key(key: str, store: AbstractCounterStore | None = None) -> None:
    """Delete one counter immediately. Missing keys and outages are no-ops."""

    target = store if store is not None else get_counter_store()
    try:
        await target.reset_key(key)
    except StoreUnavailableError as exc:
        logger.warning(
            "counter_store.reset_failed",
            extra={"key_hash": fingerprint_key(key), "error": str(exc)},
        )


async def reset_client(
    rate_key: str,
    tiers: Iterable[TierPolicy],
    store: AbstractCounterStore | None = None,
) -> list[str]:
    """Clear every tier counter held for one client key.

    Args:
        rate_key: Client key as derived per request (``user:<id>`` or ``ip:<address>``).
        tiers: Tiers whose counters should be cleared.
        store: Optional store override.

    Returns:
        Names of the tiers that were reset.
    """

    names: list[str] = []
    for tier in tiers:
        await reset_key(tier.namespaced(rate_key), store=store)
        names.append(tier.name)
    logger.info(
        "rate_limit.reset",
        extra={"key_hash": fingerprint_key(rate_key), "tiers": names},
    )
    return names
