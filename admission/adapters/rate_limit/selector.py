"""Store selection with per-operation fallback.

The selector owns both stores. At startup it probes the shared store once:
if that fails, the local store becomes primary for the process lifetime. At
runtime a failing shared-store operation is retried on the local store for
that single call only. Failures are not remembered, so the next call goes
to Redis again (fail-open, no demotion).
"""

from __future__ import annotations

import logging
from enum import Enum

from admission.adapters.rate_limit.base import (
    AbstractCounterStore,
    CounterResult,
    StoreUnavailableError,
)
from admission.adapters.rate_limit.in_memory import LocalCounterStore
from admission.core.logging import fingerprint_key

logger = logging.getLogger(__name__)


class StoreBackend(str, Enum):
    SHARED = "shared"
    LOCAL = "local"


class FallbackCounterStore(AbstractCounterStore):
    """Counter store that prefers the shared backend and fails open to local."""

    def __init__(
        self,
        local: LocalCounterStore,
        shared: AbstractCounterStore | None = None,
    ) -> None:
        self._local = local
        self._shared = shared
        self._primary = StoreBackend.SHARED if shared is not None else StoreBackend.LOCAL

    @property
    def primary(self) -> StoreBackend:
        return self._primary

    @property
    def local(self) -> LocalCounterStore:
        return self._local

    @property
    def shared(self) -> AbstractCounterStore | None:
        return self._shared

    async def connect(self) -> StoreBackend:
        """Probe the shared store and pick the primary backend.

        Never raises: an unreachable shared store only downgrades the process
        to local counting.
        """
        if self._shared is None:
            self._primary = StoreBackend.LOCAL
            logger.info("counter_store.selected", extra={"backend": self._primary.value})
            return self._primary

        try:
            reachable = await self._shared.ping()
        except StoreUnavailableError as exc:
            reachable = False
            logger.warning(
                "counter_store.shared_unreachable",
                extra={"error": str(exc), "backend": StoreBackend.LOCAL.value},
            )

        self._primary = StoreBackend.SHARED if reachable else StoreBackend.LOCAL
        logger.info("counter_store.selected", extra={"backend": self._primary.value})
        return self._primary

    def _log_fallback(self, operation: str, key: str, exc: StoreUnavailableError) -> None:
        logger.warning(
            "counter_store.fallback",
            extra={
                "operation": operation,
                "key_hash": fingerprint_key(key),
                "error": str(exc),
            },
        )

    async def increment(self, key: str, window_ms: int) -> CounterResult:
        if self._primary is StoreBackend.SHARED and self._shared is not None:
            try:
                return await self._shared.increment(key, window_ms)
            except StoreUnavailableError as exc:
                self._log_fallback("increment", key, exc)
        return await self._local.increment(key, window_ms)

    async def decrement(self, key: str) -> None:
        if self._primary is StoreBackend.SHARED and self._shared is not None:
            try:
                await self._shared.decrement(key)
                return
            except StoreUnavailableError as exc:
                self._log_fallback("decrement", key, exc)
        await self._local.decrement(key)

    async def reset_key(self, key: str) -> None:
        """Clear ``key`` everywhere it may have been counted.

        Fallback operations can leave hits in the local store even while the
        shared store is primary, so both are cleared.
        """
        await self._local.reset_key(key)
        if self._shared is None:
            return
        try:
            await self._shared.reset_key(key)
        except StoreUnavailableError as exc:
            logger.warning(
                "counter_store.reset_failed",
                extra={"key_hash": fingerprint_key(key), "error": str(exc)},
            )

    async def ping(self) -> bool:
        if self._shared is None:
            return False
        try:
            return await self._shared.ping()
        except StoreUnavailableError as exc:
            logger.warning("counter_store.health_probe_failed", extra={"error": str(exc)})
            return False

    async def close(self) -> None:
        if self._shared is None:
            return
        try:
            await self._shared.close()
        except Exception as exc:  # noqa: BLE001 - shutdown must not fail on a dead pool
            logger.warning("counter_store.close_failed", extra={"error": str(exc)})
