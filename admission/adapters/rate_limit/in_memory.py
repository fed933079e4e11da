"""In-memory windowed counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  This store is the degraded-mode fallback, not the steady-state path for
  multi-instance deployments.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from admission.adapters.rate_limit.base import AbstractCounterStore, CounterResult

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _WindowState:
    window_start: float
    window_ms: int
    count: int

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_ms


class LocalCounterStore(AbstractCounterStore):
    """Counter store keeping one window per key in process memory.

    A window opens on the first hit for a key and lasts ``window_ms``; the
    first hit after it elapses starts a fresh window with a count of 1.
    Expired windows are swept opportunistically so idle keys do not
    accumulate.
    """

    def __init__(
        self,
        *,
        sweep_interval_ms: int = 60_000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            sweep_interval_ms: Minimum time between two eviction sweeps.
            clock: Time source returning milliseconds.

        Raises:
            ValueError: If sweep_interval_ms is invalid.
        """
        if sweep_interval_ms < 1:
            raise ValueError("sweep_interval_ms must be >= 1")

        self._sweep_interval_ms = sweep_interval_ms
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def _maybe_sweep(self, now: float) -> None:
        # Caller holds the lock.
        if now - self._last_sweep < self._sweep_interval_ms:
            return
        self._last_sweep = now
        expired = [k for k, s in self._state_by_key.items() if s.expired(now)]
        for key in expired:
            del self._state_by_key[key]
        if expired:
            logger.debug("counter_store.swept", extra={"evicted": len(expired)})

    def sweep(self) -> int:
        """Evict every expired window now. Returns the number of evicted keys."""
        with self._lock:
            before = len(self._state_by_key)
            self._last_sweep = float("-inf")
            self._maybe_sweep(self._clock())
            return before - len(self._state_by_key)

    def hit(self, key: str, window_ms: int) -> CounterResult:
        """Synchronous core of :meth:`increment`.

        Raises:
            ValueError: If key is empty or window_ms is invalid.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)

            state = self._state_by_key.get(key)
            if state is None or state.expired(now):
                state = _WindowState(window_start=now, window_ms=window_ms, count=1)
                self._state_by_key[key] = state
            else:
                state.count += 1

            reset_ms = max(0, int(state.window_start + state.window_ms - now))
            return CounterResult(count=state.count, reset_ms=reset_ms)

    async def increment(self, key: str, window_ms: int) -> CounterResult:
        return self.hit(key, window_ms)

    async def decrement(self, key: str) -> None:
        with self._lock:
            state = self._state_by_key.get(key)
            if state is None or state.expired(self._clock()):
                return
            state.count = max(0, state.count - 1)

    async def reset_key(self, key: str) -> None:
        with self._lock:
            self._state_by_key.pop(key, None)
