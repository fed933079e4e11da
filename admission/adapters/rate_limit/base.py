"""Counter store interfaces.

The limiter depends on this abstraction (not a concrete backend) so the
shared Redis store and the process-local store are substitutable, and tests
can inject either one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from admission.core.errors import StoreUnavailableError

__all__ = ["AbstractCounterStore", "CounterResult", "StoreUnavailableError"]


@dataclass(frozen=True)
class CounterResult:
    """Outcome of a single atomic increment.

    Attributes:
        count: Number of hits recorded for the key in the current window,
            this one included.
        reset_ms: Milliseconds until the current window ends and the counter
            starts over.
    """

    count: int
    reset_ms: int


class AbstractCounterStore(ABC):
    """Interface for windowed hit counters."""

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> CounterResult:
        """Atomically add one hit to ``key`` within its current window.

        Args:
            key: Fully namespaced counter key (tier and client identity).
            window_ms: Window length in milliseconds.

        Returns:
            CounterResult with the new count and time to reset.
        """
        raise NotImplementedError

    @abstractmethod
    async def decrement(self, key: str) -> None:
        """Take one hit back from ``key``; never below zero, no-op if absent.

        Called by limiters built with ``refund_when`` once the response shows
        the request should not have counted.
        """
        raise NotImplementedError

    @abstractmethod
    async def reset_key(self, key: str) -> None:
        """Delete the counter for ``key``; no-op if absent."""
        raise NotImplementedError

    async def ping(self) -> bool:
        """Report whether a shared backing service is reachable.

        Process-local stores have no backend to reach, so the default is
        ``False``; only a shared store can report itself up.
        """
        return False

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
