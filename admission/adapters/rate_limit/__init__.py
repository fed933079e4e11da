"""Counter store adapters.

This package provides the storage abstraction behind the limiter: a shared
Redis store for multi-process deployments, a process-local store, and the
selector that falls back from the former to the latter.
"""

from admission.adapters.rate_limit.base import (
    AbstractCounterStore,
    CounterResult,
    StoreUnavailableError,
)
from admission.adapters.rate_limit.in_memory import LocalCounterStore
from admission.adapters.rate_limit.redis_store import SharedCounterStore
from admission.adapters.rate_limit.selector import FallbackCounterStore, StoreBackend

__all__ = [
    "AbstractCounterStore",
    "CounterResult",
    "FallbackCounterStore",
    "LocalCounterStore",
    "SharedCounterStore",
    "StoreBackend",
    "StoreUnavailableError",
]
