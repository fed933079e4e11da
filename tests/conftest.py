"""Pytest configuration and fixtures shared across all test modules.

This file is loaded by pytest before any test module, so the environment set
here is in place before ``admission.core.config`` builds its settings.
"""

import os

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-admin-key-123,test-admin-key-456")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from admission.adapters.rate_limit.in_memory import LocalCounterStore  # noqa: E402
from admission.adapters.rate_limit.redis_store import SharedCounterStore  # noqa: E402
from admission.core import rate_limit as rate_limit_module  # noqa: E402


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store(clock: FakeClock) -> LocalCounterStore:
    return LocalCounterStore(clock=clock)


@pytest.fixture
def broken_redis() -> MagicMock:
    """A redis client whose every command fails as if the server were down."""
    client = MagicMock()
    error = RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
    client.pipeline.side_effect = error
    client.ping = AsyncMock(side_effect=error)
    client.delete = AsyncMock(side_effect=error)
    client.register_script.return_value = AsyncMock(side_effect=error)
    client.pexpire = AsyncMock(side_effect=error)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def broken_shared_store(broken_redis: MagicMock) -> SharedCounterStore:
    return SharedCounterStore(broken_redis, operation_timeout=0.5)


@pytest.fixture(autouse=True)
def reset_process_store():
    """Give every test a fresh process-wide counter store."""
    rate_limit_module.set_counter_store(None)
    yield
    rate_limit_module.set_counter_store(None)
