"""Redis-backed counter store shared by every server process.

Key schema
──────────
  {prefix}tier:{tier}|user:{id}     STRING  integer hit count  PTTL = window
  {prefix}tier:{tier}|ip:{address}  STRING  integer hit count  PTTL = window

A counter is created by the first INCR of a window and expires with the
window, so no explicit reset bookkeeping is needed. INCR and PTTL run in
one MULTI/EXEC pipeline; the expiry is set right after when the counter is
new (count == 1) or was found without one. A counter can therefore exist
briefly without a TTL, and the next increment from any process repairs it.

Every operation is bounded by ``operation_timeout`` on top of the socket
timeouts. Any Redis/socket error or timeout surfaces as
StoreUnavailableError so the selector can fall back to the local store.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from admission.adapters.rate_limit.base import (
    AbstractCounterStore,
    CounterResult,
    StoreUnavailableError,
)

T = TypeVar("T")

# GET and DECR run as one server-side step. Missing and zero counters are
# left untouched, so a decrement never creates a key or drops its TTL.
_DECREMENT_LUA = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
if current <= 0 then
    return 0
end
return redis.call("DECR", KEYS[1])
"""


class SharedCounterStore(AbstractCounterStore):
    """Fixed-window counters stored in Redis."""

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "rl:",
        operation_timeout: float = 1.0,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._operation_timeout = operation_timeout
        self._decrement_script = client.register_script(_DECREMENT_LUA)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        prefix: str = "rl:",
        socket_timeout: float = 0.5,
        operation_timeout: float = 1.0,
        max_connections: int = 20,
    ) -> "SharedCounterStore":
        """Build a store with its own connection pool.

        The pool connects lazily; reachability is checked separately with
        :meth:`ping` so an unreachable server never blocks construction.
        """
        pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(
            Redis(connection_pool=pool),
            prefix=prefix,
            operation_timeout=operation_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._operation_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(operation, exc) from exc

    async def increment(self, key: str, window_ms: int) -> CounterResult:
        redis_key = self._key(key)

        async def _increment() -> CounterResult:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.pttl(redis_key)
                count, ttl = await pipe.execute()
            count = int(count)
            ttl = int(ttl)
            if count == 1 or ttl < 0:
                await self._client.pexpire(redis_key, window_ms)
                ttl = window_ms
            return CounterResult(count=count, reset_ms=ttl)

        return await self._run("increment", _increment)

    async def decrement(self, key: str) -> None:
        redis_key = self._key(key)
        await self._run(
            "decrement",
            lambda: self._decrement_script(keys=[redis_key]),
        )

    async def reset_key(self, key: str) -> None:
        await self._run("reset_key", lambda: self._client.delete(self._key(key)))

    async def ping(self) -> bool:
        result: Any = await self._run("ping", self._client.ping)
        return bool(result)

    async def close(self) -> None:
        await self._client.aclose()
