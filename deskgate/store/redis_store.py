"""Redis-backed counter store (redis.asyncio).

Every operation is bounded by ``timeout_ms`` (client-side ``asyncio.wait_for``
on top of the socket timeouts) and converts any driver error into
``InfrastructureFailure`` after recording it on ``self.health``.

The increment and its expiry are issued as one MULTI/EXEC transaction, so a
caller disconnecting mid-request cannot leave a counter without a TTL.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as redis

from deskgate.errors import InfrastructureFailure
from deskgate.store.protocol import DEFAULT_RECONNECT_INTERVAL_S, StoreHealth
from deskgate.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RedisCounterStore:
    """Fixed-window counter store on a shared Redis instance."""

    def __init__(
        self,
        url: str,
        timeout_ms: int,
        client: Optional[Any] = None,
        reconnect_interval_s: float = DEFAULT_RECONNECT_INTERVAL_S,
    ) -> None:
        self._timeout_s = timeout_ms / 1000.0
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=self._timeout_s,
            socket_connect_timeout=self._timeout_s,
        )
        self.health = StoreHealth(reconnect_interval_s=reconnect_interval_s)

    async def connect(self) -> None:
        """Ping the server once at startup.

        Failure is logged and recorded but never raised: the gateway starts
        without the store and admission fails open until it recovers.
        """
        try:
            await self._call("connect", self._client.ping())
        except InfrastructureFailure:
            logger.warning(
                "Counter store unreachable at startup, admitting without limits until it recovers"
            )

    async def get(self, key: str) -> int:
        value = await self._call("get", self._client.get(key))
        return int(value) if value is not None else 0

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        results = await self._call("incr", self._incr_with_expiry(key, ttl_seconds))
        return int(results[0])

    async def _incr_with_expiry(self, key: str, ttl_seconds: int) -> list[Any]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            return await pipe.execute()

    async def decr(self, key: str) -> int:
        value = await self._call("decr", self._client.decr(key))
        return int(value)

    def is_available(self) -> bool:
        return self.health.is_available()

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Counter store close error (non-fatal)", error_type=type(exc).__name__)
        finally:
            self.health.on_disconnect()

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except Exception as exc:  # noqa: BLE001
            self.health.on_error(exc)
            raise InfrastructureFailure(operation, exc) from exc
        self.health.on_connect()
        return result
