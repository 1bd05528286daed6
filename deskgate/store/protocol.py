"""CounterStore Protocol + connection health state.

The admission controller talks to the shared store only through this
interface. Every method either succeeds or raises
``deskgate.errors.InfrastructureFailure`` — implementations never let a
driver exception escape, and never hang past their configured timeout.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from deskgate.utils.logger import get_logger

logger = get_logger(__name__)

#: Seconds after an error before the store is offered another attempt.
DEFAULT_RECONNECT_INTERVAL_S: float = 1.0


class StoreState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    DISABLED = "disabled"


class StoreHealth:
    """Connectivity state owned by a store client.

    Transitions happen only through the ``on_*`` callbacks, which the owning
    client calls on connect, close, and operation failure. Readers (the
    admission controller, /health) use ``is_available()`` and ``state``.

    After an error the store is reported unavailable for
    ``reconnect_interval_s``; once that elapses ``is_available()`` returns True
    again so the next request probes the store and either recovers it
    (``on_connect``) or re-arms the interval (``on_error``).
    """

    def __init__(
        self,
        reconnect_interval_s: float = DEFAULT_RECONNECT_INTERVAL_S,
        initial: StoreState = StoreState.DISCONNECTED,
    ) -> None:
        self.reconnect_interval_s = reconnect_interval_s
        self._state = initial
        self._last_error_at: float = 0.0
        self._last_error: Optional[str] = None

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def on_connect(self) -> None:
        if self._state != StoreState.CONNECTED:
            logger.info("Counter store connection established")
        self._state = StoreState.CONNECTED
        self._last_error = None

    def on_disconnect(self) -> None:
        if self._state == StoreState.DISABLED:
            return
        logger.info("Counter store connection closed")
        self._state = StoreState.DISCONNECTED

    def on_error(self, exc: BaseException) -> None:
        if self._state == StoreState.DISABLED:
            return
        if self._state != StoreState.ERROR:
            logger.error("Counter store error", error_type=type(exc).__name__)
        self._state = StoreState.ERROR
        self._last_error = type(exc).__name__
        self._last_error_at = time.monotonic()

    def is_available(self) -> bool:
        if self._state == StoreState.CONNECTED:
            return True
        if self._state == StoreState.ERROR:
            return (time.monotonic() - self._last_error_at) >= self.reconnect_interval_s
        return False


@runtime_checkable
class CounterStore(Protocol):
    """Shared key/value store holding fixed-window counters.

    Implementations: RedisCounterStore (production), NullCounterStore (no URL
    configured). Selection via create_counter_store() (store/factory.py).
    """

    health: StoreHealth

    async def get(self, key: str) -> int:
        """Return the counter value for ``key``; a missing key reads as 0."""
        ...

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment ``key`` and set its TTL in one transaction.

        Returns the post-increment value. The increment and the expiry are
        applied together or not at all, so a counter never exists without a TTL.
        """
        ...

    async def decr(self, key: str) -> int:
        """Decrement ``key`` and return the new value."""
        ...

    def is_available(self) -> bool:
        """True when the controller should attempt store calls at all."""
        ...

    async def close(self) -> None:
        """Release connections. Must never raise."""
        ...
