"""Counter store factory — backend selection and initialization.

  - ``store.url`` set (config or REDIS_URL) → RedisCounterStore, pinged once
  - otherwise                               → NullCounterStore

The null store reports itself unavailable and raises InfrastructureFailure
on every call, so every admission check fails open instead of crashing.
"""

from __future__ import annotations

from deskgate.config import Config
from deskgate.errors import InfrastructureFailure
from deskgate.store.protocol import CounterStore, StoreHealth, StoreState
from deskgate.utils.logger import get_logger

logger = get_logger(__name__)


class NullCounterStore:
    """Stand-in used when no shared store is configured."""

    def __init__(self) -> None:
        self.health = StoreHealth(initial=StoreState.DISABLED)

    async def get(self, key: str) -> int:
        raise InfrastructureFailure("get")

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        raise InfrastructureFailure("incr")

    async def decr(self, key: str) -> int:
        raise InfrastructureFailure("decr")

    def is_available(self) -> bool:
        return False

    async def close(self) -> None:
        return None


async def create_counter_store(config: Config) -> CounterStore:
    """Create and connect the counter store selected by ``config.store``."""
    if not config.store.url:
        logger.warning("REDIS_URL not configured, rate limiting disabled (fail open)")
        return NullCounterStore()

    from deskgate.store.redis_store import RedisCounterStore

    store = RedisCounterStore(url=config.store.url, timeout_ms=config.store.timeout_ms)
    await store.connect()
    logger.info(
        "counter_store_selected",
        backend="RedisCounterStore",
        available=store.is_available(),
    )
    return store
