"""Shared counter store package.

    protocol.py    — CounterStore Protocol, StoreState, StoreHealth
    redis_store.py — RedisCounterStore (redis.asyncio)
    factory.py     — create_counter_store() + NullCounterStore
"""

from deskgate.store.protocol import CounterStore, StoreHealth, StoreState

__all__ = ["CounterStore", "StoreHealth", "StoreState"]
