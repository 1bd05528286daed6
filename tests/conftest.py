"""Root test configuration for DeskGate.

Provides:
  - FakeCounterStore: in-memory CounterStore with failure injection and an
    optional suspension point inside get(), used to reproduce read/increment
    interleavings deterministically.
  - FakeClock: controllable epoch-millisecond clock for the admission controller.

Neither needs a running Redis server.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import pytest

from deskgate.errors import InfrastructureFailure
from deskgate.store.protocol import StoreHealth, StoreState

# 2024-01-01T00:00:00Z, aligned to both the 1-minute and 15-minute windows.
EPOCH_MS = 1_704_067_200_000


class FakeCounterStore:
    """In-memory CounterStore.

    Attributes:
        counts:      counter_id -> value
        ttls:        counter_id -> last TTL set by incr_with_expiry()
        calls:       ordered (operation, key) log
        fail:        raise InfrastructureFailure from every data operation
        yield_on_get: await asyncio.sleep(0) inside get(), so concurrent
                      admissions all read before any of them increments
    """

    def __init__(self, fail: bool = False, yield_on_get: bool = False) -> None:
        self.health = StoreHealth(initial=StoreState.CONNECTED)
        self.counts: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail = fail
        self.yield_on_get = yield_on_get
        self.closed = False

    def _maybe_fail(self, operation: str) -> None:
        if self.fail:
            raise InfrastructureFailure(operation, ConnectionError("store down"))

    async def get(self, key: str) -> int:
        self.calls.append(("get", key))
        self._maybe_fail("get")
        value = self.counts.get(key, 0)
        if self.yield_on_get:
            await asyncio.sleep(0)
        return value

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        self.calls.append(("incr", key))
        self._maybe_fail("incr")
        self.counts[key] = self.counts.get(key, 0) + 1
        self.ttls[key] = ttl_seconds
        return self.counts[key]

    async def decr(self, key: str) -> int:
        self.calls.append(("decr", key))
        self._maybe_fail("decr")
        self.counts[key] = self.counts.get(key, 0) - 1
        return self.counts[key]

    def is_available(self) -> bool:
        return self.health.is_available()

    async def close(self) -> None:
        self.closed = True
        self.health.on_disconnect()

    def total(self) -> int:
        return sum(self.counts.values())


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = EPOCH_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def store() -> FakeCounterStore:
    return FakeCounterStore()


@pytest.fixture
def failing_store() -> FakeCounterStore:
    return FakeCounterStore(fail=True)


@pytest.fixture
def make_store() -> Callable[..., FakeCounterStore]:
    """Factory for stores with non-default behaviour."""
    return FakeCounterStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_clock() -> Callable[[Optional[int]], FakeClock]:
    def _make(now_ms: Optional[int] = None) -> FakeClock:
        return FakeClock(EPOCH_MS if now_ms is None else now_ms)

    return _make
