"""Admission controller: fixed-window rate limiting over the shared store.

``admit()`` ALWAYS returns a Decision. It never raises for store problems:
any store error (InfrastructureFailure, a timeout, no store configured) yields an
admitting Decision with ``fail_open=True`` and a warning log. An outage of
the shared store degrades to "no limiting", never to "deny all".

Algorithm per request:
  1. key = policy.key_generator(request)
  2. window_index = now_ms // window_ms; counter_id = "<prefix>:<key>:<window_index>"
  3. count = store.get(counter_id)              (missing reads as 0)
  4. count >= max_requests → reject, counter untouched,
     retry_after = window_ms - now_ms % window_ms
  5. otherwise store.incr_with_expiry(counter_id, ceil(window_ms / 1000))
  6. admit with remaining = max_requests - count - 1

Steps 3 and 5 are not one atomic unit. Requests racing on the same key at
the same moment can all read the same count and all be admitted, so a bucket
may exceed max_requests by at most the number of requests in flight. This is
accepted in exchange for never holding a cross-request lock. Windows are
fixed, not sliding, so a caller can also burst up to 2 × max_requests across
a window boundary.
"""

from __future__ import annotations

import time
from typing import Callable

from deskgate.constants import RATE_LIMIT_KEY_PREFIX
from deskgate.errors import InfrastructureFailure
from deskgate.models.admission import Decision, RequestDescriptor
from deskgate.ratelimit.policy import RateLimitPolicy
from deskgate.store.protocol import CounterStore
from deskgate.utils.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _error_type(exc: BaseException) -> str:
    # InfrastructureFailure wraps the driver error; report the underlying type.
    if isinstance(exc, InfrastructureFailure) and exc.cause is not None:
        return type(exc.cause).__name__
    return type(exc).__name__


class AdmissionController:
    """Per-key fixed-window admission over a CounterStore."""

    def __init__(
        self,
        store: CounterStore,
        key_prefix: str = RATE_LIMIT_KEY_PREFIX,
        clock: Clock = _now_ms,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix
        self._clock = clock

    def counter_id(self, key: str, window_index: int) -> str:
        return f"{self._key_prefix}:{key}:{window_index}"

    async def admit(self, request: RequestDescriptor, policy: RateLimitPolicy) -> Decision:
        now_ms = self._clock()
        window_index = now_ms // policy.window_ms
        retry_after_ms = policy.window_ms - (now_ms % policy.window_ms)

        try:
            key = policy.key_generator(request)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Rate limit key generation failed, admitting",
                policy=policy.name,
                error_type=type(exc).__name__,
            )
            return self._fail_open(policy, now_ms)

        counter_id = self.counter_id(key, window_index)

        # Health is read, never written, here: the store client owns it.
        if not self._store.is_available():
            logger.warning(
                "Counter store unavailable, admitting",
                policy=policy.name,
                operation="get",
            )
            return self._fail_open(policy, now_ms)

        try:
            count = await self._store.get(counter_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Rate limiter store read failed, admitting",
                policy=policy.name,
                operation="get",
                error_type=_error_type(exc),
            )
            return self._fail_open(policy, now_ms)

        if count >= policy.max_requests:
            logger.warning(
                "Rate limit exceeded",
                policy=policy.name,
                ip=request.client_ip,
                caller=request.caller_id,
                count=count,
                limit=policy.max_requests,
                retry_after_ms=retry_after_ms,
            )
            return Decision(
                admit=False,
                limit=policy.max_requests,
                remaining=0,
                window_ms=policy.window_ms,
                retry_after_ms=retry_after_ms,
                reset_at_ms=now_ms + retry_after_ms,
            )

        try:
            await self._store.incr_with_expiry(counter_id, policy.ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Rate limiter store increment failed, admitting",
                policy=policy.name,
                operation="incr",
                error_type=_error_type(exc),
            )
            return self._fail_open(policy, now_ms)

        return Decision(
            admit=True,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count - 1),
            window_ms=policy.window_ms,
            reset_at_ms=now_ms + policy.window_ms,
            counter_id=counter_id,
        )

    @staticmethod
    def should_release(policy: RateLimitPolicy, status_code: int) -> bool:
        """True when a finished request must not keep its slot."""
        if policy.skip_on_success and status_code < 400:
            return True
        return policy.skip_on_failure and status_code >= 400

    async def release(self, decision: Decision, policy: RateLimitPolicy, status_code: int) -> bool:
        """Post-response hook: decrement the counter if the policy skips this outcome.

        Returns True when a decrement was issued and succeeded.
        """
        if decision.counter_id is None or not self.should_release(policy, status_code):
            return False
        return await self.maybe_decrement(decision.counter_id)

    async def maybe_decrement(self, counter_id: str) -> bool:
        """Best-effort decrement. Failures are logged, never retried, never raised."""
        try:
            await self._store.decr(counter_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to decrement rate limit counter",
                counter_id=counter_id,
                error_type=_error_type(exc),
            )
            return False
        return True

    @staticmethod
    def _fail_open(policy: RateLimitPolicy, now_ms: int) -> Decision:
        return Decision(
            admit=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            window_ms=policy.window_ms,
            reset_at_ms=now_ms + policy.window_ms,
            fail_open=True,
        )
