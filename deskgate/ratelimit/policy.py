"""Rate-limit policies and the reference route-class table.

A policy is immutable and created once at startup. Its key generator turns a
RequestDescriptor into the logical bucket name; it must be deterministic and
must include the caller's IP or user id so unrelated callers never share a
bucket. Every generator namespaces its key with the route class, and keys
built from a user id are kept apart from keys built from an IP.

Reference configuration (replaceable through ``rate_limits:`` in config.yaml):

    route class  window   max  key basis
    auth         15 min     5  IP + submitted email, successes not counted
    general      15 min   100  IP
    strict        1 min    10  IP
    upload        1 min     5  IP + caller identity
    api           1 min    60  caller identity or IP
    search        1 min    20  caller identity or IP
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

from deskgate.constants import FIFTEEN_MINUTES_MS, ONE_MINUTE_MS
from deskgate.models.admission import RequestDescriptor

KeyGenerator = Callable[[RequestDescriptor], str]


class RouteClass(str, Enum):
    AUTH = "auth"
    GENERAL = "general"
    STRICT = "strict"
    UPLOAD = "upload"
    API = "api"
    SEARCH = "search"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Fixed-window limit for one route class.

    Fields:
        name:            Route class this policy protects.
        window_ms:       Window length; windows are ``floor(now_ms / window_ms)``.
        max_requests:    Admitted requests per key per window.
        key_generator:   RequestDescriptor -> bucket key.
        skip_on_success: Give the slot back when the response status is < 400.
        skip_on_failure: Give the slot back when the response status is >= 400.
    """

    name: str
    window_ms: int
    max_requests: int
    key_generator: KeyGenerator
    skip_on_success: bool = False
    skip_on_failure: bool = False

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError(f"policy {self.name!r}: window_ms must be positive")
        if self.max_requests < 0:
            raise ValueError(f"policy {self.name!r}: max_requests must not be negative")

    @property
    def ttl_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)


# ─── Key generators ───────────────────────────────────────────────────────────


def _ip(request: RequestDescriptor) -> str:
    return request.client_ip or "unknown"


def _identity(request: RequestDescriptor) -> str:
    if request.caller_id:
        return f"user:{request.caller_id}"
    return f"ip:{_ip(request)}"


def auth_key(request: RequestDescriptor) -> str:
    email = request.body_fields.get("email")
    # Case-folded so "Bob@x.io" and "bob@x.io" share one bucket.
    identifier = email.strip().lower() if isinstance(email, str) and email.strip() else "unknown"
    return f"auth:{_ip(request)}:{identifier}"


def upload_key(request: RequestDescriptor) -> str:
    return f"upload:{_ip(request)}:{request.caller_id or 'anonymous'}"


def ip_key(route_class: str) -> KeyGenerator:
    """Key on caller IP alone, namespaced by route class."""

    def _generate(request: RequestDescriptor) -> str:
        return f"{route_class}:{_ip(request)}"

    return _generate


def identity_key(route_class: str) -> KeyGenerator:
    """Key on the authenticated user id, falling back to caller IP."""

    def _generate(request: RequestDescriptor) -> str:
        return f"{route_class}:{_identity(request)}"

    return _generate


# ─── Reference table ──────────────────────────────────────────────────────────

DEFAULT_POLICIES: Mapping[str, RateLimitPolicy] = {
    RouteClass.AUTH.value: RateLimitPolicy(
        name=RouteClass.AUTH.value,
        window_ms=FIFTEEN_MINUTES_MS,
        max_requests=5,
        key_generator=auth_key,
        skip_on_success=True,
    ),
    RouteClass.GENERAL.value: RateLimitPolicy(
        name=RouteClass.GENERAL.value,
        window_ms=FIFTEEN_MINUTES_MS,
        max_requests=100,
        key_generator=ip_key(RouteClass.GENERAL.value),
    ),
    RouteClass.STRICT.value: RateLimitPolicy(
        name=RouteClass.STRICT.value,
        window_ms=ONE_MINUTE_MS,
        max_requests=10,
        key_generator=ip_key(RouteClass.STRICT.value),
    ),
    RouteClass.UPLOAD.value: RateLimitPolicy(
        name=RouteClass.UPLOAD.value,
        window_ms=ONE_MINUTE_MS,
        max_requests=5,
        key_generator=upload_key,
    ),
    RouteClass.API.value: RateLimitPolicy(
        name=RouteClass.API.value,
        window_ms=ONE_MINUTE_MS,
        max_requests=60,
        key_generator=identity_key(RouteClass.API.value),
    ),
    RouteClass.SEARCH.value: RateLimitPolicy(
        name=RouteClass.SEARCH.value,
        window_ms=ONE_MINUTE_MS,
        max_requests=20,
        key_generator=identity_key(RouteClass.SEARCH.value),
    ),
}


def build_policies(overrides: Mapping[str, object]) -> dict[str, RateLimitPolicy]:
    """Apply ``rate_limits:`` config overrides onto the reference table.

    ``overrides`` maps route class -> RateLimitOverride. A route class not in
    the reference table is accepted when it sets both ``window_ms`` and
    ``max_requests``; it is keyed on caller IP.

    Raises:
        ValueError: An unknown route class is missing window_ms or max_requests,
                    or an override produces an invalid policy.
    """
    policies = dict(DEFAULT_POLICIES)
    for name, override in overrides.items():
        changes = {
            attr: getattr(override, attr)
            for attr in ("window_ms", "max_requests", "skip_on_success", "skip_on_failure")
            if getattr(override, attr) is not None
        }
        base = policies.get(name)
        if base is None:
            if "window_ms" not in changes or "max_requests" not in changes:
                raise ValueError(
                    f"rate_limits.{name}: a new route class needs window_ms and max_requests"
                )
            policies[name] = RateLimitPolicy(name=name, key_generator=ip_key(name), **changes)
        else:
            policies[name] = dataclasses.replace(base, **changes)
    return policies
