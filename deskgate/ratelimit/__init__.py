"""Admission control: fixed-window policies and the controller that applies them."""

from deskgate.ratelimit.controller import AdmissionController
from deskgate.ratelimit.policy import DEFAULT_POLICIES, RateLimitPolicy, RouteClass, build_policies

__all__ = [
    "AdmissionController",
    "DEFAULT_POLICIES",
    "RateLimitPolicy",
    "RouteClass",
    "build_policies",
]
