"""Admission middleware for DeskGate.

Runs the admission controller in front of every route the ``routes:`` table
classifies, before any body is parsed for business logic:

  - Every request gets a ULID request id, bound to the log context and echoed
    in ``X-Request-ID``.
  - Unclassified paths pass straight through (not rate limited).
  - Over-limit callers get HTTP 429 from build_rate_limited_response(); the
    route handler never runs.
  - Admitted responses carry ``X-RateLimit-*`` headers. The release hook
    (skip_on_success / skip_on_failure) is attached as a background task, so
    it runs with the final status after the response is sent and never
    delays it.

Caller identity is read from ``request.state.caller_id``, which an
authentication layer registered outside this middleware may set. It is never
taken from a client-supplied header.
"""

from __future__ import annotations

import json
from typing import Any, Optional
from urllib.parse import parse_qsl

from starlette.background import BackgroundTasks
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from deskgate.errors import PolicyViolation
from deskgate.gateway.composition import Admission, Gateway
from deskgate.models.admission import RequestDescriptor
from deskgate.models.responses import apply_rate_limit_headers, build_rate_limited_response
from deskgate.utils.ids import generate_request_id
from deskgate.utils.logger import clear_request_id, set_request_id


# ─── Request description ──────────────────────────────────────────────────────


def resolve_client_ip(request: Request, trust_forwarded_for: bool = False) -> Optional[str]:
    """Caller IP: the socket peer, or the first X-Forwarded-For hop when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def describe_request(
    request: Request,
    route_class: Optional[str],
    body_fields: Optional[dict[str, Any]] = None,
) -> RequestDescriptor:
    """Build the RequestDescriptor the gateway sees for this request."""
    client_ip = getattr(request.state, "client_ip", None)
    if client_ip is None:
        client_ip = resolve_client_ip(request)
    return RequestDescriptor(
        method=request.method.upper(),
        path=request.url.path,
        route_class=route_class,
        client_ip=client_ip,
        caller_id=getattr(request.state, "caller_id", None),
        body_fields=body_fields or {},
    )


async def read_body_fields(request: Request) -> dict[str, Any]:
    """Read a JSON or urlencoded body into a flat dict; anything else reads as empty.

    The body is cached by Starlette, so the route handler can still read it.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type not in ("application/json", "application/x-www-form-urlencoded"):
        return {}

    body = await request.body()
    if not body:
        return {}

    if content_type == "application/json":
        try:
            parsed = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    try:
        return dict(parse_qsl(body.decode("utf-8")))
    except UnicodeDecodeError:
        return {}


# ─── Middleware ───────────────────────────────────────────────────────────────


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Starlette middleware applying the gateway's admission control.

    Registration (in create_app() in deskgate/main.py):
        application.add_middleware(AdmissionMiddleware)

    The Gateway is read from ``app.state.gateway`` and the forwarded-for
    setting from ``app.state.config``; until the lifespan has set them,
    requests pass through unlimited (routes gate on readiness).
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_request_id()
        request.state.request_id = request_id
        set_request_id(request_id)
        try:
            response = await self._gate(request, call_next)
        finally:
            clear_request_id()
        response.headers["X-Request-ID"] = request_id
        return response

    async def _gate(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        gateway: Optional[Gateway] = getattr(request.app.state, "gateway", None)
        config = getattr(request.app.state, "config", None)
        trust_forwarded_for = bool(config and config.server.trust_forwarded_for)
        request.state.client_ip = resolve_client_ip(request, trust_forwarded_for)

        route_class = gateway.classify(request.method, request.url.path) if gateway else None
        request.state.route_class = route_class
        if gateway is None or gateway.policy_for(route_class) is None:
            return await call_next(request)

        body_fields = (
            await read_body_fields(request) if gateway.needs_body_fields(route_class) else {}
        )
        descriptor = describe_request(request, route_class, body_fields)

        try:
            admission = await gateway.admit(descriptor)
        except PolicyViolation as exc:
            return build_rate_limited_response(exc.decision)

        try:
            response = await call_next(request)
        except Exception:
            # The app's catch-all handler renders this as a 500.
            await gateway.complete(admission, 500)
            raise

        if admission is not None:
            apply_rate_limit_headers(response, admission.decision)
            _run_after_response(response, gateway, admission)
        return response


def _run_after_response(response: Response, gateway: Gateway, admission: Admission) -> None:
    """Schedule the release hook after the response body is sent."""
    tasks = BackgroundTasks()
    existing = getattr(response, "background", None)
    if existing is not None:
        tasks.add_task(existing)
    tasks.add_task(gateway.complete, admission, response.status_code)
    response.background = tasks
