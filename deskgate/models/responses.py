"""HTTP response builders for gateway rejections.

Provides the factory functions that turn a rejection into the JSON envelope
callers see, plus the header helper shared with admitted responses:

  build_rate_limited_response():
      HTTP 429 — admission rejected (Decision.admit is False).
      Carries ``X-RateLimit-Limit``, ``X-RateLimit-Remaining``,
      ``X-RateLimit-Reset`` and ``Retry-After`` (whole seconds, rounded up).

  build_upload_rejected_response():
      HTTP 400 — an upload failed the integrity pipeline or a multipart limit.
      Body carries the reason code, a timestamp and the request id.

  apply_rate_limit_headers():
      Sets the ``X-RateLimit-*`` headers on any response, admitted or not.

Bodies never contain stack traces, store URLs or file contents.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

from fastapi.responses import JSONResponse
from starlette.responses import Response

from deskgate.models.admission import Decision
from deskgate.models.upload import ValidationVerdict


def _iso_utc(epoch_ms: int) -> str:
    return (
        datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def apply_rate_limit_headers(response: Response, decision: Decision) -> Response:
    """Set ``X-RateLimit-Limit`` / ``-Remaining`` / ``-Reset`` from a Decision.

    ``X-RateLimit-Reset`` is the ISO-8601 UTC instant the caller's counter
    next resets. Remaining is clamped at 0.
    """
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = _iso_utc(decision.reset_at_ms)
    return response


def build_rate_limited_response(decision: Decision) -> JSONResponse:
    """Build the HTTP 429 response for a rejected admission.

    Body:

    .. code-block:: json

        {
          "error": {
            "code": "RATE_LIMIT_EXCEEDED",
            "message": "Too many requests, please try again later",
            "limit": 5,
            "windowMs": 60000,
            "retryAfter": 41250
          }
        }

    Args:
        decision: Decision with admit == False.

    Returns:
        JSONResponse with status_code=429 and the rate-limit headers.
    """
    response = JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": "Too many requests, please try again later",
                "limit": decision.limit,
                "windowMs": decision.window_ms,
                "retryAfter": decision.retry_after_ms,
            }
        },
    )
    apply_rate_limit_headers(response, decision)
    response.headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after_ms / 1000)))
    return response


def build_upload_rejected_response(
    verdict: ValidationVerdict,
    request_id: Optional[str],
) -> JSONResponse:
    """Build the HTTP 400 response for a rejected upload.

    Body:

    .. code-block:: json

        {
          "error": {
            "code": "HEADER_MISMATCH",
            "message": "File header does not match declared MIME type image/png",
            "timestamp": "2024-05-01T12:00:00.000Z",
            "requestId": "01HXYZ..."
          }
        }

    Args:
        verdict:    Rejecting ValidationVerdict.
        request_id: Id of the request being rejected (echoed for support lookups).
    """
    code = verdict.reason_code.value if verdict.reason_code is not None else "UPLOAD_REJECTED"
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": code,
                "message": verdict.message,
                "timestamp": utc_now_iso(),
                "requestId": request_id,
            }
        },
    )
