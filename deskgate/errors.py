"""Gateway error taxonomy.

  PolicyViolation       — over-limit admission rejection. Recoverable by the
                          caller after ``retry_after_ms``. Rendered as HTTP 429.
  UploadRejected        — an upload failed one integrity stage. Terminal for
                          that request, never retried. Rendered as HTTP 400.
  InfrastructureFailure — the shared counter store errored or timed out.
                          Raised by store clients and caught by the admission
                          controller, which fails open. Never reaches a caller.

PolicyViolation and UploadRejected are translated into JSON envelopes by the
exception handlers registered in ``deskgate.main.create_app()``.
"""

from __future__ import annotations

from typing import Any, Optional

from deskgate.models.admission import Decision
from deskgate.models.upload import ValidationVerdict


class GatewayError(Exception):
    """Base class for errors carrying a machine-readable code."""

    http_status: int = 400

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class PolicyViolation(GatewayError):
    """Raised when the admission controller rejects a request."""

    http_status = 429

    def __init__(self, decision: Decision):
        self.decision = decision
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            "Too many requests, please try again later",
            {
                "limit": decision.limit,
                "windowMs": decision.window_ms,
                "retryAfter": decision.retry_after_ms,
            },
        )


class UploadRejected(GatewayError):
    """Raised when an upload fails the integrity pipeline or multipart limits."""

    http_status = 400

    def __init__(self, verdict: ValidationVerdict):
        if verdict.accepted or verdict.reason_code is None:
            raise ValueError("UploadRejected requires a rejecting verdict")
        self.verdict = verdict
        super().__init__(verdict.reason_code.value, verdict.message)


class InfrastructureFailure(Exception):
    """The shared counter store could not complete an operation.

    ``operation`` names the store primitive (get / incr / decr / connect).
    The message never contains connection details.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        reason = type(cause).__name__ if cause is not None else "unavailable"
        super().__init__(f"counter store {operation} failed: {reason}")
