"""Admission contracts: RequestDescriptor and Decision."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from deskgate.models.upload import UploadCandidate


@dataclass(frozen=True)
class RequestDescriptor:
    """What the routing layer tells the gateway about one incoming request.

    Fields:
        method:      HTTP method, upper case.
        path:        Request path.
        route_class: Route class tag (``auth``, ``general``, ``upload``...) or
                     None for unprotected routes.
        client_ip:   Caller IP as resolved by the routing layer.
        caller_id:   Authenticated user id, None for anonymous callers.
        body_fields: Body fields a key generator may read (e.g. ``email``).
        uploads:     Buffered files, only for file-accepting routes.
    """

    method: str
    path: str
    route_class: Optional[str] = None
    client_ip: Optional[str] = None
    caller_id: Optional[str] = None
    body_fields: Mapping[str, Any] = field(default_factory=dict)
    uploads: tuple[UploadCandidate, ...] = ()


@dataclass(frozen=True)
class Decision:
    """Result of one admission check.

    Fields:
        admit:          True when the request may proceed.
        limit:          The policy's max_requests.
        remaining:      Slots left in the current window after this request
                        (0 on rejection; never negative).
        window_ms:      The policy's window length.
        retry_after_ms: Time until the current window closes (rejections only).
        reset_at_ms:    Epoch ms at which the caller's counter is next reset.
        counter_id:     Store key that was incremented; None when nothing was
                        counted (rejection or fail-open).
        fail_open:      True when the store failed and the request was admitted
                        without being counted.
    """

    admit: bool
    limit: int
    remaining: int
    window_ms: int
    retry_after_ms: int = 0
    reset_at_ms: int = 0
    counter_id: Optional[str] = None
    fail_open: bool = False
