"""Request identifier generation.

Every request handled by the gateway gets a ULID (26 chars, Crockford
Base32, lexicographically sortable by creation time). It is:
  - echoed to the caller in the ``X-Request-ID`` response header
  - embedded as ``requestId`` in upload rejection envelopes
  - bound to every structured log line via ``request_id_var``

Uses the ``python-ulid`` library rather than hand-rolled generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_request_id() -> str:
    """Generate a new request ID as a 26-character uppercase ULID string."""
    return str(ULID())
