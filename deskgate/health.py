"""Health endpoint for DeskGate.

Implements:
  GET /health — 503 before ``app.state.ready`` is set, 200 after.

The counter store being down does not make the service unhealthy: admission
fails open, so requests keep flowing. The ``store`` field reports it so
operators can see that rate limiting is currently not enforced.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from deskgate.store.protocol import CounterStore, StoreState

router = APIRouter(tags=["health"])


def store_status(store: Optional[CounterStore]) -> str:
    """``connected`` / ``unavailable`` / ``disabled`` for the health body."""
    if store is None or store.health.state == StoreState.DISABLED:
        return "disabled"
    return "connected" if store.is_available() else "unavailable"


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {"status": "ok", "store": "connected" | "unavailable" | "disabled"}

    Response body (503):
        {"error": {"status": "starting", "message": "DeskGate is starting up"}}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "DeskGate is starting up"},
        )

    store: Optional[CounterStore] = getattr(request.app.state, "counter_store", None)
    return {"status": "ok", "store": store_status(store)}
