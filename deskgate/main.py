"""DeskGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - exception handlers translating the gateway error taxonomy into envelopes
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()             → app.state.config (unless injected)
  2. create_counter_store()    → app.state.counter_store (unless injected)
  3. Gateway.from_config()     → app.state.gateway
  4. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → close counter store

Middleware:
  AdmissionMiddleware runs on every request: request id, admission control,
  rate-limit headers and the post-response release hook.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from deskgate.config import Config, load_config
from deskgate.errors import PolicyViolation, UploadRejected
from deskgate.gateway.composition import Gateway
from deskgate.gateway.middleware import AdmissionMiddleware
from deskgate.health import router as health_router
from deskgate.models.responses import build_rate_limited_response, build_upload_rejected_response
from deskgate.ratelimit.controller import Clock
from deskgate.routes.files import UploadHandler, router as files_router
from deskgate.store.factory import create_counter_store
from deskgate.store.protocol import CounterStore
from deskgate.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown sequence.

    A config or store injected through create_app() is used as-is; otherwise
    the config is loaded from disk/env and the store is created from it.
    """
    logger.info("DeskGate starting up...")

    # ── Step 1: Config ────────────────────────────────────────────────────────
    config: Optional[Config] = getattr(app.state, "config", None)
    if config is None:
        config = load_config()
        app.state.config = config

    # ── Step 2: Counter store ─────────────────────────────────────────────────
    store: Optional[CounterStore] = getattr(app.state, "counter_store", None)
    owns_store = store is None
    if store is None:
        store = await create_counter_store(config)
        app.state.counter_store = store

    # ── Step 3: Gateway ───────────────────────────────────────────────────────
    app.state.gateway = Gateway.from_config(config, store, clock=app.state.clock)
    logger.info(
        "Gateway ready",
        policies=sorted(app.state.gateway.policies),
        route_rules=len(config.routes),
        store_available=store.is_available(),
    )

    # ── Step 4: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("DeskGate ready")

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("DeskGate shutting down...")
    app.state.ready = False

    if owns_store:
        await store.close()
        app.state.counter_store = None

    logger.info("DeskGate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    store: Optional[CounterStore] = None,
    clock: Optional[Clock] = None,
    upload_handler: Optional[UploadHandler] = None,
) -> FastAPI:
    """Create and configure the DeskGate FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(config=Config.defaults(), store=fake_store)

    Args:
        config:         Pre-built config; loaded in the lifespan when None.
        store:          Counter store; created from config in the lifespan when
                        None. An injected store is not closed on shutdown.
        clock:          Epoch-millisecond clock for the admission controller.
        upload_handler: Receives the accepted files of an upload route.

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    application = FastAPI(
        title="DeskGate",
        description="Request admission and upload integrity gateway",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    # Initialize ready flag before lifespan so /health returns 503 until startup completes.
    application.state.ready = False
    application.state.gateway = None
    application.state.clock = clock
    if config is not None:
        application.state.config = config
    if store is not None:
        application.state.counter_store = store
    if upload_handler is not None:
        application.state.upload_handler = upload_handler

    application.add_middleware(AdmissionMiddleware)

    application.include_router(health_router)
    application.include_router(files_router)

    # ─── Exception handlers ───────────────────────────────────────────────────

    @application.exception_handler(PolicyViolation)
    async def policy_violation_handler(request: Request, exc: PolicyViolation) -> JSONResponse:
        return build_rate_limited_response(exc.decision)

    @application.exception_handler(UploadRejected)
    async def upload_rejected_handler(request: Request, exc: UploadRejected) -> JSONResponse:
        return build_upload_rejected_response(
            exc.verdict, getattr(request.state, "request_id", None)
        )

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
