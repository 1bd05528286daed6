"""Integration tests: admission control over HTTP through create_app().

Each test builds an isolated app with an in-memory counter store and a fixed
clock, adds stand-in business routes behind the gateway, and drives it with
TestClient (which runs the lifespan and waits for background tasks).
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.testclient import TestClient

from deskgate.config import Config
from deskgate.constants import FIFTEEN_MINUTES_MS
from deskgate.main import create_app

PNG = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A]) + b"\x00" * 56


async def _login(request: Request) -> JSONResponse:
    payload = await request.json()
    if payload.get("password") == "correct horse":
        return JSONResponse({"token": "t"})
    return JSONResponse(status_code=401, content={"error": {"code": "INVALID_CREDENTIALS"}})


async def _projects() -> dict:
    return {"projects": []}


def _app(store, clock, config: Optional[Config] = None) -> FastAPI:
    app = create_app(config=config or Config.defaults(), store=store, clock=clock)
    app.add_api_route("/api/auth/login", _login, methods=["POST"])
    app.add_api_route("/api/projects", _projects, methods=["GET"])
    return app


def _credentials(email: str, password: str) -> dict:
    return {"email": email, "password": password}


# ─── Login throttling ─────────────────────────────────────────────────────────


class TestLoginThrottling:
    def test_successful_logins_are_never_counted(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            statuses = [
                client.post("/api/auth/login", json=_credentials("amy@example.com", "correct horse")).status_code
                for _ in range(12)
            ]

        assert statuses == [200] * 12
        assert store.total() == 0

    def test_sixth_failed_login_is_rejected(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            failures = [
                client.post("/api/auth/login", json=_credentials("amy@example.com", "guess")).status_code
                for _ in range(5)
            ]
            blocked = client.post("/api/auth/login", json=_credentials("amy@example.com", "guess"))

        assert failures == [401] * 5
        assert blocked.status_code == 429
        body = blocked.json()["error"]
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["limit"] == 5
        assert body["windowMs"] == FIFTEEN_MINUTES_MS
        assert body["retryAfter"] == FIFTEEN_MINUTES_MS
        assert blocked.headers["Retry-After"] == "900"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"

    def test_blocked_caller_is_blocked_even_with_correct_password(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            for _ in range(5):
                client.post("/api/auth/login", json=_credentials("amy@example.com", "guess"))
            response = client.post("/api/auth/login", json=_credentials("amy@example.com", "correct horse"))

        assert response.status_code == 429

    def test_each_email_has_its_own_bucket(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            for _ in range(5):
                client.post("/api/auth/login", json=_credentials("amy@example.com", "guess"))
            other = client.post("/api/auth/login", json=_credentials("bob@example.com", "guess"))

        assert other.status_code == 401

    def test_window_rollover_lifts_the_block(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            for _ in range(5):
                client.post("/api/auth/login", json=_credentials("amy@example.com", "guess"))
            assert client.post("/api/auth/login", json=_credentials("amy@example.com", "guess")).status_code == 429

            clock.advance(FIFTEEN_MINUTES_MS)
            response = client.post("/api/auth/login", json=_credentials("amy@example.com", "guess"))

        assert response.status_code == 401


# ─── General routes ───────────────────────────────────────────────────────────


class TestGeneralRoutes:
    def test_rate_limit_headers_on_admitted_response(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            response = client.get("/api/projects")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
        assert response.headers["X-RateLimit-Reset"].endswith("Z")

    def test_request_id_header(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            first = client.get("/api/projects").headers["X-Request-ID"]
            second = client.get("/health").headers["X-Request-ID"]

        assert len(first) == 26
        assert len(second) == 26
        assert first != second

    def test_hundred_and_first_request_is_rejected(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            statuses = [client.get("/api/projects").status_code for _ in range(101)]

        assert statuses[:100] == [200] * 100
        assert statuses[100] == 429

    def test_forwarded_for_is_ignored_unless_trusted(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            for i in range(100):
                client.get("/api/projects", headers={"X-Forwarded-For": f"10.0.0.{i}"})
            response = client.get("/api/projects", headers={"X-Forwarded-For": "10.9.9.9"})

        assert response.status_code == 429

    def test_forwarded_for_when_trusted(self, store, clock) -> None:
        config = Config.defaults()
        config.server.trust_forwarded_for = True
        with TestClient(_app(store, clock, config)) as client:
            for _ in range(100):
                client.get("/api/projects", headers={"X-Forwarded-For": "10.0.0.1"})
            response = client.get("/api/projects", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.1"})

        assert response.status_code == 200


# ─── Store outages ────────────────────────────────────────────────────────────


class TestFailOpen:
    def test_failing_store_never_rejects(self, failing_store, clock) -> None:
        with TestClient(_app(failing_store, clock)) as client:
            statuses = [client.get("/api/projects").status_code for _ in range(120)]
            logins = [
                client.post("/api/auth/login", json=_credentials("amy@example.com", "guess")).status_code
                for _ in range(10)
            ]

        assert set(statuses) == {200}
        assert set(logins) == {401}

    def test_no_store_configured(self, clock) -> None:
        app = create_app(config=Config.defaults(), clock=clock)
        app.add_api_route("/api/projects", _projects, methods=["GET"])

        with TestClient(app) as client:
            health = client.get("/health").json()
            statuses = [client.get("/api/projects").status_code for _ in range(120)]

        assert health == {"status": "ok", "store": "disabled"}
        assert set(statuses) == {200}


# ─── Uploads ──────────────────────────────────────────────────────────────────


class TestUploadThrottling:
    def test_sixth_upload_in_a_minute_is_rejected(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            statuses = [
                client.post(
                    "/api/files/upload",
                    files={"file": (f"chart-{i}.png", PNG, "image/png")},
                ).status_code
                for i in range(6)
            ]

        assert statuses == [201, 201, 201, 201, 201, 429]

    def test_rejected_upload_still_uses_a_slot(self, store, clock) -> None:
        with TestClient(_app(store, clock)) as client:
            for _ in range(5):
                client.post("/api/files/upload", files={"file": ("setup.exe", b"MZ", "application/x-msdownload")})
            response = client.post("/api/files/upload", files={"file": ("chart.png", PNG, "image/png")})

        assert response.status_code == 429
