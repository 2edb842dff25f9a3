"""
Tests for the system endpoints and response middleware.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from taskboard.core.errors import StoreUnavailable
from taskboard.core.middleware import SECURITY_HEADERS, CSRFMiddleware, SecurityHeadersMiddleware
from taskboard.main import create_app


@pytest.fixture
def app(db, notifier):
    return create_app(db=db, notifier=notifier)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def test_health_check(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_ready_check(client: AsyncClient):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


async def test_api_root(client: AsyncClient):
    response = await client.get("/api/v1/")
    assert response.status_code == 200
    data = response.json()
    assert data["api"] == "v1"
    assert "/invitations" in data["endpoints"]


class TestReadiness:
    async def test_ready_store_unavailable(self, client, app):
        app.state.db.ping = AsyncMock(side_effect=StoreUnavailable("Database unavailable"))
        response = await client.get("/ready")
        assert response.status_code == 503

    async def test_ready_unexpected_error(self, client, app):
        app.state.db.ping = AsyncMock(side_effect=RuntimeError("boom"))
        response = await client.get("/ready")
        assert response.status_code == 503
        assert response.json()["detail"] == "Database not ready"


class TestSecurityHeaders:
    async def test_headers_on_every_response(self, client):
        for path in ("/health", "/api/v1/orgs"):
            response = await client.get(path)
            for header, value in SECURITY_HEADERS.items():
                assert response.headers[header] == value

    async def test_hsts_outside_debug(self, client):
        response = await client.get("/health")
        assert response.headers["Strict-Transport-Security"].startswith("max-age=")

    async def test_hsts_can_be_disabled(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware, hsts=False)

        @app.get("/ping")
        async def ping():
            return {}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/ping")
        assert "Strict-Transport-Security" not in response.headers
        assert response.headers["X-Frame-Options"] == "DENY"


class TestCsrfMiddleware:
    @pytest.fixture
    async def csrf_client(self):
        app = FastAPI()
        app.add_middleware(CSRFMiddleware)

        @app.post("/echo")
        async def echo():
            return {"ok": True}

        @app.post("/auth/signin")
        async def signin():
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    async def test_no_session_cookie_skips_check(self, csrf_client):
        assert (await csrf_client.post("/echo")).status_code == 200

    async def test_bearer_requests_skip_check(self, csrf_client):
        response = await csrf_client.post(
            "/echo",
            headers={"Cookie": "session_token=abc", "Authorization": "Bearer tk_abc"},
        )
        assert response.status_code == 200

    async def test_matching_token_passes(self, csrf_client):
        response = await csrf_client.post(
            "/echo",
            headers={"Cookie": "session_token=abc; csrf_token=xyz", "X-CSRF-Token": "xyz"},
        )
        assert response.status_code == 200

    async def test_missing_cookie_token_fails(self, csrf_client):
        response = await csrf_client.post(
            "/echo",
            headers={"Cookie": "session_token=abc", "X-CSRF-Token": "xyz"},
        )
        assert response.status_code == 403
        assert response.json()["code"] == "CSRF_VALIDATION_FAILED"

    async def test_mismatched_token_fails(self, csrf_client):
        response = await csrf_client.post(
            "/echo",
            headers={"Cookie": "session_token=abc; csrf_token=xyz", "X-CSRF-Token": "abc"},
        )
        assert response.status_code == 403

    async def test_auth_entry_points_exempt(self, csrf_client):
        response = await csrf_client.post("/auth/signin", headers={"Cookie": "session_token=stale"})
        assert response.status_code == 200
