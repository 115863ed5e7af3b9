"""
tests/unit/test_rate_limit_middleware.py

Tests RateLimitMiddleware mounted on a small stand-in gallery app.
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request as StarletteRequest

from gallery_guard.middleware.rate_limiter import RateLimitMiddleware, get_client_ip
from gallery_guard.services.policy_engine import EndpointClass, PolicyEngine


def _build_app(engine: PolicyEngine) -> FastAPI:
    app = FastAPI()

    @app.get("/api/artworks")
    async def list_artworks():
        return {"artworks": []}

    @app.post("/api/auth/login")
    async def login():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.add_middleware(
        RateLimitMiddleware,
        engine=engine,
        route_classes=(("/api/auth/", EndpointClass.AUTH),),
        default_class=EndpointClass.GENERAL,
    )

    # Stand-in for the gallery's session layer, which runs first
    @app.middleware("http")
    async def attach_user(request: Request, call_next):
        user = request.headers.get("X-Test-User")
        if user:
            request.state.user_id = user
        return await call_next(request)

    return app


@pytest.fixture
async def client(store, clock):
    app = _build_app(PolicyEngine(store, clock=clock))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _request(headers: dict[str, str], client: tuple[str, int] | None = None) -> StarletteRequest:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    if client is not None:
        scope["client"] = client
    return StarletteRequest(scope)


class TestClientIp:
    def test_cloudflare_header_wins(self):
        req = _request({"CF-Connecting-IP": "1.1.1.1", "X-Forwarded-For": "2.2.2.2"}, ("9.9.9.9", 1))
        assert get_client_ip(req) == "1.1.1.1"

    def test_first_forwarded_hop(self):
        req = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}, ("9.9.9.9", 1))
        assert get_client_ip(req) == "203.0.113.5"

    def test_real_ip_then_peer(self):
        assert get_client_ip(_request({"X-Real-IP": "3.3.3.3"}, ("9.9.9.9", 1))) == "3.3.3.3"
        assert get_client_ip(_request({}, ("9.9.9.9", 1))) == "9.9.9.9"

    def test_nothing_known(self):
        assert get_client_ip(_request({})) is None


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_admitted_response_has_quota_headers(self, client):
        response = await client.get("/api/artworks")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_auth_class_rejects_sixth_attempt(self, client):
        for _ in range(5):
            assert (await client.post("/api/auth/login")).status_code == 200

        response = await client.post("/api/auth/login")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        body = response.json()
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["retry_after_seconds"] == 60

    @pytest.mark.asyncio
    async def test_health_is_not_counted(self, client, store):
        for _ in range(3):
            response = await client.get("/health")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_forwarded_addresses_get_separate_buckets(self, client):
        for _ in range(5):
            await client.post("/api/auth/login", headers={"X-Forwarded-For": "203.0.113.5"})
        blocked = await client.post("/api/auth/login", headers={"X-Forwarded-For": "203.0.113.5"})
        other = await client.post("/api/auth/login", headers={"X-Forwarded-For": "198.51.100.7"})
        assert blocked.status_code == 429
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_authenticated_user_keyed_by_id(self, client, store):
        await client.get("/api/artworks", headers={"X-Test-User": "alice"})
        await client.get("/api/artworks", headers={"X-Test-User": "alice"})
        assert await store.peek("general:user:alice") == 2
