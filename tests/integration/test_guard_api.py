"""
tests/integration/test_guard_api.py

End-to-end tests of the Gallery Guard HTTP API against the in-memory
store, with a fake clock injected through create_app().
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from gallery_guard.main import create_app
from gallery_guard.services.policy_engine import DEFAULT_POLICIES, EndpointClass, RateLimitConfig
from gallery_guard.utils.config import GuardSettings

TEST_API_KEY = "test-api-key-for-guard"
AUTH = {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def settings() -> GuardSettings:
    return GuardSettings(
        app_env="test",
        api_key=TEST_API_KEY,
        policies={
            **DEFAULT_POLICIES,
            EndpointClass.UPLOAD: RateLimitConfig(window_ms=3_600_000, max_requests=3),
        },
    )


@pytest.fixture
def app(settings, clock):
    return create_app(settings=settings, clock=clock)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _created_at(clock, days: int) -> str:
    now = datetime.fromtimestamp(clock() / 1000, tz=timezone.utc)
    return (now - timedelta(days=days)).isoformat()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_needs_no_key(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["service"] == "gallery-guard"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_ready_with_memory_store(self, client):
        response = await client.get("/ready")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["store_backend"] == "memory"
        assert body["fail_mode"] == "open"


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, client):
        response = await client.post("/v1/limits/check", json={"endpoint_class": "general"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_FAILED"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestLimitCheck:
    @pytest.mark.asyncio
    async def test_admitted_check(self, client):
        response = await client.post(
            "/v1/limits/check",
            json={"endpoint_class": "general", "user_id": "42"},
            headers=AUTH,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["allow"] is True
        assert body["limit"] == 100
        assert body["remaining"] == 99
        assert body["degraded"] is False
        assert response.headers["X-RateLimit-Remaining"] == "99"

    @pytest.mark.asyncio
    async def test_fourth_upload_check_rejected(self, client):
        payload = {"endpoint_class": "upload", "user_id": "42"}
        for _ in range(3):
            assert (await client.post("/v1/limits/check", json=payload, headers=AUTH)).status_code == 200

        response = await client.post("/v1/limits/check", json=payload, headers=AUTH)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"
        body = response.json()
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["retry_after_seconds"] == 3600

    @pytest.mark.asyncio
    async def test_window_reset_readmits(self, client, clock):
        payload = {"endpoint_class": "upload", "user_id": "42"}
        for _ in range(4):
            await client.post("/v1/limits/check", json=payload, headers=AUTH)
        clock.advance(3_600_000)
        response = await client.post("/v1/limits/check", json=payload, headers=AUTH)
        assert response.status_code == 200
        assert response.json()["remaining"] == 2

    @pytest.mark.asyncio
    async def test_unknown_endpoint_class_is_422(self, client):
        response = await client.post(
            "/v1/limits/check", json={"endpoint_class": "downloads"}, headers=AUTH
        )
        assert response.status_code == 422


class TestAbuseRoutes:
    @pytest.mark.asyncio
    async def test_new_account_upload_ceiling(self, client, clock):
        payload = {"user_id": "7", "account_created_at": _created_at(clock, days=1)}
        for _ in range(10):
            response = await client.post("/v1/abuse/uploads", json=payload, headers=AUTH)
            assert response.status_code == 200
            assert response.json()["allow"] is True

        response = await client.post("/v1/abuse/uploads", json=payload, headers=AUTH)
        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_duplicate_upload_reports_flag(self, client, clock):
        payload = {
            "user_id": "7",
            "account_created_at": _created_at(clock, days=90),
            "fingerprint": "9f86d081884c7d65",
        }
        await client.post("/v1/abuse/uploads", json=payload, headers=AUTH)
        response = await client.post("/v1/abuse/uploads", json=payload, headers=AUTH)
        assert response.status_code == 200
        flags = response.json()["flags"]
        assert [f["reason"] for f in flags] == ["DUPLICATE_RAPID_UPLOAD"]
        assert flags[0]["key"] == "user:7"

    @pytest.mark.asyncio
    async def test_failed_login_burst(self, client):
        for _ in range(4):
            response = await client.post(
                "/v1/abuse/logins/failed", json={"client_ip": "198.51.100.7"}, headers=AUTH
            )
            assert response.json()["flags"] == []
        response = await client.post(
            "/v1/abuse/logins/failed", json={"client_ip": "198.51.100.7"}, headers=AUTH
        )
        assert response.json()["flags"][0]["reason"] == "FAILED_LOGIN_BURST"

    @pytest.mark.asyncio
    async def test_gallery_signal_advisory(self, client):
        response = await client.post("/v1/abuse/galleries", json={"user_id": "7"}, headers=AUTH)
        assert response.status_code == 200
        assert response.json() == {"flags": []}

    @pytest.mark.asyncio
    async def test_login_from_new_address_flagged(self, client):
        first = await client.post(
            "/v1/abuse/logins", json={"user_id": "7", "client_ip": "198.51.100.7"}, headers=AUTH
        )
        assert first.status_code == 200
        assert first.json() == {"flags": []}

        response = await client.post(
            "/v1/abuse/logins", json={"user_id": "7", "client_ip": "203.0.113.5"}, headers=AUTH
        )
        assert response.status_code == 200
        flags = response.json()["flags"]
        assert [f["reason"] for f in flags] == ["UNUSUAL_LOGIN_IP"]
        assert flags[0]["metadata"]["previous_ips"] == ["198.51.100.7"]

    @pytest.mark.asyncio
    async def test_login_requires_user(self, client):
        response = await client.post(
            "/v1/abuse/logins", json={"client_ip": "198.51.100.7"}, headers=AUTH
        )
        assert response.status_code == 422


class TestAdmin:
    @pytest.mark.asyncio
    async def test_peek_counter(self, client):
        for _ in range(3):
            await client.post(
                "/v1/limits/check", json={"endpoint_class": "general", "user_id": "42"}, headers=AUTH
            )
        response = await client.get("/v1/admin/counters/general:user:42", headers=AUTH)
        assert response.status_code == 200
        assert response.json() == {"key": "general:user:42", "count": 3}

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired(self, client, clock):
        await client.post(
            "/v1/limits/check", json={"endpoint_class": "general", "user_id": "42"}, headers=AUTH
        )
        clock.advance(60_000)
        response = await client.post("/v1/admin/counters/cleanup", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["removed"] >= 1

    @pytest.mark.asyncio
    async def test_admin_key_guessing_is_throttled(self, client):
        statuses = [
            (await client.get("/v1/admin/counters/x", headers={"X-API-Key": "wrong"})).status_code
            for _ in range(6)
        ]
        assert statuses == [401] * 5 + [429]

    @pytest.mark.asyncio
    async def test_unknown_route_uses_error_shape(self, client):
        response = await client.get("/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
