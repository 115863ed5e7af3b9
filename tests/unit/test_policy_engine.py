"""
tests/unit/test_policy_engine.py

Unit tests for PolicyEngine: quota boundaries, window resets, key
derivation and the fail-open / fail-closed paths.
"""

from __future__ import annotations

import asyncio
import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from gallery_guard.services.counter_store import InMemoryCounterStore
from gallery_guard.services.policy_engine import (
    DEFAULT_POLICIES,
    RATE_LIMIT_EXCEEDED,
    EndpointClass,
    FailMode,
    PolicyEngine,
    RateLimitConfig,
    derive_rate_limit_key,
    validate_policies,
)
from gallery_guard.utils.exceptions import InvalidConfigurationError, StoreUnavailableError


@pytest.fixture
def engine(store, clock):
    return PolicyEngine(store, clock=clock)


def _broken_store(exc: Exception) -> MagicMock:
    store = MagicMock()
    store.backend = "broken"
    store.increment_and_get = AsyncMock(side_effect=exc)
    return store


class SlowStore(InMemoryCounterStore):
    backend = "slow"

    async def increment_and_get(self, key, window_ms):
        await asyncio.sleep(1)
        return await super().increment_and_get(key, window_ms)


class TestKeyDerivation:
    def test_user_takes_precedence(self):
        assert derive_rate_limit_key("42", "203.0.113.5") == "user:42"

    def test_falls_back_to_ip(self):
        assert derive_rate_limit_key(None, "203.0.113.5") == "ip:203.0.113.5"

    def test_blank_user_falls_back_to_ip(self):
        assert derive_rate_limit_key("   ", "203.0.113.5") == "ip:203.0.113.5"
        assert derive_rate_limit_key(" 42 ", None) == "user:42"

    def test_no_identity_shares_unknown_bucket(self):
        assert derive_rate_limit_key(None, None) == "ip:unknown"
        assert derive_rate_limit_key("", "  ") == "ip:unknown"


class TestQuota:
    @pytest.mark.asyncio
    async def test_general_quota_admits_exactly_max(self, engine, clock):
        decisions = [await engine.evaluate(EndpointClass.GENERAL, user_id="42") for _ in range(100)]
        assert all(d.allowed for d in decisions)
        assert decisions[0].remaining == 99
        assert decisions[-1].remaining == 0

        rejected = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert rejected.allowed is False
        assert rejected.code == RATE_LIMIT_EXCEEDED
        assert rejected.remaining == 0
        assert 1 <= rejected.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_auth_boundary_and_rejected_calls_still_count(self, engine, store):
        results = [
            (await engine.evaluate(EndpointClass.AUTH, client_ip="198.51.100.7")).allowed
            for _ in range(7)
        ]
        assert results == [True] * 5 + [False, False]
        assert await store.peek("auth:ip:198.51.100.7") == 7

    @pytest.mark.asyncio
    async def test_window_reset_readmits(self, engine, clock):
        for _ in range(101):
            await engine.evaluate(EndpointClass.GENERAL, user_id="42")

        clock.advance(60_000)
        decision = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert decision.allowed is True
        assert decision.remaining == 99
        assert decision.reset_at_ms == clock() + 60_000

    @pytest.mark.asyncio
    async def test_user_and_ip_buckets_are_independent(self, engine):
        for _ in range(100):
            await engine.evaluate(EndpointClass.GENERAL, user_id="1")
        assert (await engine.evaluate(EndpointClass.GENERAL, user_id="1")).allowed is False

        other = await engine.evaluate(EndpointClass.GENERAL, client_ip="203.0.113.5")
        assert other.allowed is True
        assert other.remaining == 99

    @pytest.mark.asyncio
    async def test_anonymous_callers_share_unknown_bucket(self, engine, store):
        await engine.evaluate(EndpointClass.GENERAL)
        second = await engine.evaluate(EndpointClass.GENERAL)
        assert second.key == "ip:unknown"
        assert second.remaining == 98
        assert await store.peek("general:ip:unknown") == 2

    @pytest.mark.asyncio
    async def test_classes_use_separate_counters(self, engine, store):
        await engine.evaluate(EndpointClass.UPLOAD, user_id="42")
        general = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert general.remaining == 99
        assert await store.peek("upload:user:42") == 1
        assert await store.peek("general:user:42") == 1

    @pytest.mark.asyncio
    async def test_custom_policy_applies(self, store, clock):
        policies = {**DEFAULT_POLICIES, EndpointClass.MESSAGE: RateLimitConfig(window_ms=1_000, max_requests=1)}
        engine = PolicyEngine(store, policies=policies, clock=clock)
        assert (await engine.evaluate(EndpointClass.MESSAGE, user_id="42")).allowed is True
        rejected = await engine.evaluate(EndpointClass.MESSAGE, user_id="42")
        assert rejected.allowed is False
        assert rejected.retry_after_seconds == 1


class TestHeaders:
    @pytest.mark.asyncio
    async def test_admitted_headers(self, engine):
        decision = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        headers = decision.headers()
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "99"
        assert headers["X-RateLimit-Reset"] == str(math.ceil(decision.reset_at_ms / 1000))
        assert "Retry-After" not in headers

    @pytest.mark.asyncio
    async def test_rejected_headers_carry_retry_after(self, engine):
        for _ in range(5):
            await engine.evaluate(EndpointClass.AUTH, client_ip="198.51.100.7")
        decision = await engine.evaluate(EndpointClass.AUTH, client_ip="198.51.100.7")
        assert decision.headers()["Retry-After"] == "60"


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_unavailable_store_fails_open(self, clock):
        engine = PolicyEngine(_broken_store(StoreUnavailableError("down")), clock=clock)
        decision = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert decision.allowed is True
        assert decision.degraded is True
        assert decision.remaining == 100
        assert decision.code is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_open(self, clock):
        engine = PolicyEngine(_broken_store(RuntimeError("boom")), clock=clock)
        decision = await engine.evaluate(EndpointClass.UPLOAD, user_id="42")
        assert decision.allowed is True
        assert decision.degraded is True

    @pytest.mark.asyncio
    async def test_slow_store_times_out_and_fails_open(self, clock):
        engine = PolicyEngine(SlowStore(clock=clock), store_timeout_ms=20, clock=clock)
        decision = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert decision.allowed is True
        assert decision.degraded is True

    @pytest.mark.asyncio
    async def test_fail_closed_rejects(self, clock):
        engine = PolicyEngine(
            _broken_store(StoreUnavailableError("down")),
            fail_mode=FailMode.CLOSED,
            clock=clock,
        )
        decision = await engine.evaluate(EndpointClass.GENERAL, user_id="42")
        assert decision.allowed is False
        assert decision.degraded is True
        assert decision.code == RATE_LIMIT_EXCEEDED
        assert decision.retry_after_seconds == 1
        assert decision.remaining == 0


class TestPolicyValidation:
    def test_defaults_are_valid(self):
        validate_policies(DEFAULT_POLICIES)

    def test_missing_class_rejected(self, store):
        policies = {k: v for k, v in DEFAULT_POLICIES.items() if k is not EndpointClass.MESSAGE}
        with pytest.raises(InvalidConfigurationError, match="message"):
            PolicyEngine(store, policies=policies)

    def test_non_positive_quota_rejected(self):
        policies = {**DEFAULT_POLICIES, EndpointClass.AUTH: RateLimitConfig(window_ms=60_000, max_requests=0)}
        with pytest.raises(InvalidConfigurationError):
            validate_policies(policies)
