"""
tests/unit/test_audit_sink.py

Unit tests for the abuse-flag sinks and backend selection in main.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from gallery_guard.main import build_audit_sink, build_counter_store
from gallery_guard.services.abuse_monitor import AbuseFlag, AbuseReason
from gallery_guard.services.audit_sink import LoggingAuditSink, RedisStreamAuditSink
from gallery_guard.services.counter_store import InMemoryCounterStore, RedisCounterStore
from gallery_guard.utils.config import GuardSettings


@pytest.fixture
def flag() -> AbuseFlag:
    return AbuseFlag(
        key="user:7",
        reason=AbuseReason.RAPID_UPLOADS,
        observed_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        metadata={"upload_count": 6, "threshold": 5},
        severity="high",
    )


@pytest.fixture
def mock_redis():
    r = MagicMock()
    r.xadd = AsyncMock(return_value="1714564800000-0")
    r.register_script = MagicMock(return_value=AsyncMock())
    return r


class TestRedisStreamAuditSink:
    @pytest.mark.asyncio
    async def test_flag_appended_to_capped_stream(self, mock_redis, flag):
        sink = RedisStreamAuditSink(mock_redis, stream="abuse", maxlen=500)
        await sink.emit(flag)

        mock_redis.xadd.assert_awaited_once()
        args, kwargs = mock_redis.xadd.call_args
        stream, fields = args
        assert stream == "abuse"
        assert fields["key"] == "user:7"
        assert fields["reason"] == "RAPID_UPLOADS"
        assert fields["severity"] == "high"
        assert json.loads(fields["metadata"]) == {"upload_count": 6, "threshold": 5}
        assert kwargs == {"maxlen": 500, "approximate": True}

    @pytest.mark.asyncio
    async def test_stream_errors_propagate(self, mock_redis, flag):
        mock_redis.xadd = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await RedisStreamAuditSink(mock_redis).emit(flag)


class TestLoggingAuditSink:
    @pytest.mark.asyncio
    async def test_emit_does_not_raise(self, flag):
        await LoggingAuditSink().emit(flag)


class TestBackendSelection:
    def test_memory_backend_by_default(self):
        assert isinstance(build_counter_store(GuardSettings()), InMemoryCounterStore)
        assert isinstance(build_audit_sink(GuardSettings()), LoggingAuditSink)

    def test_redis_backends_use_given_client(self, mock_redis):
        settings = GuardSettings(store_backend="redis", audit_sink="redis")
        store = build_counter_store(settings, redis_client=mock_redis)
        sink = build_audit_sink(settings, redis_client=mock_redis)
        assert isinstance(store, RedisCounterStore)
        assert isinstance(sink, RedisStreamAuditSink)
        assert mock_redis.register_script.call_count == 2
