"""
gallery_guard/services/audit_sink.py

Hand-off points between the abuse monitor and the moderation queue.

Design Decisions:
- Gallery Guard computes abuse flags but never persists them; a sink
  forwards each flag to whatever owns the activity log.
- LoggingAuditSink is the zero-infrastructure default: a structured
  loguru record that log shipping can route to moderation.
- RedisStreamAuditSink appends to a capped Redis stream so the
  moderation worker can consume flags with XREADGROUP.
"""

from __future__ import annotations

import abc
import json
from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from gallery_guard.utils.logger import get_logger

if TYPE_CHECKING:
    from gallery_guard.services.abuse_monitor import AbuseFlag

logger = get_logger(__name__)


class AuditSink(abc.ABC):
    """Receives abuse flags. Implementations may raise; callers log and move on."""

    @abc.abstractmethod
    async def emit(self, flag: "AbuseFlag") -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Write each flag as a structured warning."""

    async def emit(self, flag: "AbuseFlag") -> None:
        logger.bind(audit=True, **flag.to_dict()).warning("Abuse flag raised")


class RedisStreamAuditSink(AuditSink):
    """Append each flag to a Redis stream read by the moderation queue."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        stream: str = "gallery:abuse-flags",
        maxlen: int = 10_000,
    ) -> None:
        self._redis = redis_client
        self._stream = stream
        self._maxlen = maxlen

    async def emit(self, flag: "AbuseFlag") -> None:
        payload = flag.to_dict()
        await self._redis.xadd(
            self._stream,
            {
                "key": payload["key"],
                "reason": payload["reason"],
                "severity": payload["severity"],
                "observed_at": payload["observed_at"],
                "metadata": json.dumps(payload["metadata"], default=str),
            },
            maxlen=self._maxlen,
            approximate=True,
        )
