"""
tests/conftest.py

Shared fixtures: a controllable clock, a recording audit sink and a
fresh in-memory store per test.
"""

from __future__ import annotations

import pytest

from gallery_guard.services.abuse_monitor import AbuseFlag
from gallery_guard.services.audit_sink import AuditSink
from gallery_guard.services.counter_store import InMemoryCounterStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingAuditSink(AuditSink):
    """Keeps every emitted flag in memory."""

    def __init__(self) -> None:
        self.flags: list[AbuseFlag] = []

    async def emit(self, flag: AbuseFlag) -> None:
        self.flags.append(flag)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def sink() -> RecordingAuditSink:
    return RecordingAuditSink()
