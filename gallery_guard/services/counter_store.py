"""
gallery_guard/services/counter_store.py

Fixed-window request counters for Gallery Guard.

Design Decisions:
- The store is an explicitly constructed object handed to the policy
  engine and abuse monitor, never a module-level singleton, so the
  in-memory and Redis backends are interchangeable and testable.
- Both backends expose the same async contract. The in-memory one
  never actually suspends; the Redis one awaits network I/O.
- increment_and_get() is the single serialization point per key:
    * in-memory: the whole read-modify-write runs under one
      threading.Lock, so it is atomic for asyncio tasks and for
      worker threads alike;
    * Redis: INCR + PEXPIRE + PTTL run in one Lua script, which Redis
      executes atomically.
- Windows are fixed, not sliding: a burst straddling a window boundary
  can admit up to twice the nominal rate.
- Expired entries behave as absent whether or not a cleanup sweep has
  removed them yet. Cleanup only bounds memory.
- The in-memory store only limits traffic landing on this process.
  Use the Redis backend when the quota must hold across instances.
"""

from __future__ import annotations

import abc
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeAlias

import redis.asyncio as aioredis

from gallery_guard.utils.exceptions import StoreUnavailableError
from gallery_guard.utils.logger import get_logger
from gallery_guard.utils.metrics import (
    counter_entries,
    expired_entries_removed_total,
    store_errors_total,
)

logger = get_logger(__name__)

# Returns the current wall-clock time in epoch milliseconds
Clock: TypeAlias = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CounterEntry:
    """
    State of one counter window.

    Attributes:
        count: Requests seen in the current window (>= 0).
        reset_at_ms: Epoch milliseconds at which the window expires.
    """

    count: int
    reset_at_ms: int

    def is_expired(self, at_ms: int) -> bool:
        return at_ms >= self.reset_at_ms


def _check_args(key: str, window_ms: int) -> None:
    if not key:
        raise ValueError("Counter key must be a non-empty string.")
    if window_ms <= 0:
        raise ValueError(f"window_ms must be positive, got {window_ms}.")


class CounterStore(abc.ABC):
    """Owner of all counter state. Nothing else mutates counts."""

    backend: str = "abstract"

    @abc.abstractmethod
    async def increment_and_get(self, key: str, window_ms: int) -> CounterEntry:
        """
        Atomically count one request for `key` and return the new state.

        A missing or expired entry starts a fresh window with count 1 and
        reset_at_ms = now + window_ms; otherwise count grows by one and
        the reset time is unchanged.

        Raises:
            ValueError: On an empty key or non-positive window.
            StoreUnavailableError: If the backend cannot be reached.
        """

    @abc.abstractmethod
    async def peek(self, key: str) -> int:
        """Current count for `key` without mutating it (0 when absent)."""

    @abc.abstractmethod
    async def push_recent(
        self, key: str, value: str, max_items: int, window_ms: int
    ) -> list[str]:
        """
        Record `value` as the most recent member of a bounded history.

        The history keeps at most `max_items` distinct values, newest
        first, and expires `window_ms` after the last push.

        Returns:
            The history as it was before this push (newest first).
        """

    @abc.abstractmethod
    async def cleanup_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """
    Process-local counter map guarded by a lock.

    Usage:
        store = InMemoryCounterStore()
        entry = await store.increment_and_get("general:user:42", 60_000)
        entry.count  # 1
    """

    backend = "memory"

    def __init__(self, clock: Clock = now_ms, cleanup_every: int = 100) -> None:
        self._clock = clock
        self._entries: dict[str, CounterEntry] = {}
        self._histories: dict[str, tuple[tuple[str, ...], int]] = {}
        self._lock = threading.Lock()
        self._cleanup_every = cleanup_every
        self._increments = 0

    def __len__(self) -> int:
        return len(self._entries) + len(self._histories)

    async def increment_and_get(self, key: str, window_ms: int) -> CounterEntry:
        _check_args(key, window_ms)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                entry = CounterEntry(count=1, reset_at_ms=now + window_ms)
            else:
                entry = CounterEntry(count=entry.count + 1, reset_at_ms=entry.reset_at_ms)
            self._entries[key] = entry

            self._increments += 1
            if self._cleanup_every and self._increments % self._cleanup_every == 0:
                self._sweep(now)
        return entry

    async def push_recent(
        self, key: str, value: str, max_items: int, window_ms: int
    ) -> list[str]:
        _check_args(key, window_ms)
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}.")
        with self._lock:
            now = self._clock()
            previous: tuple[str, ...] = ()
            history = self._histories.get(key)
            if history is not None and now < history[1]:
                previous = history[0]
            updated = (value, *(v for v in previous if v != value))[:max_items]
            self._histories[key] = (updated, now + window_ms)
        return list(previous)

    async def peek(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return 0
            return entry.count

    async def cleanup_expired(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._histories.clear()
            self._increments = 0
            counter_entries.set(0)

    def _sweep(self, now: int) -> int:
        """Remove expired entries. Caller must hold the lock."""
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        stale = [key for key, (_, expires_at) in self._histories.items() if now >= expires_at]
        for key in stale:
            del self._histories[key]
        expired.extend(stale)
        if expired:
            expired_entries_removed_total.inc(len(expired))
            logger.debug(f"Removed {len(expired)} expired counter entries")
        counter_entries.set(len(self))
        return len(expired)


# INCR, set the window TTL on first hit, and report the remaining TTL.
# A key that somehow lost its TTL gets a fresh one instead of living forever.
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

# Return the prior history, then move ARGV[1] to the front, cap the list
# at ARGV[2] entries and refresh its TTL.
_PUSH_RECENT_SCRIPT = """
local previous = redis.call('LRANGE', KEYS[1], 0, -1)
redis.call('LREM', KEYS[1], 0, ARGV[1])
redis.call('LPUSH', KEYS[1], ARGV[1])
redis.call('LTRIM', KEYS[1], 0, tonumber(ARGV[2]) - 1)
redis.call('PEXPIRE', KEYS[1], ARGV[3])
return previous
"""


class RedisCounterStore(CounterStore):
    """
    Shared counters in Redis, consistent across every process and host.

    Window expiry is delegated to Redis key TTLs, so there is nothing for
    cleanup_expired() to do.
    """

    backend = "redis"

    def __init__(
        self,
        redis_client: aioredis.Redis,
        key_prefix: str = "gallery:rl:",
        clock: Clock = now_ms,
    ) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._clock = clock
        self._increment = redis_client.register_script(_INCREMENT_SCRIPT)
        self._push_recent = redis_client.register_script(_PUSH_RECENT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def increment_and_get(self, key: str, window_ms: int) -> CounterEntry:
        _check_args(key, window_ms)
        try:
            count, ttl_ms = await self._increment(keys=[self._key(key)], args=[window_ms])
        except Exception as exc:
            store_errors_total.labels(operation="increment", kind="error").inc()
            raise StoreUnavailableError("Redis counter increment failed.") from exc
        return CounterEntry(count=int(count), reset_at_ms=self._clock() + int(ttl_ms))

    async def push_recent(
        self, key: str, value: str, max_items: int, window_ms: int
    ) -> list[str]:
        _check_args(key, window_ms)
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}.")
        try:
            previous = await self._push_recent(
                keys=[self._key(key)], args=[value, max_items, window_ms]
            )
        except Exception as exc:
            store_errors_total.labels(operation="push_recent", kind="error").inc()
            raise StoreUnavailableError("Redis history update failed.") from exc
        return [str(v) for v in previous or []]

    async def peek(self, key: str) -> int:
        try:
            raw = await self._redis.get(self._key(key))
        except Exception as exc:
            store_errors_total.labels(operation="peek", kind="error").inc()
            raise StoreUnavailableError("Redis counter read failed.") from exc
        return int(raw) if raw is not None else 0

    async def cleanup_expired(self) -> int:
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:
            logger.warning(f"Redis ping failed: {exc}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def build_redis_client(redis_url: str) -> aioredis.Redis:
    """
    Create a Redis async client. Connections are opened lazily, so an
    unreachable server surfaces on first use (see CounterStore.ping).

    Args:
        redis_url: Redis connection string (e.g. 'redis://localhost:6379').

    Raises:
        StoreUnavailableError: If the URL cannot be parsed.
    """
    try:
        return aioredis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=1,
            retry_on_timeout=False,
            health_check_interval=30,
        )
    except ValueError as exc:
        logger.error(f"Invalid Redis URL: {exc}")
        raise StoreUnavailableError(
            "Could not configure the Redis client.",
            detail="Check REDIS_URL.",
        ) from exc


async def run_cleanup_loop(store: CounterStore, interval_seconds: float) -> None:
    """
    Sweep expired entries forever, every `interval_seconds`.

    Meant to run as a background task owned by the app lifespan. A failed
    sweep is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.cleanup_expired()
        except Exception as exc:
            store_errors_total.labels(operation="cleanup", kind="error").inc()
            logger.warning(f"Counter cleanup failed: {exc}")
            continue
        if removed:
            logger.debug(f"Cleanup sweep removed {removed} entries")
