"""
gallery_guard/services/policy_engine.py

Admission decisions for Gallery Guard.

Flow:
    1. Caller resolves the endpoint class (routing concern)
    2. Derive the rate-limit key: user, then IP, then "unknown"
    3. Count the request in the counter store (bounded by a timeout)
    4. Compare the count against the class quota
    5. Return an admit / reject decision with quota metadata

Design Decisions:
- The Nth request of a window is admitted and the N+1th rejected
  (`count > max_requests` rejects). The rejected check still counts.
- Every endpoint class has its own counter namespace, so an upload
  that also passes the general limiter consumes both quotas
  independently.
- Store failures and timeouts never raise out of evaluate(). The
  configured FailMode decides: OPEN admits with degraded=True, CLOSED
  rejects with the regular 429 shape.
- Policies are validated when the engine is built, so a missing class
  fails at process start rather than on a live request.
"""

from __future__ import annotations

import asyncio
import enum
import math
import time
from dataclasses import dataclass
from typing import Mapping

from gallery_guard.services.counter_store import Clock, CounterEntry, CounterStore, now_ms
from gallery_guard.utils.exceptions import InvalidConfigurationError, StoreUnavailableError
from gallery_guard.utils.logger import get_logger
from gallery_guard.utils.metrics import (
    rate_limit_decisions_total,
    rate_limit_hits_total,
    store_errors_total,
    store_latency_seconds,
)

logger = get_logger(__name__)

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
UNKNOWN_CLIENT = "unknown"


class EndpointClass(str, enum.Enum):
    """Named groups of API routes that share one rate-limit policy."""

    GENERAL = "general"
    UPLOAD = "upload"
    AUTH = "auth"
    PUBLIC = "public"
    MESSAGE = "message"


class FailMode(str, enum.Enum):
    """What to do when the counter store cannot answer."""

    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one endpoint class: `max_requests` per `window_ms`."""

    window_ms: int
    max_requests: int


DEFAULT_POLICIES: Mapping[EndpointClass, RateLimitConfig] = {
    EndpointClass.GENERAL: RateLimitConfig(window_ms=60_000, max_requests=100),
    EndpointClass.UPLOAD: RateLimitConfig(window_ms=3_600_000, max_requests=10),
    EndpointClass.AUTH: RateLimitConfig(window_ms=60_000, max_requests=5),
    EndpointClass.PUBLIC: RateLimitConfig(window_ms=60_000, max_requests=200),
    EndpointClass.MESSAGE: RateLimitConfig(window_ms=3_600_000, max_requests=10),
}


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one admission check.

    Attributes:
        allowed: True if the request may proceed.
        endpoint_class: Class the request was counted against.
        key: Rate-limit identity (`user:<id>` / `ip:<addr>`).
        limit: Configured max requests per window.
        remaining: Requests left in the current window (never negative).
        reset_at_ms: Epoch milliseconds when the window resets.
        retry_after_seconds: Seconds until the window resets (>= 1).
        code: RATE_LIMIT_EXCEEDED on rejection, else None.
        degraded: True when the store failed and the fail mode decided.
    """

    allowed: bool
    endpoint_class: EndpointClass
    key: str
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int
    code: str | None = None
    degraded: bool = False

    def headers(self) -> dict[str, str]:
        """Advisory response headers; Retry-After only on rejection."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at_ms / 1000)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def derive_rate_limit_key(user_id: str | None, client_ip: str | None) -> str:
    """
    Map a caller to its rate-limit identity.

    Authenticated callers are counted per user, anonymous ones per
    address. Callers with neither all share the `ip:unknown` bucket.
    """
    if user_id and user_id.strip():
        return f"user:{user_id.strip()}"
    if client_ip and client_ip.strip():
        return f"ip:{client_ip.strip()}"
    return f"ip:{UNKNOWN_CLIENT}"


def validate_policies(policies: Mapping[EndpointClass, RateLimitConfig]) -> None:
    """Raise InvalidConfigurationError unless every class has a sane policy."""
    missing = [c.value for c in EndpointClass if c not in policies]
    if missing:
        raise InvalidConfigurationError(
            f"No rate-limit policy configured for: {', '.join(missing)}."
        )
    for endpoint_class, config in policies.items():
        if config.window_ms <= 0 or config.max_requests <= 0:
            raise InvalidConfigurationError(
                f"Rate-limit policy for '{endpoint_class.value}' must have a positive "
                f"window and request count."
            )


class PolicyEngine:
    """
    Decides whether to admit a request and reports quota metadata.

    Args:
        store: Counter store shared with the abuse monitor.
        policies: Quota per endpoint class; validated on construction.
        fail_mode: Behaviour when the store errors or times out.
        store_timeout_ms: Upper bound on a single store call.
        clock: Epoch-millisecond clock (injectable for tests).
    """

    def __init__(
        self,
        store: CounterStore,
        policies: Mapping[EndpointClass, RateLimitConfig] = DEFAULT_POLICIES,
        fail_mode: FailMode = FailMode.OPEN,
        store_timeout_ms: int = 250,
        clock: Clock = now_ms,
    ) -> None:
        validate_policies(policies)
        self._store = store
        self._policies = dict(policies)
        self._fail_mode = fail_mode
        self._timeout = store_timeout_ms / 1000
        self._clock = clock

    @property
    def fail_mode(self) -> FailMode:
        return self._fail_mode

    def policy_for(self, endpoint_class: EndpointClass) -> RateLimitConfig:
        return self._policies[endpoint_class]

    async def evaluate(
        self,
        endpoint_class: EndpointClass,
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> RateLimitDecision:
        """
        Count one request and decide whether it may proceed.

        Never raises for store problems; see FailMode.
        """
        config = self._policies[endpoint_class]
        key = derive_rate_limit_key(user_id, client_ip)

        started = time.monotonic()
        try:
            entry = await asyncio.wait_for(
                self._store.increment_and_get(f"{endpoint_class.value}:{key}", config.window_ms),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            store_errors_total.labels(operation="increment", kind="timeout").inc()
            logger.warning(
                f"Rate-limit store timed out after {self._timeout * 1000:.0f}ms; "
                f"failing {self._fail_mode.value} for {key}"
            )
            return self._degraded_decision(endpoint_class, key, config)
        except StoreUnavailableError as exc:
            logger.warning(
                f"Rate-limit store unavailable ({exc}); failing {self._fail_mode.value} for {key}"
            )
            return self._degraded_decision(endpoint_class, key, config)
        except Exception as exc:
            store_errors_total.labels(operation="increment", kind="unexpected").inc()
            logger.error(f"Unexpected rate-limit store failure: {exc!r}; failing {self._fail_mode.value}")
            return self._degraded_decision(endpoint_class, key, config)
        finally:
            store_latency_seconds.labels(backend=self._store.backend).observe(
                time.monotonic() - started
            )

        return self._decide(endpoint_class, key, config, entry)

    def _decide(
        self,
        endpoint_class: EndpointClass,
        key: str,
        config: RateLimitConfig,
        entry: CounterEntry,
    ) -> RateLimitDecision:
        retry_after = max(1, math.ceil((entry.reset_at_ms - self._clock()) / 1000))
        allowed = entry.count <= config.max_requests

        if allowed:
            rate_limit_decisions_total.labels(endpoint_class=endpoint_class.value, outcome="allowed").inc()
        else:
            rate_limit_decisions_total.labels(endpoint_class=endpoint_class.value, outcome="rejected").inc()
            rate_limit_hits_total.labels(endpoint_class=endpoint_class.value).inc()
            logger.info(
                f"Rate limit exceeded for {key} on {endpoint_class.value} "
                f"({entry.count}/{config.max_requests}); retry in {retry_after}s"
            )

        return RateLimitDecision(
            allowed=allowed,
            endpoint_class=endpoint_class,
            key=key,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - entry.count),
            reset_at_ms=entry.reset_at_ms,
            retry_after_seconds=retry_after,
            code=None if allowed else RATE_LIMIT_EXCEEDED,
        )

    def _degraded_decision(
        self,
        endpoint_class: EndpointClass,
        key: str,
        config: RateLimitConfig,
    ) -> RateLimitDecision:
        allowed = self._fail_mode is FailMode.OPEN
        rate_limit_decisions_total.labels(
            endpoint_class=endpoint_class.value,
            outcome="degraded_allowed" if allowed else "degraded_rejected",
        ).inc()
        return RateLimitDecision(
            allowed=allowed,
            endpoint_class=endpoint_class,
            key=key,
            limit=config.max_requests,
            remaining=config.max_requests if allowed else 0,
            reset_at_ms=self._clock() + config.window_ms,
            retry_after_seconds=1,
            code=None if allowed else RATE_LIMIT_EXCEEDED,
            degraded=True,
        )
