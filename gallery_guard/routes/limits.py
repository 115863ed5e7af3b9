"""
gallery_guard/routes/limits.py

Rate-limit decision and counter administration routes.

Endpoints:
  POST /v1/limits/check                → Count a request and decide
  GET  /v1/admin/counters/{key}        → Peek at a raw counter
  POST /v1/admin/counters/cleanup      → Sweep expired counters now

Design Decisions:
- The caller has already authenticated the user and classified the
  route; this service only counts and decides.
- An admitted check returns 200 with the decision in the body and in
  X-RateLimit-* headers; a rejected one returns the standard 429.
- PolicyEngine and CounterStore are injected from app.state via
  FastAPI's Depends pattern.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from gallery_guard.middleware.rate_limiter import rate_limited_response
from gallery_guard.schemas.limit_schema import (
    CleanupResponse,
    CounterPeekResponse,
    ErrorResponse,
    RateLimitCheckRequest,
    RateLimitCheckResponse,
)
from gallery_guard.services.counter_store import CounterStore
from gallery_guard.services.policy_engine import PolicyEngine
from gallery_guard.utils.exceptions import StoreUnavailableError
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["Rate limits"])


def _get_policy_engine(request: Request) -> PolicyEngine:
    """FastAPI dependency: retrieve PolicyEngine from app state."""
    return request.app.state.policy_engine  # type: ignore[no-any-return]


def _get_counter_store(request: Request) -> CounterStore:
    """FastAPI dependency: retrieve CounterStore from app state."""
    return request.app.state.counter_store  # type: ignore[no-any-return]


@router.post(
    "/limits/check",
    response_model=RateLimitCheckResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
    summary="Count a request and decide whether it may proceed",
)
async def check_rate_limit(
    body: RateLimitCheckRequest,
    response: Response,
    engine: PolicyEngine = Depends(_get_policy_engine),
) -> RateLimitCheckResponse | JSONResponse:
    decision = await engine.evaluate(
        body.endpoint_class,
        user_id=body.user_id,
        client_ip=body.client_ip,
    )
    if not decision.allowed:
        return rate_limited_response(decision)

    response.headers.update(decision.headers())
    return RateLimitCheckResponse(
        allow=True,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=datetime.fromtimestamp(decision.reset_at_ms / 1000, tz=timezone.utc),
        degraded=decision.degraded,
    )


@router.get(
    "/admin/counters/{key:path}",
    response_model=CounterPeekResponse,
    responses={503: {"model": ErrorResponse, "description": "Counter store unavailable"}},
    summary="Read a counter without incrementing it",
)
async def peek_counter(
    key: str,
    store: CounterStore = Depends(_get_counter_store),
) -> CounterPeekResponse:
    try:
        count = await store.peek(key)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return CounterPeekResponse(key=key, count=count)


@router.post(
    "/admin/counters/cleanup",
    response_model=CleanupResponse,
    summary="Remove expired counters immediately",
)
async def cleanup_counters(
    store: CounterStore = Depends(_get_counter_store),
) -> CleanupResponse:
    removed = await store.cleanup_expired()
    logger.info(f"Manual counter cleanup removed {removed} entries")
    return CleanupResponse(removed=removed)
