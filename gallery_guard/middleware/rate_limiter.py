"""
gallery_guard/middleware/rate_limiter.py

Starlette middleware that applies the PolicyEngine to incoming requests.

Design Decisions:
- Classification is a static, ordered prefix table supplied by the app;
  the first matching prefix wins and unmatched paths fall back to the
  default class (or are skipped when no default is given).
- Identity comes from `request.state.user_id`, populated by whatever
  auth layer runs upstream. Anonymous callers are keyed by address.
- Client address: CF-Connecting-IP, then the first X-Forwarded-For hop,
  then X-Real-IP, then the socket peer. With none of those the caller
  lands in the shared `ip:unknown` bucket.
- Health, readiness and metrics probes are never counted.
- The 429 body is the ErrorResponse shape; admitted responses get
  advisory X-RateLimit-* headers.
"""

from __future__ import annotations

from typing import Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from gallery_guard.schemas.limit_schema import ErrorResponse
from gallery_guard.services.policy_engine import (
    RATE_LIMIT_EXCEEDED,
    EndpointClass,
    PolicyEngine,
    RateLimitDecision,
)
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

EXEMPT_PATHS: frozenset[str] = frozenset({
    "/health",
    "/ready",
    "/metrics",
    "/api/health",
})

RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."


def get_client_ip(request: Request) -> str | None:
    """Best-available client address, or None when nothing is known."""
    headers = request.headers
    cf_ip = headers.get("CF-Connecting-IP", "").strip()
    if cf_ip:
        return cf_ip
    forwarded = headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return None


def rate_limited_response(decision: RateLimitDecision, message: str = RATE_LIMITED_MESSAGE) -> JSONResponse:
    """Render a rejection as 429 + Retry-After + ErrorResponse body."""
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            code=decision.code or RATE_LIMIT_EXCEEDED,
            message=message,
            retry_after_seconds=decision.retry_after_seconds,
        ).model_dump(mode="json"),
        headers=decision.headers(),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Counts every classified request and rejects callers over quota.

    Args:
        app: Downstream ASGI app.
        engine: Shared PolicyEngine.
        route_classes: Ordered (path prefix, endpoint class) pairs.
        default_class: Class for paths matching no prefix; None skips them.
        exempt_paths: Exact paths that are never counted.
    """

    def __init__(
        self,
        app: ASGIApp,
        engine: PolicyEngine,
        route_classes: Sequence[tuple[str, EndpointClass]] = (),
        default_class: EndpointClass | None = EndpointClass.GENERAL,
        exempt_paths: frozenset[str] = EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self._engine = engine
        self._route_classes = tuple(route_classes)
        self._default_class = default_class
        self._exempt = exempt_paths

    def classify(self, path: str) -> EndpointClass | None:
        for prefix, endpoint_class in self._route_classes:
            if path.startswith(prefix):
                return endpoint_class
        return self._default_class

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in self._exempt:
            return await call_next(request)

        endpoint_class = self.classify(path)
        if endpoint_class is None:
            return await call_next(request)

        decision = await self._engine.evaluate(
            endpoint_class,
            user_id=getattr(request.state, "user_id", None),
            client_ip=get_client_ip(request),
        )
        request.state.rate_limit = decision

        if not decision.allowed:
            return rate_limited_response(decision)

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
