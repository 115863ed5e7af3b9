"""
gallery_guard/middleware/auth.py

Service API key authentication middleware for Gallery Guard.

Design Decisions:
- Only the gallery's own edge workers and admin tooling talk to this
  service, so a shared service key in X-API-Key is enough.
- Keys are compared using hmac.compare_digest() to prevent
  timing attacks.
- The key lives in the API_KEY environment variable, never in code.
- Routes outside PROTECTED_PREFIX (health/metrics/docs) are open.
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from gallery_guard.schemas.limit_schema import ErrorResponse
from gallery_guard.utils.exceptions import AuthenticationError
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

PROTECTED_PREFIX = "/v1/"


class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Validates the X-API-Key header on every /v1/ endpoint.

    The expected key is taken from the constructor or, failing that,
    from the API_KEY environment variable.
    """

    def __init__(self, app: object, api_key: str | None = None) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._expected_key = api_key or os.environ.get("API_KEY", "")
        if not self._expected_key:
            logger.warning(
                "API_KEY is not set! All /v1 endpoints will be inaccessible. "
                "Set API_KEY in your .env file."
            )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        provided_key = request.headers.get("X-API-Key", "")

        # Timing-safe comparison
        if not self._expected_key or not hmac.compare_digest(
            provided_key.encode(), self._expected_key.encode()
        ):
            logger.warning(
                "Unauthorised request",
                path=request.url.path,
                ip=request.client.host if request.client else "unknown",
            )
            return JSONResponse(
                status_code=AuthenticationError.http_status,
                content=ErrorResponse(
                    code=AuthenticationError.error_code,
                    message="Missing or invalid X-API-Key header.",
                ).model_dump(mode="json"),
            )

        return await call_next(request)
