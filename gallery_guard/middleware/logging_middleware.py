"""
gallery_guard/middleware/logging_middleware.py

Access logging for Gallery Guard, one structured line per request.

Each line carries the method, path, status and latency, the client
address (same resolution as the limiter), the request id, and, when
RateLimitMiddleware counted the request, the endpoint class, the key
and whether the decision was degraded.

Design Decisions:
- Outermost middleware: it owns the request id. An incoming X-Request-ID
  from the gallery edge is reused so traces line up across services.
- Probe traffic (/health, /ready, /metrics) logs at DEBUG to keep
  orchestrator polling out of the INFO stream.
- 429s are ordinary traffic for a limiter and stay at INFO; 5xx is ERROR.
- Bodies are never logged.
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from gallery_guard.middleware.rate_limiter import EXEMPT_PATHS, get_client_ip
from gallery_guard.utils.logger import get_logger, request_id_ctx

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns the request id and writes the access log line."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_ctx.set(request_id)
        started = time.monotonic()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as exc:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
            raise
        finally:
            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": status_code,
                "latency_ms": round((time.monotonic() - started) * 1000, 2),
                "ip": get_client_ip(request) or "unknown",
            }
            decision = getattr(request.state, "rate_limit", None)
            if decision is not None:
                fields.update(
                    endpoint_class=decision.endpoint_class.value,
                    rate_limit_key=decision.key,
                    degraded=decision.degraded,
                )

            if request.url.path in EXEMPT_PATHS:
                level = "DEBUG"
            elif status_code >= 500:
                level = "ERROR"
            else:
                level = "INFO"
            logger.bind(**fields).log(level, "HTTP request")
            request_id_ctx.reset(token)
