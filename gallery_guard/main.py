"""
gallery_guard/main.py

FastAPI application entry point for Gallery Guard.

Startup sequence:
  1. Load environment variables from .env
  2. Configure structured logging
  3. Resolve settings (fails loudly on bad configuration)
  4. Build the counter store, audit sink, policy engine, abuse monitor
  5. Register middleware (logging, rate limiting, API key auth)
  6. Mount routers
  7. Expose Prometheus metrics endpoint
  8. (lifespan) check store connectivity, start the cleanup task

Shutdown sequence:
  1. Cancel the cleanup task
  2. Close the counter store / Redis connection

Design Decisions:
- Services are built in create_app() and attached to app.state, so
  routes reach them via Depends and tests get a fully wired app without
  running the lifespan. Nothing below the app is a global singleton.
- An unreachable store at startup is logged, not fatal: the policy
  engine already knows how to fail open or closed per request.
- /v1/admin/* is itself rate limited with the auth class so the API key
  cannot be brute forced. Decision routes are not counted; they are the
  limiter.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from dotenv import load_dotenv

# Load .env BEFORE importing anything that reads env vars
load_dotenv()

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException

from gallery_guard.middleware.auth import APIKeyMiddleware
from gallery_guard.middleware.logging_middleware import RequestLoggingMiddleware
from gallery_guard.middleware.rate_limiter import RateLimitMiddleware
from gallery_guard.routes.abuse import router as abuse_router
from gallery_guard.routes.health import router as health_router
from gallery_guard.routes.limits import router as limits_router
from gallery_guard.schemas.limit_schema import ErrorResponse
from gallery_guard.services.abuse_monitor import AbuseMonitor
from gallery_guard.services.audit_sink import AuditSink, LoggingAuditSink, RedisStreamAuditSink
from gallery_guard.services.counter_store import (
    Clock,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    build_redis_client,
    now_ms,
    run_cleanup_loop,
)
from gallery_guard.services.policy_engine import EndpointClass, PolicyEngine
from gallery_guard.utils.config import GuardSettings, load_settings
from gallery_guard.utils.exceptions import GuardError
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

# Paths of this service that go through RateLimitMiddleware
GUARDED_ROUTES: tuple[tuple[str, EndpointClass], ...] = (
    ("/v1/admin/", EndpointClass.AUTH),
)


def build_counter_store(
    settings: GuardSettings,
    clock: Clock = now_ms,
    redis_client: aioredis.Redis | None = None,
) -> CounterStore:
    """Pick the counter backend named by GUARD_STORE_BACKEND."""
    if settings.store_backend == "redis":
        client = redis_client or build_redis_client(settings.redis_url)
        return RedisCounterStore(client, clock=clock)
    return InMemoryCounterStore(clock=clock)


def build_audit_sink(
    settings: GuardSettings,
    redis_client: aioredis.Redis | None = None,
) -> AuditSink:
    """Pick the abuse-flag sink named by GUARD_AUDIT_SINK."""
    if settings.audit_sink == "redis":
        client = redis_client or build_redis_client(settings.redis_url)
        return RedisStreamAuditSink(client, stream=settings.audit_stream)
    return LoggingAuditSink()


# ── Application lifespan ───────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup:
        - Check counter store connectivity
        - Start the background cleanup sweep

    Shutdown:
        - Stop the sweep
        - Close the store
    """
    logger.info("🚀 Gallery Guard starting up...")
    settings: GuardSettings = app.state.settings
    store: CounterStore = app.state.counter_store

    if not await store.ping():
        logger.warning(
            f"Counter store '{store.backend}' is unreachable at startup; "
            f"requests will fail {settings.fail_mode.value} until it recovers"
        )

    cleanup_task = asyncio.create_task(
        run_cleanup_loop(store, settings.cleanup_interval_seconds),
        name="gallery-guard-cleanup",
    )
    logger.info("✅ Gallery Guard is ready to serve requests")

    yield  # Application runs here

    logger.info("🛑 Gallery Guard shutting down...")
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await store.close()
    logger.info("Shutdown complete")


# ── FastAPI app factory ────────────────────────────────────────

def create_app(
    settings: GuardSettings | None = None,
    clock: Clock = now_ms,
    redis_client: aioredis.Redis | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Resolved settings; loaded from the environment if omitted.
        clock: Epoch-millisecond clock shared by every component.
        redis_client: Pre-built Redis client (tests, shared pools).

    Raises:
        InvalidConfigurationError: On malformed settings or policies.
    """
    settings = settings or load_settings()

    app = FastAPI(
        title="Gallery Guard API",
        description=(
            "Rate limiting and abuse detection for the artwork gallery platform.\n\n"
            "All `/v1` endpoints require an `X-API-Key` header."
        ),
        version="1.0.0",
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url="/redoc" if settings.app_env != "production" else None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Services ───────────────────────────────────────────────
    if redis_client is None and "redis" in (settings.store_backend, settings.audit_sink):
        redis_client = build_redis_client(settings.redis_url)

    store = build_counter_store(settings, clock=clock, redis_client=redis_client)
    engine = PolicyEngine(
        store,
        policies=settings.policies,
        fail_mode=settings.fail_mode,
        store_timeout_ms=settings.store_timeout_ms,
        clock=clock,
    )
    monitor = AbuseMonitor(
        store,
        build_audit_sink(settings, redis_client=redis_client),
        settings=settings.abuse,
        clock=clock,
        store_timeout_ms=settings.store_timeout_ms,
    )

    app.state.settings = settings
    app.state.counter_store = store
    app.state.policy_engine = engine
    app.state.abuse_monitor = monitor

    # ── Middleware (reverse order: last added runs first) ──

    # 1. API key authentication (innermost)
    app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    # 2. Rate limiting, ahead of auth so key guessing is throttled
    app.add_middleware(
        RateLimitMiddleware,
        engine=engine,
        route_classes=GUARDED_ROUTES,
        default_class=None,
    )

    # 3. Request/response logging (outermost, logs every request)
    app.add_middleware(RequestLoggingMiddleware)

    # ── Exception handlers ─────────────────────────────────────
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        code = "NOT_FOUND" if exc.status_code == 404 else f"HTTP_{exc.status_code}"
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(code=code, message=str(exc.detail)).model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(GuardError)
    async def guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
        logger.error(f"{exc.error_code}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(code=exc.error_code, message=exc.message).model_dump(mode="json"),
        )

    # ── Routers ────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(limits_router)
    app.include_router(abuse_router)

    # ── Prometheus metrics ─────────────────────────────────────
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        excluded_handlers=["/health", "/ready"],
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    logger.info(
        "FastAPI application created",
        env=settings.app_env,
        store=store.backend,
        fail_mode=settings.fail_mode.value,
    )
    return app


# ── Application instance ───────────────────────────────────────
# Imported by uvicorn: uvicorn gallery_guard.main:app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gallery_guard.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("APP_ENV", "development") == "development",
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
