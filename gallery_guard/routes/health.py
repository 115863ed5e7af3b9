"""
gallery_guard/routes/health.py

Health and readiness check endpoints.

GET /health  → Liveness probe, is the process running?
GET /ready   → Readiness probe, can the counter store be reached?

Design Decisions:
- Liveness is a cheap check that returns 200 as long as the process
  is alive.
- Readiness pings the counter store. With FailMode.OPEN an unreachable
  store still admits traffic, so the pod reports ready but degraded;
  with FailMode.CLOSED it reports 503 to be taken out of rotation.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gallery_guard.schemas.limit_schema import HealthResponse, ReadinessResponse
from gallery_guard.services.policy_engine import FailMode
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness Check",
    description="Returns 200 if the Gallery Guard process is running.",
)
async def health_check() -> HealthResponse:
    """Liveness probe endpoint."""
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Check",
    description=(
        "Returns 200 when the counter store is reachable, or when it is not "
        "but the limiter fails open. Returns 503 otherwise."
    ),
)
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness probe endpoint."""
    store = request.app.state.counter_store
    engine = request.app.state.policy_engine

    store_ok = await store.ping()
    if not store_ok:
        logger.warning("Readiness: counter store unreachable", backend=store.backend)

    ready = store_ok or engine.fail_mode is FailMode.OPEN
    if store_ok:
        status = "ready"
    elif ready:
        status = "degraded"
    else:
        status = "not_ready"

    return JSONResponse(
        status_code=200 if ready else 503,
        content=ReadinessResponse(
            status=status,
            store_backend=store.backend,
            store_connected=store_ok,
            fail_mode=engine.fail_mode.value,
        ).model_dump(mode="json"),
    )
