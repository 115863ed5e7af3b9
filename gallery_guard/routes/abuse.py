"""
gallery_guard/routes/abuse.py

Abuse-signal routes called by the gallery API around specific actions.

Endpoints:
  POST /v1/abuse/uploads          → Before storing an artwork upload
  POST /v1/abuse/galleries        → After a gallery is created
  POST /v1/abuse/logins           → After a successful login
  POST /v1/abuse/logins/failed    → After a failed login attempt

Design Decisions:
- Only the upload check can block (new-account ceiling, or duplicate
  uploads when hard-reject is configured). Blocking uses the same 429
  shape as the rate limiter.
- Gallery and login signals are advisory: they always return 200 with
  whatever flags were raised.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from gallery_guard.schemas.limit_schema import (
    AbuseFlagSchema,
    AbuseSignalResponse,
    ErrorResponse,
    FailedLoginRequest,
    GalleryCreatedRequest,
    LoginRequest,
    UploadCheckRequest,
    UploadCheckResponse,
)
from gallery_guard.services.abuse_monitor import AbuseFlag, AbuseMonitor
from gallery_guard.utils.exceptions import RateLimitExceededError
from gallery_guard.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/abuse", tags=["Abuse signals"])


def _get_abuse_monitor(request: Request) -> AbuseMonitor:
    """FastAPI dependency: retrieve AbuseMonitor from app state."""
    return request.app.state.abuse_monitor  # type: ignore[no-any-return]


def _serialise(flags: list[AbuseFlag]) -> list[AbuseFlagSchema]:
    return [AbuseFlagSchema(**flag.to_dict()) for flag in flags]


@router.post(
    "/uploads",
    response_model=UploadCheckResponse,
    responses={429: {"model": ErrorResponse, "description": "Upload ceiling reached"}},
    summary="Run upload abuse heuristics",
)
async def check_upload(
    body: UploadCheckRequest,
    monitor: AbuseMonitor = Depends(_get_abuse_monitor),
) -> UploadCheckResponse | JSONResponse:
    verdict = await monitor.check_upload(
        body.user_id,
        body.account_created_at,
        fingerprint=body.fingerprint,
    )
    if not verdict.allowed:
        retry_after = verdict.retry_after_seconds or 1
        logger.info(f"Upload blocked for user:{body.user_id}: {verdict.reason}")
        return JSONResponse(
            status_code=RateLimitExceededError.http_status,
            content=ErrorResponse(
                code=RateLimitExceededError.error_code,
                message=verdict.reason,
                retry_after_seconds=retry_after,
            ).model_dump(mode="json"),
            headers={"Retry-After": str(retry_after)},
        )
    return UploadCheckResponse(allow=True, flags=_serialise(verdict.flags))


@router.post(
    "/galleries",
    response_model=AbuseSignalResponse,
    summary="Record a gallery creation",
)
async def record_gallery_created(
    body: GalleryCreatedRequest,
    monitor: AbuseMonitor = Depends(_get_abuse_monitor),
) -> AbuseSignalResponse:
    flags = await monitor.record_gallery_created(body.user_id)
    return AbuseSignalResponse(flags=_serialise(flags))


@router.post(
    "/logins/failed",
    response_model=AbuseSignalResponse,
    summary="Record a failed login attempt",
)
async def record_failed_login(
    body: FailedLoginRequest,
    monitor: AbuseMonitor = Depends(_get_abuse_monitor),
) -> AbuseSignalResponse:
    flags = await monitor.record_failed_login(body.client_ip)
    return AbuseSignalResponse(flags=_serialise(flags))


@router.post(
    "/logins",
    response_model=AbuseSignalResponse,
    summary="Record a successful login",
)
async def record_login(
    body: LoginRequest,
    monitor: AbuseMonitor = Depends(_get_abuse_monitor),
) -> AbuseSignalResponse:
    flags = await monitor.record_login(body.user_id, body.client_ip)
    return AbuseSignalResponse(flags=_serialise(flags))
