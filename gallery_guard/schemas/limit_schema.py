"""
gallery_guard/schemas/limit_schema.py

Pydantic v2 request/response schemas for Gallery Guard's HTTP API.

Design Decisions:
- The caller (the gallery edge API) has already authenticated the user
  and classified the route; requests carry those results, never raw
  HTTP material.
- Responses only carry quota metadata, never the internal counter key
  namespace.
- `ErrorResponse` is the single error shape of the limiter: a
  machine-readable `code` and a human-readable `message`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from gallery_guard.services.policy_engine import EndpointClass


def _blank_to_none(v: str | None) -> str | None:
    if v is None:
        return None
    v = v.strip()
    return v or None


# ── Request schemas ────────────────────────────────────────────

class RateLimitCheckRequest(BaseModel):
    """
    Payload for POST /v1/limits/check.

    Fields:
        endpoint_class: Route class resolved by the caller's router.
        user_id: Authenticated user, if any.
        client_ip: Best-available client address, if any.
    """

    endpoint_class: Annotated[
        EndpointClass,
        Field(description="Endpoint class the request belongs to.", examples=["upload"]),
    ]

    user_id: Annotated[
        str | None,
        Field(max_length=128, description="Authenticated user ID.", examples=["usr_42"]),
    ] = None

    client_ip: Annotated[
        str | None,
        Field(max_length=64, description="Client network address.", examples=["203.0.113.5"]),
    ] = None

    @field_validator("user_id", "client_ip", mode="before")
    @classmethod
    def strip_identity(cls, v: str | None) -> str | None:
        """Treat blank identities as absent."""
        return _blank_to_none(v)


class UploadCheckRequest(BaseModel):
    """Payload for POST /v1/abuse/uploads."""

    user_id: Annotated[str, Field(min_length=1, max_length=128)]

    account_created_at: Annotated[
        datetime,
        Field(description="When the uploader's account was created (ISO 8601)."),
    ]

    fingerprint: Annotated[
        str | None,
        Field(
            max_length=128,
            description="Content fingerprint computed by the image pipeline.",
        ),
    ] = None

    @field_validator("fingerprint", mode="before")
    @classmethod
    def strip_fingerprint(cls, v: str | None) -> str | None:
        return _blank_to_none(v)


class GalleryCreatedRequest(BaseModel):
    """Payload for POST /v1/abuse/galleries."""

    user_id: Annotated[str, Field(min_length=1, max_length=128)]


class LoginRequest(BaseModel):
    """Payload for POST /v1/abuse/logins."""

    user_id: Annotated[str, Field(min_length=1, max_length=128)]

    client_ip: Annotated[str | None, Field(max_length=64)] = None

    @field_validator("client_ip", mode="before")
    @classmethod
    def strip_ip(cls, v: str | None) -> str | None:
        return _blank_to_none(v)


class FailedLoginRequest(BaseModel):
    """Payload for POST /v1/abuse/logins/failed."""

    client_ip: Annotated[str | None, Field(max_length=64)] = None

    @field_validator("client_ip", mode="before")
    @classmethod
    def strip_ip(cls, v: str | None) -> str | None:
        return _blank_to_none(v)


# ── Response schemas ───────────────────────────────────────────

class RateLimitCheckResponse(BaseModel):
    """
    Admission response from POST /v1/limits/check.

    The same values are also sent as X-RateLimit-* headers.
    """

    allow: bool = True
    limit: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_at: datetime
    degraded: bool = False

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "allow": True,
                    "limit": 100,
                    "remaining": 42,
                    "reset_at": "2025-01-01T12:01:00Z",
                    "degraded": False,
                }
            ]
        }
    }


class AbuseFlagSchema(BaseModel):
    """Serialised AbuseFlag."""

    key: str
    reason: str
    severity: str
    observed_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class UploadCheckResponse(BaseModel):
    """Response for an admitted upload (possibly with advisory flags)."""

    allow: bool = True
    flags: list[AbuseFlagSchema] = Field(default_factory=list)


class AbuseSignalResponse(BaseModel):
    """Response for advisory-only signals (galleries, failed logins)."""

    flags: list[AbuseFlagSchema] = Field(default_factory=list)


class CounterPeekResponse(BaseModel):
    """Response for GET /v1/admin/counters/{key}."""

    key: str
    count: int = Field(ge=0)


class CleanupResponse(BaseModel):
    """Response for POST /v1/admin/counters/cleanup."""

    removed: int = Field(ge=0)


# ── Health schemas ─────────────────────────────────────────────

class HealthResponse(BaseModel):
    """Response for GET /health (liveness check)."""

    status: str = "ok"
    service: str = "gallery-guard"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ReadinessResponse(BaseModel):
    """Response for GET /ready (readiness check)."""

    status: str          # "ready" | "degraded" | "not_ready"
    store_backend: str
    store_connected: bool
    fail_mode: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ── Error schema ───────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """
    Error body for all 4xx/5xx responses.

    Fields:
        code: Machine-readable error code (e.g. 'RATE_LIMIT_EXCEEDED').
        message: Human-readable explanation safe to surface to the client.
        retry_after_seconds: Present on 429 responses.
        timestamp: UTC timestamp of the error.
    """

    code: Annotated[str, Field(description="Machine-readable error code.")]

    message: Annotated[str, Field(description="Human-readable error explanation.")]

    retry_after_seconds: Annotated[int | None, Field(ge=1)] = None

    timestamp: Annotated[
        datetime,
        Field(default_factory=lambda: datetime.now(timezone.utc)),
    ]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "code": "RATE_LIMIT_EXCEEDED",
                    "message": "Too many requests. Please try again later.",
                    "retry_after_seconds": 37,
                    "timestamp": "2025-01-01T12:00:00Z",
                }
            ]
        }
    }
