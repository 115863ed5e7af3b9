"""
gallery_guard/utils/exceptions.py

Custom exception hierarchy for Gallery Guard.

Design Decisions:
- All custom exceptions inherit from GuardError so callers can
  catch the broad class or specific subclasses.
- Each exception carries a machine-readable `error_code` that the
  HTTP layer maps to an appropriate status code.
- StoreUnavailableError is internal-only: the policy engine turns it
  into a fail-open (or fail-closed) decision and it never reaches a
  client response.
"""

from __future__ import annotations

from typing import Any


class GuardError(Exception):
    """Root exception for all Gallery Guard errors."""

    error_code: str = "GUARD_ERROR"
    http_status: int = 500

    def __init__(self, message: str, detail: str = "", **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.extra = kwargs


# ── Counter store errors ──────────────────────────────────────

class StoreUnavailableError(GuardError):
    """Raised when the counter backend cannot serve an operation."""

    error_code = "STORE_UNAVAILABLE"
    http_status = 503


# ── Configuration errors ──────────────────────────────────────

class InvalidConfigurationError(GuardError):
    """Raised at startup when a policy or environment value is malformed."""

    error_code = "INVALID_CONFIGURATION"
    http_status = 500


# ── Auth / Rate-limit errors ──────────────────────────────────

class AuthenticationError(GuardError):
    """Raised when an API key is missing or invalid."""

    error_code = "AUTHENTICATION_FAILED"
    http_status = 401


class RateLimitExceededError(GuardError):
    """Raised when a caller exceeds their allowed request rate."""

    error_code = "RATE_LIMIT_EXCEEDED"
    http_status = 429
