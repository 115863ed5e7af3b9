"""
gallery_guard/utils/config.py

Environment-driven configuration for Gallery Guard.

Design Decisions:
- Everything is read from environment variables (optionally seeded
  from .env by main.py) exactly once, at process start.
- Malformed values raise InvalidConfigurationError immediately so a
  misconfigured deployment fails loudly instead of per request.
- Rate-limit overrides use the compact "<max>/<window seconds>" form,
  e.g. RATE_LIMIT_UPLOAD="20/3600".
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from gallery_guard.services.abuse_monitor import AbuseSettings
from gallery_guard.services.policy_engine import (
    DEFAULT_POLICIES,
    EndpointClass,
    FailMode,
    RateLimitConfig,
    validate_policies,
)
from gallery_guard.utils.exceptions import InvalidConfigurationError

_DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class GuardSettings:
    """Process-wide settings resolved from the environment."""

    app_env: str = "development"
    api_key: str = ""
    store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    fail_mode: FailMode = FailMode.OPEN
    store_timeout_ms: int = 250
    cleanup_interval_seconds: float = 60.0
    audit_sink: str = "log"
    audit_stream: str = "gallery:abuse-flags"
    policies: Mapping[EndpointClass, RateLimitConfig] = field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )
    abuse: AbuseSettings = field(default_factory=AbuseSettings)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(f"{name} must be an integer, got {raw!r}.") from exc
    if value <= 0:
        raise InvalidConfigurationError(f"{name} must be positive, got {value}.")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_choice(env: Mapping[str, str], name: str, default: str, choices: tuple[str, ...]) -> str:
    value = env.get(name, default).strip().lower() or default
    if value not in choices:
        raise InvalidConfigurationError(
            f"{name} must be one of {', '.join(choices)}; got {value!r}."
        )
    return value


def parse_policy(name: str, raw: str) -> RateLimitConfig:
    """Parse a "<max>/<window seconds>" override into a RateLimitConfig."""
    try:
        max_part, window_part = raw.split("/", 1)
        config = RateLimitConfig(
            window_ms=int(window_part) * 1000,
            max_requests=int(max_part),
        )
    except ValueError as exc:
        raise InvalidConfigurationError(
            f"{name} must look like '<max>/<window seconds>', got {raw!r}."
        ) from exc
    if config.window_ms <= 0 or config.max_requests <= 0:
        raise InvalidConfigurationError(f"{name} values must be positive, got {raw!r}.")
    return config


def _load_policies(env: Mapping[str, str]) -> dict[EndpointClass, RateLimitConfig]:
    policies = dict(DEFAULT_POLICIES)
    for endpoint_class in EndpointClass:
        name = f"RATE_LIMIT_{endpoint_class.name}"
        raw = env.get(name)
        if raw:
            policies[endpoint_class] = parse_policy(name, raw)
    validate_policies(policies)
    return policies


def _load_abuse_settings(env: Mapping[str, str]) -> AbuseSettings:
    defaults = AbuseSettings()
    return AbuseSettings(
        new_account_grace_period_ms=_env_int(
            env, "NEW_ACCOUNT_GRACE_PERIOD_DAYS",
            defaults.new_account_grace_period_ms // _DAY_MS,
        ) * _DAY_MS,
        new_account_daily_upload_limit=_env_int(
            env, "NEW_ACCOUNT_DAILY_UPLOAD_LIMIT", defaults.new_account_daily_upload_limit
        ),
        duplicate_window_ms=_env_int(
            env, "DUPLICATE_UPLOAD_WINDOW_SECONDS", defaults.duplicate_window_ms // 1000
        ) * 1000,
        duplicate_hard_reject=_env_bool(
            env, "DUPLICATE_UPLOAD_HARD_REJECT", defaults.duplicate_hard_reject
        ),
        rapid_upload_threshold=_env_int(
            env, "RAPID_UPLOAD_THRESHOLD", defaults.rapid_upload_threshold
        ),
        bulk_gallery_threshold=_env_int(
            env, "BULK_GALLERY_THRESHOLD", defaults.bulk_gallery_threshold
        ),
        failed_login_threshold=_env_int(
            env, "FAILED_LOGIN_THRESHOLD", defaults.failed_login_threshold
        ),
        login_ip_history_size=_env_int(
            env, "LOGIN_IP_HISTORY_SIZE", defaults.login_ip_history_size
        ),
    )


def load_settings(env: Mapping[str, str] | None = None) -> GuardSettings:
    """
    Build GuardSettings from the environment.

    Args:
        env: Mapping to read from; defaults to os.environ.

    Raises:
        InvalidConfigurationError: If any value is malformed.
    """
    env = os.environ if env is None else env
    return GuardSettings(
        app_env=env.get("APP_ENV", "development"),
        api_key=env.get("API_KEY", ""),
        store_backend=_env_choice(env, "GUARD_STORE_BACKEND", "memory", ("memory", "redis")),
        redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
        fail_mode=FailMode(_env_choice(env, "GUARD_FAIL_MODE", "open", ("open", "closed"))),
        store_timeout_ms=_env_int(env, "GUARD_STORE_TIMEOUT_MS", 250),
        cleanup_interval_seconds=float(_env_int(env, "GUARD_CLEANUP_INTERVAL_SECONDS", 60)),
        audit_sink=_env_choice(env, "GUARD_AUDIT_SINK", "log", ("log", "redis")),
        audit_stream=env.get("GUARD_AUDIT_STREAM", "gallery:abuse-flags"),
        policies=_load_policies(env),
        abuse=_load_abuse_settings(env),
    )
