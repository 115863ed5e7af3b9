"""
gallery_guard/utils/logger.py

Structured logging setup for Gallery Guard using Loguru.

Design Decisions:
- One loguru pipeline for the whole service; modules call get_logger()
  and never touch sinks themselves.
- A patcher stamps every record with the current request_id (from a
  ContextVar set by RequestLoggingMiddleware), so decisions, store
  failures and abuse flags emitted during a request can be joined.
- JSON lines outside development, coloured text in development.
- Rate-limit keys (`user:<id>`, `ip:<addr>`) are logged; API keys and
  request bodies are not. Any bound field that looks like a credential
  is masked before output.
"""

from __future__ import annotations

import json
import os
import sys
from contextvars import ContextVar
from typing import Any

from loguru import logger

SERVICE_NAME = "gallery-guard"

# ── Context variable for per-request correlation ID ──────────
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

_MASKED_FIELDS = frozenset({"api_key", "x_api_key", "authorization", "password", "token"})


def _patch_record(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx.get("") or "-")
    for name in _MASKED_FIELDS.intersection(record["extra"]):
        record["extra"][name] = "***"


def _json_formatter(record: dict[str, Any]) -> str:
    payload = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "service": SERVICE_NAME,
        "env": os.getenv("APP_ENV", "development"),
        "message": record["message"],
        "module": record["module"],
        "line": record["line"],
    }
    payload.update({k: v for k, v in record["extra"].items() if k != "_json"})
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    # Loguru treats the returned string as a format template
    record["extra"]["_json"] = json.dumps(payload, default=str)
    return "{extra[_json]}\n"


_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: 'json' for structured output, 'text' for human-readable.
        log_file: Optional path; gets a rotated JSON copy of every record.
    """
    logger.remove()
    logger.configure(patcher=_patch_record)

    json_output = log_format == "json"
    logger.add(
        sys.stdout,
        format=_json_formatter if json_output else _TEXT_FORMAT,  # type: ignore[arg-type]
        level=level.upper(),
        colorize=not json_output,
        backtrace=not json_output,
        diagnose=False,
    )

    if log_file:
        logger.add(
            log_file,
            format=_json_formatter,  # type: ignore[arg-type]
            rotation="100 MB",
            retention="14 days",
            compression="gz",
            level=level.upper(),
            enqueue=True,
        )

    logger.debug(f"Logging initialised at {level.upper()} ({log_format})")


def get_logger(name: str) -> "logger":  # type: ignore[valid-type]
    """Return a module-specific logger bound with its name."""
    return logger.bind(logger_name=name)


# ── Initialise from environment on import ────────────────────
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    log_format="text" if os.getenv("APP_ENV", "development") == "development" else "json",
    log_file=os.getenv("LOG_FILE") or None,
)
