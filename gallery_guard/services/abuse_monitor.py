"""
gallery_guard/services/abuse_monitor.py

Context-aware abuse heuristics layered on the counter store.

Heuristics:
  1. New-account daily upload ceiling (hard limit)
  2. Duplicate upload of the same content fingerprint (advisory)
  3. Rapid uploads within one minute (advisory)
  4. Bulk gallery creation within one hour (advisory)
  5. Failed-login bursts from one address (advisory)
  6. Login from an address outside the user's recent history (advisory)

Design Decisions:
- Account age is derived from (now, created_at, grace period) on every
  check. There is no stored "is new" flag that could drift.
- All heuristics use the same CounterStore as the policy engine, with
  their own key namespaces (e.g. `user:<id>:daily-uploads`).
- Each heuristic fails open: a store error or a store call exceeding
  the store timeout is logged, counted in metrics and the heuristic is
  skipped. Abuse detection never blocks an action because it broke.
- Flags are emitted to an AuditSink, de-duplicated so the same reason
  for the same subject is reported at most once per dedupe window. A
  flag only counts as reported once the sink accepted it.
- UploadVerdict is a dataclass (not Pydantic) as it's an internal
  object; the route layer maps it onto the response schema.
"""

from __future__ import annotations

import asyncio
import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, TypeVar

from gallery_guard.services.audit_sink import AuditSink
from gallery_guard.services.counter_store import Clock, CounterEntry, CounterStore, now_ms
from gallery_guard.utils.logger import get_logger
from gallery_guard.utils.metrics import abuse_check_failures_total, abuse_flags_total

logger = get_logger(__name__)

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS

T = TypeVar("T")


class AbuseReason(str, enum.Enum):
    DUPLICATE_RAPID_UPLOAD = "DUPLICATE_RAPID_UPLOAD"
    NEW_ACCOUNT_UPLOAD_LIMIT = "NEW_ACCOUNT_UPLOAD_LIMIT"
    RAPID_UPLOADS = "RAPID_UPLOADS"
    BULK_GALLERY_CREATION = "BULK_GALLERY_CREATION"
    FAILED_LOGIN_BURST = "FAILED_LOGIN_BURST"
    UNUSUAL_LOGIN_IP = "UNUSUAL_LOGIN_IP"


@dataclass(frozen=True)
class AbuseFlag:
    """
    Advisory signal for the moderation / audit collaborator.

    Attributes:
        key: Subject the flag is about (`user:<id>` or `ip:<addr>`).
        reason: Which heuristic tripped.
        observed_at: UTC time the heuristic tripped.
        metadata: Heuristic-specific context (counts, thresholds).
        severity: 'low' | 'medium' | 'high' | 'critical'.
    """

    key: str
    reason: AbuseReason
    observed_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    severity: str = "medium"

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "reason": self.reason.value,
            "observed_at": self.observed_at.isoformat(),
            "metadata": dict(self.metadata),
            "severity": self.severity,
        }


@dataclass(frozen=True)
class AbuseSettings:
    """Thresholds and windows for every heuristic."""

    new_account_grace_period_ms: int = 7 * _DAY_MS
    new_account_daily_upload_limit: int = 10
    duplicate_window_ms: int = 5 * _MINUTE_MS
    duplicate_hard_reject: bool = False
    rapid_upload_threshold: int = 5
    rapid_upload_window_ms: int = _MINUTE_MS
    bulk_gallery_threshold: int = 10
    bulk_gallery_window_ms: int = _HOUR_MS
    failed_login_threshold: int = 5
    failed_login_window_ms: int = 15 * _MINUTE_MS
    login_ip_history_size: int = 10
    login_ip_history_window_ms: int = 90 * _DAY_MS
    flag_dedupe_window_ms: int = _HOUR_MS


@dataclass
class UploadVerdict:
    """
    Result of the upload heuristics.

    Attributes:
        allowed: False only when a hard limit was hit.
        flags: Flags raised by this check (emitted or de-duplicated).
        reason: Human-readable explanation when not allowed.
        retry_after_seconds: Seconds until the blocking window resets.
    """

    allowed: bool = True
    flags: list[AbuseFlag] = field(default_factory=list)
    reason: str = ""
    retry_after_seconds: int | None = None


def is_new_account(now: int, account_created_at: int, grace_period_ms: int) -> bool:
    """True while the account is younger than the grace period (all epoch ms)."""
    return now - account_created_at < grace_period_ms


def to_epoch_ms(value: datetime | int) -> int:
    """Normalise a datetime (naive means UTC) or epoch-ms int to epoch ms."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(value)


class AbuseMonitor:
    """
    Runs abuse heuristics and forwards flags to the audit sink.

    Usage:
        monitor = AbuseMonitor(store, LoggingAuditSink())
        verdict = await monitor.check_upload("42", created_at, fingerprint="ab12")
        if not verdict.allowed:
            ...  # render 429 with verdict.retry_after_seconds
    """

    def __init__(
        self,
        store: CounterStore,
        sink: AuditSink,
        settings: AbuseSettings | None = None,
        clock: Clock = now_ms,
        store_timeout_ms: int = 250,
    ) -> None:
        self._store = store
        self._sink = sink
        self._settings = settings or AbuseSettings()
        self._clock = clock
        self._timeout = store_timeout_ms / 1000

    @property
    def settings(self) -> AbuseSettings:
        return self._settings

    # ── Uploads ────────────────────────────────────────────────

    async def check_upload(
        self,
        user_id: str,
        account_created_at: datetime | int,
        fingerprint: str | None = None,
    ) -> UploadVerdict:
        """
        Evaluate one upload-class action.

        Args:
            user_id: Authenticated uploader.
            account_created_at: Account creation time (datetime or epoch ms).
            fingerprint: Content fingerprint computed by the image pipeline.

        Returns:
            UploadVerdict; allowed=False only for hard limits.
        """
        s = self._settings
        subject = f"user:{user_id}"
        verdict = UploadVerdict()
        now = self._clock()

        # ── New-account daily ceiling ─────────────────────────
        if is_new_account(now, to_epoch_ms(account_created_at), s.new_account_grace_period_ms):
            entry = await self._count("new_account_limit", f"{subject}:daily-uploads", _DAY_MS)
            if entry is not None and entry.count > s.new_account_daily_upload_limit:
                verdict.allowed = False
                verdict.retry_after_seconds = max(1, math.ceil((entry.reset_at_ms - now) / 1000))
                verdict.reason = (
                    f"New account upload limit reached "
                    f"({s.new_account_daily_upload_limit} uploads per day)."
                )
                await self._raise_flag(
                    verdict.flags,
                    subject,
                    AbuseReason.NEW_ACCOUNT_UPLOAD_LIMIT,
                    {"count": entry.count, "limit": s.new_account_daily_upload_limit},
                    severity="medium",
                )
                return verdict

        # ── Duplicate content ─────────────────────────────────
        if fingerprint:
            entry = await self._count(
                "duplicate_upload", f"{subject}:upload-fp:{fingerprint}", s.duplicate_window_ms
            )
            if entry is not None and entry.count > 1:
                await self._raise_flag(
                    verdict.flags,
                    subject,
                    AbuseReason.DUPLICATE_RAPID_UPLOAD,
                    {
                        "fingerprint": fingerprint,
                        "occurrences": entry.count,
                        "window_seconds": s.duplicate_window_ms // 1000,
                    },
                    severity="medium",
                )
                if s.duplicate_hard_reject:
                    verdict.allowed = False
                    verdict.retry_after_seconds = max(1, math.ceil((entry.reset_at_ms - now) / 1000))
                    verdict.reason = "The same image was uploaded moments ago."
                    return verdict

        # ── Upload velocity ───────────────────────────────────
        entry = await self._count(
            "rapid_uploads", f"{subject}:uploads-per-minute", s.rapid_upload_window_ms
        )
        if entry is not None and entry.count > s.rapid_upload_threshold:
            await self._raise_flag(
                verdict.flags,
                subject,
                AbuseReason.RAPID_UPLOADS,
                {
                    "upload_count": entry.count,
                    "threshold": s.rapid_upload_threshold,
                    "window_seconds": s.rapid_upload_window_ms // 1000,
                },
                severity="high",
            )

        return verdict

    # ── Galleries ──────────────────────────────────────────────

    async def record_gallery_created(self, user_id: str) -> list[AbuseFlag]:
        """Count a gallery creation; flag bulk creation. Never blocks."""
        s = self._settings
        subject = f"user:{user_id}"
        flags: list[AbuseFlag] = []
        entry = await self._count(
            "bulk_galleries", f"{subject}:galleries-per-hour", s.bulk_gallery_window_ms
        )
        if entry is not None and entry.count > s.bulk_gallery_threshold:
            await self._raise_flag(
                flags,
                subject,
                AbuseReason.BULK_GALLERY_CREATION,
                {
                    "gallery_count": entry.count,
                    "threshold": s.bulk_gallery_threshold,
                    "window_seconds": s.bulk_gallery_window_ms // 1000,
                },
                severity="medium",
            )
        return flags

    # ── Logins ─────────────────────────────────────────────────

    async def record_failed_login(self, client_ip: str | None) -> list[AbuseFlag]:
        """Count a failed login per address; flag bursts. Never blocks."""
        s = self._settings
        subject = f"ip:{client_ip or 'unknown'}"
        flags: list[AbuseFlag] = []
        entry = await self._count(
            "failed_logins", f"{subject}:failed-logins", s.failed_login_window_ms
        )
        if entry is not None and entry.count >= s.failed_login_threshold:
            await self._raise_flag(
                flags,
                subject,
                AbuseReason.FAILED_LOGIN_BURST,
                {
                    "failed_attempts": entry.count,
                    "threshold": s.failed_login_threshold,
                    "window_seconds": s.failed_login_window_ms // 1000,
                },
                severity="high",
            )
        return flags

    async def record_login(self, user_id: str, client_ip: str | None) -> list[AbuseFlag]:
        """
        Remember a successful login's address; flag addresses the user has
        not logged in from recently. Never blocks.

        The first login on record (no history yet) is never flagged.
        """
        s = self._settings
        subject = f"user:{user_id}"
        flags: list[AbuseFlag] = []
        if not client_ip:
            return flags

        previous = await self._guarded(
            "unusual_login_ip",
            self._store.push_recent(
                f"{subject}:login-ips",
                client_ip,
                s.login_ip_history_size,
                s.login_ip_history_window_ms,
            ),
        )
        if previous and client_ip not in previous:
            await self._raise_flag(
                flags,
                subject,
                AbuseReason.UNUSUAL_LOGIN_IP,
                {"client_ip": client_ip, "previous_ips": previous},
                severity="medium",
            )
        return flags

    # ── Internal helpers ───────────────────────────────────────

    async def _guarded(self, heuristic: str, operation: Awaitable[T]) -> T | None:
        """Run one store call under the store timeout; None means it failed."""
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout)
        except asyncio.TimeoutError:
            abuse_check_failures_total.labels(heuristic=heuristic).inc()
            logger.warning(
                f"Abuse heuristic '{heuristic}' skipped: store timed out "
                f"after {self._timeout * 1000:.0f}ms"
            )
            return None
        except Exception as exc:
            abuse_check_failures_total.labels(heuristic=heuristic).inc()
            logger.warning(f"Abuse heuristic '{heuristic}' skipped: {exc!r}")
            return None

    async def _count(self, heuristic: str, key: str, window_ms: int) -> CounterEntry | None:
        """Increment a heuristic counter; None means the heuristic is skipped."""
        return await self._guarded(heuristic, self._store.increment_and_get(key, window_ms))

    async def _raise_flag(
        self,
        flags: list[AbuseFlag],
        subject: str,
        reason: AbuseReason,
        metadata: dict[str, Any],
        severity: str,
    ) -> None:
        flag = AbuseFlag(
            key=subject,
            reason=reason,
            observed_at=datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc),
            metadata=metadata,
            severity=severity,
        )
        flags.append(flag)

        # One report per (reason, subject) per dedupe window
        dedupe_key = f"flagged:{reason.value}:{subject}"
        if await self._guarded("flag_dedupe", self._store.peek(dedupe_key)):
            return

        try:
            await asyncio.wait_for(self._sink.emit(flag), timeout=self._timeout)
        except Exception as exc:
            logger.error(f"Failed to emit abuse flag {reason.value} for {subject}: {exc!r}")
            return

        abuse_flags_total.labels(reason=reason.value).inc()
        await self._count("flag_dedupe", dedupe_key, self._settings.flag_dedupe_window_ms)
