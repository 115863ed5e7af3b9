"""
gallery_guard/utils/metrics.py

Prometheus metrics definitions for Gallery Guard.

Design Decisions:
- Metrics are defined at module level (singletons) so they can
  be imported anywhere without double-registration.
- Label cardinality is kept low: endpoint class, outcome and reason
  only. Rate-limit keys (user IDs, IPs) are never used as labels.
- prometheus-fastapi-instrumentator handles HTTP-level metrics;
  these are limiter-level metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ── Decisions ─────────────────────────────────────────────────

rate_limit_decisions_total = Counter(
    name="gallery_guard_rate_limit_decisions_total",
    documentation="Rate-limit decisions by endpoint class and outcome",
    labelnames=["endpoint_class", "outcome"],
)

rate_limit_hits_total = Counter(
    name="gallery_guard_rate_limit_hits_total",
    documentation="Number of requests rejected due to rate limiting",
    labelnames=["endpoint_class"],
)

# ── Counter store health ─────────────────────────────────────

store_errors_total = Counter(
    name="gallery_guard_store_errors_total",
    documentation="Counter store failures (errors and timeouts)",
    labelnames=["operation", "kind"],
)

store_latency_seconds = Histogram(
    name="gallery_guard_store_latency_seconds",
    documentation="Latency of counter store increment operations",
    labelnames=["backend"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, float("inf")),
)

counter_entries = Gauge(
    name="gallery_guard_counter_entries",
    documentation="Entries currently held by the in-memory counter store",
)

expired_entries_removed_total = Counter(
    name="gallery_guard_expired_entries_removed_total",
    documentation="Expired counter entries removed by cleanup sweeps",
)

# ── Abuse signals ─────────────────────────────────────────────

abuse_flags_total = Counter(
    name="gallery_guard_abuse_flags_total",
    documentation="Abuse flags handed to the audit sink",
    labelnames=["reason"],
)

abuse_check_failures_total = Counter(
    name="gallery_guard_abuse_check_failures_total",
    documentation="Abuse heuristics skipped because evaluation failed",
    labelnames=["heuristic"],
)
