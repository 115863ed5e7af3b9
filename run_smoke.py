"""
run_smoke.py: live smoke checks against a running Gallery Guard.

Exercises health, auth, the rate-limit decision API and the abuse
signals over real HTTP. Uses throwaway user ids so it can be pointed
at a shared dev instance.

Run with:
    API_KEY=... python run_smoke.py [base_url]
"""

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import httpx

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
API_KEY = os.environ.get("API_KEY", "")
HEADERS = {"X-API-Key": API_KEY}
RUN_ID = uuid.uuid4().hex[:8]

# ── Colour helpers ──────────────────────────────────────────────
GREEN = "\033[92m"
RED = "\033[91m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"

passed = 0
failed = 0


def section(title):
    print(f"\n{BOLD}{CYAN}{'─' * 60}{RESET}")
    print(f"{BOLD}{CYAN}  {title}{RESET}")
    print(f"{BOLD}{CYAN}{'─' * 60}{RESET}")


def record(name, ok, detail=""):
    global passed, failed
    if ok:
        passed += 1
        print(f"  {GREEN}✅ {name}{RESET}: {detail}")
    else:
        failed += 1
        print(f"  {RED}❌ {name}{RESET}: {detail}")


def check(c, endpoint_class, user_id):
    return c.post(
        f"{BASE_URL}/v1/limits/check",
        json={"endpoint_class": endpoint_class, "user_id": user_id},
        headers=HEADERS,
    )


# ══════════════════════════════════════════════════════════════
# 1. HEALTH & AUTH
# ══════════════════════════════════════════════════════════════
section("1 · Health, readiness, auth")

with httpx.Client(timeout=10) as c:
    try:
        r = c.get(f"{BASE_URL}/health")
        record("SM-01 GET /health → 200", r.status_code == 200, f"status={r.json().get('status')}")
    except httpx.HTTPError as e:
        record("SM-01 GET /health → 200", False, str(e))
        sys.exit(1)

    r = c.get(f"{BASE_URL}/ready")
    d = r.json()
    record(
        "SM-02 GET /ready",
        r.status_code in (200, 503),
        f"HTTP {r.status_code} | status={d.get('status')} | backend={d.get('store_backend')}",
    )

    r = c.post(f"{BASE_URL}/v1/limits/check", json={"endpoint_class": "general"})
    record("SM-03 Missing API key → 401", r.status_code == 401, f"HTTP {r.status_code}")


# ══════════════════════════════════════════════════════════════
# 2. RATE-LIMIT DECISIONS
# ══════════════════════════════════════════════════════════════
section("2 · Rate-limit decisions")

with httpx.Client(timeout=10) as c:
    user = f"smoke-{RUN_ID}"

    r = check(c, "general", user)
    d = r.json()
    record(
        "SM-04 First general check admitted",
        r.status_code == 200 and d.get("remaining") == d.get("limit", 0) - 1,
        f"limit={d.get('limit')} remaining={d.get('remaining')} degraded={d.get('degraded')}",
    )
    record(
        "SM-05 X-RateLimit-* headers present",
        all(h in r.headers for h in ("X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset")),
        ", ".join(f"{k}={v}" for k, v in r.headers.items() if k.lower().startswith("x-ratelimit")),
    )

    attempts = 0
    last = check(c, "auth", user)
    while last.status_code == 200 and attempts < 50:
        attempts += 1
        last = check(c, "auth", user)
    record(
        "SM-06 Auth class eventually rejects with 429",
        last.status_code == 429 and "Retry-After" in last.headers,
        f"admitted={attempts} | last={last.status_code} retry={last.headers.get('Retry-After')}",
    )
    if last.status_code == 429:
        record("SM-07 429 body code", last.json().get("code") == "RATE_LIMIT_EXCEEDED", last.text[:80])

    r = c.post(f"{BASE_URL}/v1/limits/check", json={"endpoint_class": "downloads"}, headers=HEADERS)
    record("SM-08 Unknown endpoint class → 422", r.status_code == 422, f"HTTP {r.status_code}")


# ══════════════════════════════════════════════════════════════
# 3. ABUSE SIGNALS
# ══════════════════════════════════════════════════════════════
section("3 · Abuse signals")

with httpx.Client(timeout=10) as c:
    created = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    payload = {"user_id": f"smoke-new-{RUN_ID}", "account_created_at": created}
    statuses = [
        c.post(f"{BASE_URL}/v1/abuse/uploads", json=payload, headers=HEADERS).status_code
        for _ in range(11)
    ]
    record(
        "SM-09 New account blocked after daily ceiling",
        statuses[-1] == 429 and all(s == 200 for s in statuses[:10]),
        f"statuses={statuses}",
    )

    payload = {
        "user_id": f"smoke-dup-{RUN_ID}",
        "account_created_at": (datetime.now(timezone.utc) - timedelta(days=60)).isoformat(),
        "fingerprint": RUN_ID,
    }
    c.post(f"{BASE_URL}/v1/abuse/uploads", json=payload, headers=HEADERS)
    r = c.post(f"{BASE_URL}/v1/abuse/uploads", json=payload, headers=HEADERS)
    reasons = [f["reason"] for f in r.json().get("flags", [])]
    record("SM-10 Duplicate fingerprint flagged", "DUPLICATE_RAPID_UPLOAD" in reasons, f"flags={reasons}")

    ip = f"198.51.100.{int(RUN_ID, 16) % 250 + 1}"
    flags = []
    for _ in range(5):
        r = c.post(f"{BASE_URL}/v1/abuse/logins/failed", json={"client_ip": ip}, headers=HEADERS)
        flags = r.json().get("flags", [])
    record("SM-11 Failed-login burst flagged", bool(flags), f"ip={ip} flags={[f['reason'] for f in flags]}")


# ══════════════════════════════════════════════════════════════
# FINAL REPORT
# ══════════════════════════════════════════════════════════════
print(f"\n{BOLD}{'═' * 60}{RESET}")
print(f"{BOLD}  GALLERY GUARD SMOKE REPORT{RESET}")
print(f"  {GREEN}PASSED : {passed}{RESET}")
print(f"  {RED}FAILED : {failed}{RESET}")
print(f"{BOLD}{'═' * 60}{RESET}\n")
sys.exit(0 if failed == 0 else 1)
