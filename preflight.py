#!/usr/bin/env python3
"""
PREFLIGHT — Startup credential and environment validation.

Call preflight_check() at the start of the runner to catch misconfiguration
before a live position is left unmonitored. Validates:
  1. KITE_API_KEY is set
  2. KITE_ACCESS_TOKEN is set (or at least one per-user KITE_ACCESS_TOKEN_<USER>)
  3. DISCORD_WEBHOOK_URL is set (warning-only — not blocking)
  4. The data directory (trades/queue files) is writable

Usage:
    from preflight import preflight_check
    ok, issues = preflight_check(fatal=False)
"""

import os

from config import DATA_DIR, PROJECT_ROOT
from log_setup import get_logger

logger = get_logger(__name__)


def preflight_check(fatal: bool = True) -> tuple:
    """Validate credentials and environment before ticking jobs.

    Args:
        fatal: If True (default), raises SystemExit on critical failure.
               If False, returns (ok: bool, issues: list[str]).
    """
    issues = []
    warnings = []

    if not os.getenv("KITE_API_KEY", ""):
        issues.append("KITE_API_KEY not set in environment")

    has_token = bool(os.getenv("KITE_ACCESS_TOKEN", "")) or any(
        k.startswith("KITE_ACCESS_TOKEN_") and v for k, v in os.environ.items()
    )
    if not has_token:
        issues.append("KITE_ACCESS_TOKEN not set in environment")

    webhook = os.getenv("DISCORD_WEBHOOK_URL") or os.getenv("DISCORD_WEBHOOK") or ""
    if not webhook:
        warnings.append("DISCORD_WEBHOOK_URL not set — alerts will use JSONL fallback only")
    elif not webhook.startswith("https://discord.com/api/webhooks/"):
        warnings.append("DISCORD_WEBHOOK_URL doesn't look like a Discord webhook URL")

    try:
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        issues.append(f"Cannot create data directory {DATA_DIR}: {e}")
    else:
        if not os.access(DATA_DIR, os.W_OK):
            issues.append(f"Cannot write to data directory: {DATA_DIR}")

    for w in warnings:
        logger.warning(f"PREFLIGHT WARNING: {w}")

    if issues:
        for issue in issues:
            logger.error(f"PREFLIGHT FAILED: {issue}")
        if fatal:
            raise SystemExit(1)
        return False, issues + [f"WARNING: {w}" for w in warnings]

    logger.info("Preflight check passed (%d warnings)", len(warnings))
    return True, [f"WARNING: {w}" for w in warnings]


if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv(PROJECT_ROOT / ".env")

    ok, issues = preflight_check(fatal=False)
    print(f"\n  PREFLIGHT CHECK {'PASSED ✓' if ok else 'FAILED ✗'}")
    for i in issues:
        print(f"    • {i}")
