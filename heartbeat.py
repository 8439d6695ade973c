#!/usr/bin/env python3
"""
HEARTBEAT — Per-trade liveness gate and runner health monitoring.

Trade side:    check_abort(store, job_id) — called at the start of every tick.
               Writes the trade's last_heartbeat_at and reads back the
               operator's user_override. A failing store never blocks the
               tick: heartbeat trouble is logged and treated as "not aborted".
Runner side:   write_heartbeat(service) — called by the cron runner after
               each pass; check_heartbeats() reports stale services.

Cron setup for monitoring (runs every 5 min in market hours):
  */5 9-15 * * 1-5 cd /opt/premium-guard && python3 premium_monitor.py --check >> /tmp/premium_check.log 2>&1
"""

from datetime import datetime
from pathlib import Path
from typing import List, Tuple
from zoneinfo import ZoneInfo

from config import EXPECTED_SERVICES, HEARTBEAT_FILE, MARKET_TIMEZONE
from file_store import file_lock, json_transaction, read_json
from log_setup import get_logger
from remote_retry import RetryPolicy, TransientRemoteError, with_remote_retry
from trade_events import TradeEvent, log_event
from trade_store import UserOverride

logger = get_logger(__name__)

IST = ZoneInfo(MARKET_TIMEZONE)


async def check_abort(store, job_id: str, policy: RetryPolicy | None = None) -> bool:
    """Heartbeat the trade and report whether the operator asked to abort."""
    try:
        trade = await with_remote_retry(
            lambda: store.heartbeat(job_id), "trade_heartbeat", policy,
        )
    except TransientRemoteError as e:
        # harmless, evaluation must go on without the flag
        logger.warning("%s: heartbeat failed, continuing as not aborted — %s", job_id, e)
        log_event(TradeEvent.HEARTBEAT_FAILED, "heartbeat", {
            "job_id": job_id, "error": repr(e.last_error),
        })
        return False

    return (trade or {}).get("user_override") == UserOverride.ABORT.value


# ── Runner heartbeats ──

def write_heartbeat(service_name: str, path: Path = HEARTBEAT_FILE):
    """Record a successful run timestamp for a service."""
    lock = path.with_name(f".{path.name}.lock")
    with json_transaction(path, lock, dict) as heartbeats:
        heartbeats[service_name] = {
            "timestamp": datetime.now(IST).isoformat(),
            "service": service_name,
        }


def read_heartbeats(path: Path = HEARTBEAT_FILE) -> dict:
    lock = path.with_name(f".{path.name}.lock")
    with file_lock(lock):
        return read_json(path, dict)


def check_heartbeats(path: Path = HEARTBEAT_FILE, now: datetime | None = None) -> List[Tuple[str, str, float]]:
    """Check expected services for staleness.

    Returns (service, status, age_minutes) for each unhealthy service, where
    status is "never_seen", "stale" or "parse_error". Empty list = healthy.
    """
    now = now or datetime.now(IST)
    heartbeats = read_heartbeats(path)
    problems = []

    for service, max_age_min in EXPECTED_SERVICES.items():
        entry = heartbeats.get(service)
        if entry is None:
            problems.append((service, "never_seen", -1))
            continue
        try:
            last_beat = datetime.fromisoformat(entry["timestamp"])
            if last_beat.tzinfo is None:
                last_beat = last_beat.replace(tzinfo=IST)
            age_minutes = (now - last_beat).total_seconds() / 60
            if age_minutes > max_age_min:
                problems.append((service, "stale", round(age_minutes, 1)))
        except (KeyError, ValueError, TypeError):
            problems.append((service, "parse_error", -1))

    return problems
