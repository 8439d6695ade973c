#!/usr/bin/env python3
"""
TRADE STORE — Tracked trades, heartbeats and user overrides.

Backed by data/trades.json (a dict keyed by trade/job id). This is the
record the operator looks at: the exit checker writes its heartbeat and the
live trailing stop here, and the operator sets user_override=ABORT here to
stop a checker at its next tick.

All public coroutine methods run the blocking file work in a worker thread,
so a TradeStore can be passed into a tick as a plain capability.
"""

import asyncio
from datetime import datetime
from enum import Enum
from pathlib import Path
from zoneinfo import ZoneInfo

from config import MARKET_TIMEZONE, TRADES_FILE
from file_store import file_lock, json_transaction, read_json
from job_record import JobRecord
from log_setup import get_logger

logger = get_logger(__name__)

__all__ = ["UserOverride", "TradeNotFoundError", "TradeStore"]

IST = ZoneInfo(MARKET_TIMEZONE)


class UserOverride(str, Enum):
    NONE = "NONE"
    ABORT = "ABORT"


class TradeNotFoundError(KeyError):
    """Raised when patching a trade id that was never registered."""


class TradeStore:
    """File-backed store of tracked trades."""

    def __init__(self, path: Path = TRADES_FILE):
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")

    # ── Sync API (CLI, tests) ──

    def load(self) -> dict:
        with file_lock(self.lock_path):
            return read_json(self.path, dict)

    def get_sync(self, trade_id: str) -> dict | None:
        return self.load().get(trade_id)

    def register_sync(self, job: JobRecord) -> dict:
        """Start tracking a trade. Re-registering keeps heartbeat/override fields."""
        now = datetime.now(IST).isoformat()
        with json_transaction(self.path, self.lock_path, dict) as trades:
            trade = trades.setdefault(job.id, {
                "user_override": UserOverride.NONE.value,
                "registered_at": now,
            })
            trade["job"] = job.to_dict()
            trade["user"] = job.user
            logger.info("Trade registered: %s (%d legs, stop %.1f%%)",
                        job.id, len(job.legs), job.risk.stop_percent)
            return dict(trade)

    def patch_sync(self, trade_id: str, fields: dict) -> dict:
        """Merge fields into a tracked trade and return the updated record."""
        with json_transaction(self.path, self.lock_path, dict) as trades:
            if trade_id not in trades:
                raise TradeNotFoundError(trade_id)
            trades[trade_id].update(fields)
            return dict(trades[trade_id])

    def set_user_override_sync(self, trade_id: str, override: UserOverride) -> dict:
        logger.info("User override for %s set to %s", trade_id, override.value)
        return self.patch_sync(trade_id, {
            "user_override": override.value,
            "user_override_at": datetime.now(IST).isoformat(),
        })

    # ── Async capability API (used inside a tick) ──

    async def patch(self, trade_id: str, fields: dict) -> dict:
        return await asyncio.to_thread(self.patch_sync, trade_id, fields)

    async def heartbeat(self, trade_id: str) -> dict:
        """Record that a checker is alive; returns the trade incl. user_override."""
        return await self.patch(trade_id, {"last_heartbeat_at": datetime.now(IST).isoformat()})

    async def set_user_override(self, trade_id: str, override: UserOverride) -> dict:
        return await asyncio.to_thread(self.set_user_override_sync, trade_id, override)
