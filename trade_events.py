#!/usr/bin/env python3
"""
TRADE EVENTS — Structured JSONL event logging for the exit checker.

Emits machine-parseable events to logs/trade_events.jsonl for every tick
outcome, so a not-yet-triggered tick and a broker outage can be told apart
even though the scheduler sees both as a failed tick.

Usage:
    from trade_events import log_event, TradeEvent

    log_event(TradeEvent.TICK_TRAILED, "premium_monitor", {
        "job_id": "64f0c...", "anchor": 280.0, "generation": 1,
    })

Querying (from terminal):
    # Every trail of one job
    cat logs/trade_events.jsonl | jq 'select(.event == "tick_trailed" and .job_id == "64f0c...")'

    # Broker trouble today
    cat logs/trade_events.jsonl | jq 'select(.event == "tick_transient_error")'
"""

import json
import logging
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from zoneinfo import ZoneInfo

from config import LOG_DIR, MARKET_TIMEZONE

IST = ZoneInfo(MARKET_TIMEZONE)
UTC = ZoneInfo("UTC")
EVENT_LOG_FILE = LOG_DIR / "trade_events.jsonl"

MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 10

__all__ = ["TradeEvent", "log_event"]


class TradeEvent(str, Enum):
    """Canonical event types for the exit checker lifecycle."""

    # ── Tick outcomes ──
    TICK_TRIGGERED = "tick_triggered"
    TICK_TRAILED = "tick_trailed"
    TICK_NOT_TRIGGERED = "tick_not_triggered"
    TICK_TRANSIENT_ERROR = "tick_transient_error"
    TICK_ABORTED = "tick_aborted"
    TICK_WINDOW_CLOSED = "tick_window_closed"

    # ── Best-effort side effects ──
    HEARTBEAT_FAILED = "heartbeat_failed"
    TRAILING_SL_PATCH_FAILED = "trailing_sl_patch_failed"

    # ── Queue ──
    JOB_REGISTERED = "job_registered"
    JOB_REQUEUED = "job_requeued"

    # ── Square-off ──
    SQUARE_OFF_PLACED = "square_off_placed"
    SQUARE_OFF_FAILED = "square_off_failed"

    # ── System ──
    ERROR = "error"
    PREFLIGHT_FAILED = "preflight_failed"


_event_logger: logging.Logger | None = None


def _get_event_logger() -> logging.Logger:
    """Get or initialize the JSONL event logger (raw lines, no prefix)."""
    global _event_logger
    if _event_logger is not None:
        return _event_logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("trade_events")
    logger.setLevel(logging.INFO)
    logger.propagate = False  # Don't bubble to root (would double-log)

    if not logger.handlers:
        handler = RotatingFileHandler(
            EVENT_LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    _event_logger = logger
    return logger


def log_event(
    event: TradeEvent,
    source: str,
    payload: dict | None = None,
) -> None:
    """Emit a structured event to the JSONL log.

    Parameters
    ----------
    event : TradeEvent
        The event type (e.g., TradeEvent.TICK_TRAILED).
    source : str
        The module name emitting the event (e.g., "premium_monitor").
    payload : dict, optional
        Arbitrary key-value data for the event. Non-JSON values are
        stringified.
    """
    record = {
        "ts": datetime.now(IST).isoformat(),
        "ts_utc": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "event": event.value,
        "source": source,
        **(payload or {}),
    }
    try:
        line = json.dumps(record, default=str, separators=(",", ":"))
        _get_event_logger().info(line)
    except Exception:
        # Never let event logging break a tick
        pass
