#!/usr/bin/env python3
"""
NOTIFICATIONS — Discord webhook alerts with retry and local fallback.

Used by premium_monitor.py to page the operator when a stop triggers, when
a square-off fails, or when the runner hits an unexpected error. If Discord
is unreachable (or no webhook is configured) the alert is appended to
alerts_fallback.jsonl so it is never silently lost.
"""

import json
import os
from datetime import datetime
from zoneinfo import ZoneInfo

import aiohttp

from config import MARKET_TIMEZONE, PROJECT_ROOT
from log_setup import get_logger
from remote_retry import TransientRemoteError, with_remote_retry

logger = get_logger(__name__)

__all__ = ["send_discord_alert"]

IST = ZoneInfo(MARKET_TIMEZONE)
UTC = ZoneInfo("UTC")
FALLBACK_FILE = PROJECT_ROOT / "alerts_fallback.jsonl"


def _get_discord_webhook() -> str:
    """Read at call time so .env loaded by the entry point is honoured."""
    return os.getenv("DISCORD_WEBHOOK_URL") or os.getenv("DISCORD_WEBHOOK") or ""


def _save_to_fallback(embed: dict, context: str = ""):
    """Append alert to JSONL fallback file when Discord is unreachable."""
    try:
        record = {
            "timestamp": datetime.now(IST).isoformat(),
            "context": context,
            "embeds": [embed],
        }
        with open(FALLBACK_FILE, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
        logger.warning(f"Discord unreachable — alert saved to {FALLBACK_FILE}")
    except OSError as e:
        logger.error(f"Failed to write fallback alert: {e}")


async def _post(session: aiohttp.ClientSession, url: str, payload: dict):
    async with session.post(url, json=payload) as resp:
        if resp.status not in (200, 204):
            body = await resp.text()
            raise RuntimeError(f"Discord returned {resp.status}: {body[:200]}")


async def send_discord_alert(
    title: str,
    description: str,
    color: int = 0xFF6600,
    context: str = "",
):
    """Send a single Discord embed alert with retry and fallback."""
    embed = {
        "title": title,
        "description": description,
        "color": color,
        # Discord expects UTC ISO 8601 embed timestamps
        "timestamp": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
    }

    webhook_url = _get_discord_webhook()
    if not webhook_url:
        logger.warning("No DISCORD_WEBHOOK_URL set — skipping notification")
        _save_to_fallback(embed, context=context or "no_webhook")
        return

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
        try:
            await with_remote_retry(
                lambda: _post(session, webhook_url, {"embeds": [embed]}), "discord_alert",
            )
            logger.debug("Discord alert sent: %s", title)
        except TransientRemoteError as e:
            logger.error("Discord delivery failed — %s", e)
            _save_to_fallback(embed, context=context or "retry_exhausted")
