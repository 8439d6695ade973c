#!/usr/bin/env python3
"""Market-closing deadline for exit checkers (NSE, Asia/Kolkata)."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from config import MARKET_CLOSE_HOUR, MARKET_CLOSE_MINUTE, MARKET_TIMEZONE

IST = ZoneInfo(MARKET_TIMEZONE)

__all__ = ["market_close_at", "time_remaining_until_market_close"]


def market_close_at(now: datetime | None = None) -> datetime:
    """Today's closing bell in market time."""
    now = (now or datetime.now(IST)).astimezone(IST)
    return now.replace(hour=MARKET_CLOSE_HOUR, minute=MARKET_CLOSE_MINUTE, second=0, microsecond=0)


def time_remaining_until_market_close(now: datetime | None = None) -> timedelta:
    """Time left until today's close. Negative once the market has closed."""
    now = (now or datetime.now(IST)).astimezone(IST)
    return market_close_at(now) - now
