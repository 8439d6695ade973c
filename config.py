#!/usr/bin/env python3
"""
PREMIUM GUARD — Configuration Constants

Centralized configuration for the combined-premium stop monitor: retry
policy, broker API endpoints, market hours, queue cadence and file paths.
Single source of truth for every module. Credentials are NOT kept here;
they are read from .env at call time (see kite_client.py, notifications.py).
"""

from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent

# =============================================================================
# KITE CONNECT API
# =============================================================================

KITE_API_URL = "https://api.kite.trade"
KITE_API_VERSION = "3"

# Exchange segment for option legs (NSE F&O)
DEFAULT_EXCHANGE = "NFO"

# =============================================================================
# REMOTE RETRY
# =============================================================================

# Attempts per remote call (heartbeat, live price, trailing SL patch)
REMOTE_RETRY_ATTEMPTS = 4
REMOTE_RETRY_MIN_WAIT_SEC = 0.5
REMOTE_RETRY_MAX_WAIT_SEC = 4
REMOTE_RETRY_MULTIPLIER = 1  # Exponential backoff multiplier

# =============================================================================
# HTTP CLIENT
# =============================================================================

# Minimum seconds between API requests (Kite allows ~10 req/s on quote APIs)
API_MIN_REQUEST_INTERVAL = 0.1

HTTP_TIMEOUT_TOTAL_SEC = 10
HTTP_TIMEOUT_CONNECT_SEC = 2

CONNECTION_POOL_LIMIT = 10
DNS_CACHE_TTL_SEC = 300
KEEPALIVE_TIMEOUT_SEC = 120

# =============================================================================
# MARKET HOURS
# =============================================================================

MARKET_TIMEZONE = "Asia/Kolkata"
MARKET_CLOSE_HOUR = 15
MARKET_CLOSE_MINUTE = 30

# =============================================================================
# QUEUE / TICK CADENCE
# =============================================================================

# Queue the exit checker consumes from (and re-enqueues trailed generations to)
EXIT_TRADING_QUEUE = "exit_trading"

# Delay before a not-yet-triggered (or transiently failed) job is ticked again
TICK_INTERVAL_SEC = 5

# Max jobs a single runner pass will claim
MAX_JOBS_PER_PASS = 50

# A claimed entry not acked/released within this window is considered orphaned
# (runner crashed mid-tick) and becomes claimable again
CLAIM_TIMEOUT_SEC = 120

# =============================================================================
# FILE PATHS
# =============================================================================

DATA_DIR = PROJECT_ROOT / "data"
LOG_DIR = PROJECT_ROOT / "logs"
TRADES_FILE = DATA_DIR / "trades.json"
QUEUE_FILE = DATA_DIR / "queue.json"
HEARTBEAT_FILE = DATA_DIR / "heartbeats.json"

LOCK_TIMEOUT_SEC = 10  # Max seconds to wait for a file lock
LOCK_POLL_INTERVAL_SEC = 0.05

# =============================================================================
# SERVICE HEARTBEATS
# =============================================================================

# Service name -> max age in minutes before considered stale
EXPECTED_SERVICES = {
    "premium_monitor": 5,  # Cron runs every minute during market hours
}
