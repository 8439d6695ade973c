#!/usr/bin/env python3
"""
LOG SETUP — Root logger for the exit checker.

Console gets INFO+ (what cron mails you); logs/premium_monitor.log gets
DEBUG+, including every CONTINUE tick, and rotates at 5 MB x 5. The JSONL
event stream is separate, see trade_events.py.
"""

import logging
from logging.handlers import RotatingFileHandler

from config import LOG_DIR

LOG_FILE = LOG_DIR / "premium_monitor.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 5

# Chatty below WARNING during a pass over many jobs
QUIET_LOGGERS = ("aiohttp", "asyncio", "tenacity")

__all__ = ["setup_logging", "get_logger"]

_initialized = False


def setup_logging(level: int = logging.DEBUG, log_file=LOG_FILE):
    """Attach console + rotating file handlers to the root logger, once."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        log_file, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(console)
    root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
