#!/usr/bin/env python3
"""
FILE STORE — Locked, atomic JSON read-modify-write.

Shared by trade_store.py, job_queue.py and heartbeat.py so that the cron
runner, manual CLI invocations and worker threads never corrupt a data file.

Features:
  - fcntl exclusive lock on a sidecar .lock file
  - Non-blocking acquire polled up to LOCK_TIMEOUT_SEC (safe off the main
    thread, unlike SIGALRM-based timeouts)
  - Atomic writes (temp file + fsync + os.replace)
  - Corrupted files are moved aside, never silently overwritten
"""

import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from config import LOCK_POLL_INTERVAL_SEC, LOCK_TIMEOUT_SEC
from log_setup import get_logger

logger = get_logger(__name__)

__all__ = ["LockTimeoutError", "file_lock", "read_json", "write_json", "json_transaction"]


class LockTimeoutError(Exception):
    """Raised when file lock acquisition exceeds LOCK_TIMEOUT_SEC."""


@contextmanager
def file_lock(lock_path: Path, timeout: float = LOCK_TIMEOUT_SEC):
    """Hold an exclusive lock on lock_path for the duration of the block."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = open(lock_path, "w")
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Could not lock {lock_path} within {timeout}s"
                    )
                time.sleep(LOCK_POLL_INTERVAL_SEC)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
    finally:
        lock_fd.close()


def read_json(path: Path, default_factory: Callable[[], Any]) -> Any:
    """Read a JSON file. Caller MUST hold the lock.

    Missing or empty file -> default_factory(). Corrupted file is renamed to
    <name>.corrupted.<ts> and default_factory() is returned.
    """
    if not path.exists():
        return default_factory()
    raw = path.read_text().strip()
    if not raw:
        return default_factory()
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        backup = path.with_suffix(f".corrupted.{int(datetime.now().timestamp())}")
        logger.error("%s is corrupted (%s) — saved as %s", path.name, e, backup)
        path.rename(backup)
        return default_factory()


def write_json(path: Path, data: Any) -> None:
    """Atomically write data as JSON. Caller MUST hold the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


@contextmanager
def json_transaction(path: Path, lock_path: Path, default_factory: Callable[[], Any]):
    """
    Read-modify-write with a single lock held throughout.

    Usage:
        with json_transaction(TRADES_FILE, LOCK, dict) as trades:
            trades[trade_id]["user_override"] = "ABORT"
        # saved on exit (not saved if the block raises)
    """
    with file_lock(lock_path):
        data = read_json(path, default_factory)
        yield data
        write_json(path, data)
