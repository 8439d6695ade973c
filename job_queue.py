#!/usr/bin/env python3
"""
JOB QUEUE — Durable, file-backed queue of exit-checker job generations.

Backed by data/queue.json (a list of entries). Each entry holds one
JobRecord generation plus the extra context it was enqueued with:

    {"entry_id": "...", "queue": "exit_trading", "job_id": "...",
     "generation": 1, "job": {...}, "context": {...},
     "enqueued_at": 1718000000.0, "run_after": 1718000005.0,
     "claimed_at": null, "attempts": 0, "last_reason": ""}

Guarantees:
  - At most one live generation per (queue, job id): enqueueing generation
    N drops every older generation of the same job. A late ack/release of
    a dropped entry is a no-op.
  - A claimed entry that is neither acked nor released within
    CLAIM_TIMEOUT_SEC (runner died mid-tick) becomes claimable again.
"""

import asyncio
import time
import uuid
from pathlib import Path

from config import CLAIM_TIMEOUT_SEC, MAX_JOBS_PER_PASS, QUEUE_FILE
from file_store import file_lock, json_transaction, read_json
from job_record import JobRecord
from log_setup import get_logger

logger = get_logger(__name__)

__all__ = ["JobQueue"]


class JobQueue:
    """File-backed job queue shared by the runner and the exit checker."""

    def __init__(self, path: Path = QUEUE_FILE):
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")

    def enqueue_sync(
        self,
        queue_name: str,
        job: JobRecord,
        extra_context: dict | None = None,
        delay_sec: float = 0,
        now: float | None = None,
    ) -> dict:
        now = time.time() if now is None else now
        with json_transaction(self.path, self.lock_path, list) as entries:
            for existing in entries:
                if (existing["queue"] == queue_name and existing["job_id"] == job.id
                        and existing["generation"] >= job.generation):
                    logger.warning(
                        "Enqueue of %s gen %d ignored — gen %d already queued",
                        job.id, job.generation, existing["generation"],
                    )
                    return dict(existing)

            superseded = [
                e for e in entries
                if e["queue"] == queue_name and e["job_id"] == job.id
            ]
            for old in superseded:
                entries.remove(old)
                logger.info("Superseded %s gen %d with gen %d",
                            job.id, old["generation"], job.generation)

            entry = {
                "entry_id": uuid.uuid4().hex,
                "queue": queue_name,
                "job_id": job.id,
                "generation": job.generation,
                "job": job.to_dict(),
                "context": dict(extra_context or {}),
                "enqueued_at": now,
                "run_after": now + delay_sec,
                "claimed_at": None,
                "attempts": 0,
                "last_reason": "",
            }
            entries.append(entry)
            return dict(entry)

    async def enqueue(
        self,
        queue_name: str,
        job: JobRecord,
        extra_context: dict | None = None,
        delay_sec: float = 0,
    ) -> dict:
        return await asyncio.to_thread(
            self.enqueue_sync, queue_name, job, extra_context, delay_sec,
        )

    def claim_due(
        self,
        queue_name: str,
        now: float | None = None,
        limit: int = MAX_JOBS_PER_PASS,
    ) -> list[dict]:
        """Claim up to `limit` entries whose run_after has passed."""
        now = time.time() if now is None else now
        claimed = []
        with json_transaction(self.path, self.lock_path, list) as entries:
            for entry in entries:
                if len(claimed) >= limit:
                    break
                if entry["queue"] != queue_name or entry["run_after"] > now:
                    continue
                claimed_at = entry.get("claimed_at")
                if claimed_at is not None and now - claimed_at < CLAIM_TIMEOUT_SEC:
                    continue
                if claimed_at is not None:
                    logger.warning("Reclaiming orphaned entry %s (%s gen %d)",
                                   entry["entry_id"], entry["job_id"], entry["generation"])
                entry["claimed_at"] = now
                entry["attempts"] = entry.get("attempts", 0) + 1
                claimed.append(dict(entry))
        return claimed

    def ack(self, entry: dict) -> bool:
        """Remove a finished entry. False if it was already gone (superseded)."""
        with json_transaction(self.path, self.lock_path, list) as entries:
            for e in entries:
                if e["entry_id"] == entry["entry_id"]:
                    entries.remove(e)
                    return True
        return False

    def release(
        self,
        entry: dict,
        delay_sec: float,
        reason: str = "",
        now: float | None = None,
    ) -> bool:
        """Return a claimed entry to the queue to be ticked again after delay_sec."""
        now = time.time() if now is None else now
        with json_transaction(self.path, self.lock_path, list) as entries:
            for e in entries:
                if e["entry_id"] == entry["entry_id"]:
                    e["claimed_at"] = None
                    e["run_after"] = now + delay_sec
                    e["last_reason"] = reason
                    return True
        return False

    def list_entries(self, queue_name: str | None = None) -> list[dict]:
        with file_lock(self.lock_path):
            entries = read_json(self.path, list)
        if queue_name is None:
            return entries
        return [e for e in entries if e["queue"] == queue_name]
