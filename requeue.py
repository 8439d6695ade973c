#!/usr/bin/env python3
"""
REQUEUE — Continue a trailed position as a new job generation.

A trail never mutates the running job. It enqueues a successor generation
(same id, new anchor) on the queue the tick came from; the current
generation's tick then ends. Losing the enqueue would leave the position
unmonitored, so enqueue errors propagate. Publishing the new stop on the
trade record is for display only and never blocks the trail.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

from config import MARKET_TIMEZONE
from job_record import JobRecord
from log_setup import get_logger
from remote_retry import RetryPolicy, TransientRemoteError, with_remote_retry
from threshold import trailing_stop_for
from trade_events import TradeEvent, log_event

logger = get_logger(__name__)

__all__ = ["emit_trail", "patch_trailing_sl"]

IST = ZoneInfo(MARKET_TIMEZONE)


async def patch_trailing_sl(store, job: JobRecord, trailing_sl: float, policy: RetryPolicy | None = None) -> bool:
    """Best-effort update of the trade's live trailing stop. Returns success."""
    fields = {
        "live_trailing_sl": round(trailing_sl, 2),
        "last_trailing_sl_set_at": datetime.now(IST).isoformat(),
    }
    try:
        await with_remote_retry(lambda: store.patch(job.id, fields), "patch_trailing_sl", policy)
        return True
    except TransientRemoteError as e:
        logger.warning("%s: trailing SL patch failed (ignored) — %s", job.id, e)
        log_event(TradeEvent.TRAILING_SL_PATCH_FAILED, "requeue", {
            "job_id": job.id, "trailing_sl": fields["live_trailing_sl"], "error": repr(e.last_error),
        })
        return False


async def emit_trail(
    queue,
    store,
    job: JobRecord,
    new_anchor: float,
    queue_name: str,
    extra_context: dict | None = None,
    policy: RetryPolicy | None = None,
) -> JobRecord:
    """Enqueue the successor generation re-based at new_anchor and return it."""
    successor = job.with_anchor(new_anchor)
    await queue.enqueue(queue_name, successor, extra_context or {})
    logger.info("%s: requeued gen %d on %s with anchor %.2f",
                job.id, successor.generation, queue_name, new_anchor)
    log_event(TradeEvent.JOB_REQUEUED, "requeue", {
        "job_id": job.id, "generation": successor.generation,
        "anchor": new_anchor, "queue": queue_name,
    })

    await patch_trailing_sl(store, successor, trailing_stop_for(job.risk, new_anchor), policy)
    return successor
