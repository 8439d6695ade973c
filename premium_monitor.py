#!/usr/bin/env python3
"""
PREMIUM MONITOR — Combined-premium trailing stop for multi-leg short options.

Every queued job is one generation of an exit checker for a position (e.g. a
short straddle). Each tick sums the live premium of all legs and compares it
with the stop:

  1. WINDOW:   market closed -> stop checking (no heartbeat, no fetch)
  2. ABORT:    operator set user_override=ABORT on the trade -> stop checking
  3. TRIGGER:  combined premium >= stop -> square off the legs
  4. TRAIL:    combined premium fell trail-trigger% below the anchor ->
               enqueue the next generation re-based at the new low
  5. CONTINUE: otherwise -> NotYetTriggered, the runner ticks it again later

Run via cron every minute during market hours:
  * 9-15 * * 1-5 cd /opt/premium-guard && python3 premium_monitor.py --once >> /tmp/premium_monitor.log 2>&1

Or run manually:
  python3 premium_monitor.py                     # Single pass over due jobs
  python3 premium_monitor.py --loop              # Keep ticking until the queue drains
  python3 premium_monitor.py --status            # Show queued jobs and trades
  python3 premium_monitor.py --add job.json      # Register a job and queue generation 0
  python3 premium_monitor.py --abort STRADDLE-1  # Ask a checker to stop
  python3 premium_monitor.py --check             # Runner heartbeat staleness
"""

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

load_dotenv(Path(__file__).resolve().parent / ".env")

from config import DEFAULT_EXCHANGE, EXIT_TRADING_QUEUE, MARKET_TIMEZONE, TICK_INTERVAL_SEC
from heartbeat import check_abort, check_heartbeats, write_heartbeat
from job_queue import JobQueue
from job_record import JobRecord
from kite_client import KiteClient
from log_setup import get_logger
from market_hours import time_remaining_until_market_close
from notifications import send_discord_alert
from preflight import preflight_check
from remote_retry import RetryPolicy, TransientRemoteError, with_remote_retry
from requeue import emit_trail
from square_off import SquareOffError, square_off_positions
from threshold import DecisionKind, evaluate
from trade_events import TradeEvent, log_event
from trade_store import TradeStore, UserOverride

logger = get_logger(__name__)

IST = ZoneInfo(MARKET_TIMEZONE)


class NotYetTriggered(Exception):
    """The stop was not hit this tick. Benign: the job should be ticked again."""
    def __init__(self, live_aggregate: float, active_stop: float):
        self.live_aggregate = live_aggregate
        self.active_stop = active_stop
        super().__init__(f"combined premium {live_aggregate:.2f} below stop {active_stop:.2f}")


class TickStatus(str, Enum):
    WINDOW_CLOSED = "window_closed"
    ABORTED = "aborted"
    TRAILED = "trailed"
    SQUARED_OFF = "squared_off"
    SQUARE_OFF_FAILED = "square_off_failed"


@dataclass
class TickResult:
    """Terminal outcome of a tick. The job generation is finished."""
    status: TickStatus
    message: str = ""
    payload: dict = field(default_factory=dict)


@dataclass
class TickContext:
    """Capabilities a tick runs against. Built per tick by the runner or a test."""
    broker: object                  # get_live_price(symbol, exchange), place_order(...)
    store: object                   # heartbeat(job_id), patch(job_id, fields)
    queue: object                   # enqueue(queue_name, job, extra_context)
    queue_name: str = EXIT_TRADING_QUEUE
    square_off: Callable[..., Awaitable[dict]] = square_off_positions
    time_remaining: Callable[[], timedelta] = time_remaining_until_market_close
    retry_policy: Optional[RetryPolicy] = None
    exchange: str = DEFAULT_EXCHANGE
    extra_context: dict = field(default_factory=dict)


async def fetch_live_aggregate(job: JobRecord, ctx: TickContext) -> float:
    """Sum of live leg prices. All legs or nothing: any exhausted fetch raises.

    When one leg fails the other legs' fetches are cancelled and awaited
    before the error propagates, so nothing outlives the tick.
    """
    tasks = [
        asyncio.ensure_future(with_remote_retry(
            lambda leg=leg: ctx.broker.get_live_price(leg.symbol, ctx.exchange),
            f"live_price:{leg.symbol}", ctx.retry_policy,
        ))
        for leg in job.legs
    ]
    try:
        prices = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return sum(prices)


async def run_tick(job: JobRecord, ctx: TickContext) -> TickResult:
    """Run one tick of the exit checker for a job generation.

    Returns a TickResult when the generation is finished. Raises
    NotYetTriggered when it should be ticked again, and TransientRemoteError
    when live prices could not be fetched (the job is unchanged).
    """
    remaining = ctx.time_remaining()
    if remaining < timedelta(0):
        logger.info("%s: market closed, stopping checker", job.id)
        log_event(TradeEvent.TICK_WINDOW_CLOSED, "premium_monitor", {
            "job_id": job.id, "generation": job.generation,
        })
        return TickResult(TickStatus.WINDOW_CLOSED, "market closed")

    if await check_abort(ctx.store, job.id, ctx.retry_policy):
        logger.info("%s: user override ABORT, stopping checker", job.id)
        log_event(TradeEvent.TICK_ABORTED, "premium_monitor", {
            "job_id": job.id, "generation": job.generation,
        })
        return TickResult(TickStatus.ABORTED, "aborted by user override")

    try:
        live = await fetch_live_aggregate(job, ctx)
    except TransientRemoteError as e:
        logger.warning("%s: live price fetch failed — %s", job.id, e)
        log_event(TradeEvent.TICK_TRANSIENT_ERROR, "premium_monitor", {
            "job_id": job.id, "operation": e.operation, "error": repr(e.last_error),
        })
        raise

    decision = evaluate(job.risk, job.anchor, job.initial_aggregate, live)

    if decision.kind == DecisionKind.TRIGGER:
        return await _on_trigger(job, ctx, decision.live_aggregate, decision.active_stop)

    if decision.kind == DecisionKind.TRAIL:
        successor = await emit_trail(
            ctx.queue, ctx.store, job, decision.new_anchor, ctx.queue_name,
            ctx.extra_context, ctx.retry_policy,
        )
        logger.info("%s: TRAIL — premium %.2f, anchor %s -> %.2f",
                    job.id, live, job.anchor, decision.new_anchor)
        log_event(TradeEvent.TICK_TRAILED, "premium_monitor", {
            "job_id": job.id, "generation": job.generation,
            "live_aggregate": round(live, 2), "old_anchor": job.anchor,
            "new_anchor": decision.new_anchor,
        })
        return TickResult(TickStatus.TRAILED, f"re-based at {decision.new_anchor:.2f}", {
            "generation": successor.generation, "anchor": successor.anchor,
        })

    logger.debug("%s: holding — premium %.2f, stop %.2f", job.id, live, decision.active_stop)
    log_event(TradeEvent.TICK_NOT_TRIGGERED, "premium_monitor", {
        "job_id": job.id, "live_aggregate": round(live, 2),
        "active_stop": round(decision.active_stop, 2),
    })
    raise NotYetTriggered(live, decision.active_stop)


async def _on_trigger(job: JobRecord, ctx: TickContext, live: float, stop: float) -> TickResult:
    logger.info("%s: STOP HIT — premium %.2f >= stop %.2f, squaring off (%s)",
                job.id, live, stop, job.exit_strategy.value)
    log_event(TradeEvent.TICK_TRIGGERED, "premium_monitor", {
        "job_id": job.id, "generation": job.generation,
        "live_aggregate": round(live, 2), "active_stop": round(stop, 2),
        "exit_strategy": job.exit_strategy.value,
    })

    # Exit before alerting
    try:
        result = await ctx.square_off(job.square_off_orders, ctx.broker, job, ctx.retry_policy)
    except Exception as e:
        failed = getattr(e, "failed", {})
        placed = getattr(e, "placed", {})
        if not isinstance(e, SquareOffError):
            logger.error("%s: square-off crashed: %s", job.id, e, exc_info=True)
        log_event(TradeEvent.SQUARE_OFF_FAILED, "premium_monitor", {
            "job_id": job.id, "failed": failed, "placed": placed, "error": repr(e),
        })
        await send_discord_alert(
            "🚨 STOP HIT — SQUARE-OFF FAILED, ACT NOW",
            f"**{job.id}** combined premium {live:.2f} >= stop {stop:.2f}\n"
            f"{e}\nFailed: {', '.join(failed) or 'n/a'}\n"
            f"Placed: {', '.join(placed) or 'none'}",
            color=0xFF0000,
        )
        return TickResult(TickStatus.SQUARE_OFF_FAILED, str(e), {"failed": failed, "placed": placed})

    log_event(TradeEvent.SQUARE_OFF_PLACED, "premium_monitor", {"job_id": job.id, **result})
    await send_discord_alert(
        "🛑 COMBINED STOP HIT — SQUARED OFF",
        f"**{job.id}** combined premium {live:.2f} >= stop {stop:.2f}\n"
        f"Closed ({job.exit_strategy.value}): {', '.join(result.get('placed', {})) or 'none'}\n"
        f"Skipped: {', '.join(result.get('skipped', [])) or 'none'}",
        color=0xFF0000,
    )

    if job.on_square_off_set_aborted:
        try:
            await with_remote_retry(
                lambda: ctx.store.patch(job.id, {"user_override": UserOverride.ABORT.value}),
                "set_aborted", ctx.retry_policy,
            )
        except TransientRemoteError as e:
            logger.warning("%s: could not mark trade aborted after square-off — %s", job.id, e)

    return TickResult(TickStatus.SQUARED_OFF, f"squared off at {live:.2f}", result)


# ── Runner ──

async def _tick_entry(entry: dict, queue: JobQueue, ctx: TickContext):
    """Tick one claimed entry and ack/release it. Returns the outcome label."""
    try:
        job = JobRecord.from_dict(entry["job"])
    except (KeyError, TypeError, ValueError) as e:
        logger.error("Dropping malformed entry %s: %s", entry.get("entry_id"), e)
        log_event(TradeEvent.ERROR, "premium_monitor", {
            "entry_id": entry.get("entry_id"), "job_id": entry.get("job_id"), "error": str(e),
        })
        await asyncio.to_thread(queue.ack, entry)
        return "malformed"

    try:
        result = await run_tick(job, ctx)
    except NotYetTriggered:
        await asyncio.to_thread(queue.release, entry, TICK_INTERVAL_SEC, "not_triggered")
        return "pending"
    except TransientRemoteError as e:
        await asyncio.to_thread(queue.release, entry, TICK_INTERVAL_SEC, f"transient: {e.operation}")
        return "transient"
    except Exception as e:
        logger.error("%s: tick crashed: %s", job.id, e, exc_info=True)
        log_event(TradeEvent.ERROR, "premium_monitor", {"job_id": job.id, "error": repr(e)})
        await asyncio.to_thread(queue.release, entry, TICK_INTERVAL_SEC, f"error: {e!r}")
        await send_discord_alert(
            "⚠️ PREMIUM MONITOR ERROR",
            f"**{job.id}** gen {job.generation}: `{e!r}`\nJob released for retry.",
            color=0xFFAA00,
        )
        return "error"

    if not await asyncio.to_thread(queue.ack, entry):
        logger.info("%s gen %d: already superseded at ack", job.id, job.generation)
    return result.status.value


async def run_pass(
    queue_name: str = EXIT_TRADING_QUEUE,
    store: TradeStore | None = None,
    queue: JobQueue | None = None,
    broker_factory: Callable[[str], object] = KiteClient.from_env,
    retry_policy: RetryPolicy | None = None,
) -> dict:
    """Claim every due job on the queue and tick each once. Returns outcome counts."""
    store = store or TradeStore()
    queue = queue or JobQueue()

    entries = await asyncio.to_thread(queue.claim_due, queue_name)
    if not entries:
        logger.info("No due jobs on %s", queue_name)
        write_heartbeat("premium_monitor")
        return {}

    logger.info("Ticking %d job(s) on %s", len(entries), queue_name)
    brokers = {}
    for entry in entries:
        user = (entry.get("job") or {}).get("user", "")
        if user not in brokers:
            brokers[user] = broker_factory(user)
            await brokers[user].start()

    try:
        outcomes = await asyncio.gather(*[
            _tick_entry(entry, queue, TickContext(
                broker=brokers[(entry.get("job") or {}).get("user", "")],
                store=store,
                queue=queue,
                queue_name=queue_name,
                time_remaining=time_remaining_until_market_close,
                retry_policy=retry_policy,
                extra_context=entry.get("context") or {},
            ))
            for entry in entries
        ])
    finally:
        for broker in brokers.values():
            await broker.stop()

    counts = {}
    for outcome in outcomes:
        counts[outcome] = counts.get(outcome, 0) + 1
    logger.info("Pass complete: %s", ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))

    write_heartbeat("premium_monitor")
    return counts


async def run_loop(queue_name: str = EXIT_TRADING_QUEUE):
    """Tick until the queue is empty. After the close every tick resolves."""
    queue = JobQueue()
    while True:
        await run_pass(queue_name, queue=queue)
        if not queue.list_entries(queue_name):
            logger.info("Queue %s drained, exiting loop", queue_name)
            return
        await asyncio.sleep(TICK_INTERVAL_SEC)


def add_job(path: str, queue_name: str = EXIT_TRADING_QUEUE,
            store: TradeStore | None = None, queue: JobQueue | None = None) -> JobRecord:
    """Register a trade from a JSON file and queue its first generation."""
    store = store or TradeStore()
    queue = queue or JobQueue()

    with open(path) as f:
        job = JobRecord.from_dict(json.load(f))
    job = replace(job, generation=0, anchor=None)

    store.register_sync(job)
    queue.enqueue_sync(queue_name, job)
    log_event(TradeEvent.JOB_REGISTERED, "premium_monitor", {
        "job_id": job.id, "legs": [leg.symbol for leg in job.legs],
        "initial_aggregate": round(job.initial_aggregate, 2),
        "stop_percent": job.risk.stop_percent, "queue": queue_name,
    })
    logger.info("Queued %s on %s (premium %.2f, stop %.1f%%)",
                job.id, queue_name, job.initial_aggregate, job.risk.stop_percent)
    return job


def show_status(queue_name: str = EXIT_TRADING_QUEUE,
                store: TradeStore | None = None, queue: JobQueue | None = None):
    """Display queued generations and tracked trades."""
    entries = (queue or JobQueue()).list_entries(queue_name)
    trades = (store or TradeStore()).load()
    console = Console()

    console.print(f"[bold]PREMIUM MONITOR[/bold] — {datetime.now(IST).strftime('%I:%M %p IST, %a %b %d')}")

    if not entries:
        console.print(f"[dim]No jobs queued on {queue_name}.[/dim]")
    else:
        table = Table(title=f"Queued on {queue_name}", header_style="bold cyan", box=None)
        table.add_column("Job")
        table.add_column("Gen", justify="right")
        table.add_column("Premium", justify="right")
        table.add_column("Anchor", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("State")
        for e in entries:
            job = JobRecord.from_dict(e["job"])
            state = "[yellow]claimed[/yellow]" if e.get("claimed_at") else (e.get("last_reason") or "due")
            table.add_row(
                e["job_id"], str(e["generation"]), f"{job.initial_aggregate:.2f}",
                f"{job.anchor:.2f}" if job.anchor is not None else "-",
                str(e.get("attempts", 0)), state,
            )
        console.print(table)

    if trades:
        table = Table(title="Trades", header_style="bold cyan", box=None)
        table.add_column("Trade")
        table.add_column("Override")
        table.add_column("Heartbeat")
        table.add_column("Trailing SL", justify="right")
        for trade_id, trade in sorted(trades.items()):
            override = trade.get("user_override", "NONE")
            table.add_row(
                trade_id,
                f"[red]{override}[/red]" if override == UserOverride.ABORT.value else override,
                trade.get("last_heartbeat_at", "never"),
                str(trade.get("live_trailing_sl", "-")),
            )
        console.print(table)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Premium Monitor — combined-premium trailing stop")
    parser.add_argument("--once", action="store_true", help="Single pass over due jobs (for cron, default)")
    parser.add_argument("--loop", action="store_true", help="Keep ticking until the queue drains")
    parser.add_argument("--status", action="store_true", help="Show queued jobs and trades")
    parser.add_argument("--abort", metavar="JOB_ID", help="Set user_override=ABORT on a trade")
    parser.add_argument("--add", metavar="FILE", help="Register a job from JSON and queue it")
    parser.add_argument("--check", action="store_true", help="Check runner heartbeats")
    parser.add_argument("--queue", default=EXIT_TRADING_QUEUE, help="Queue name")
    args = parser.parse_args()

    if args.status:
        show_status(args.queue)
    elif args.abort:
        TradeStore().set_user_override_sync(args.abort, UserOverride.ABORT)
    elif args.add:
        add_job(args.add, args.queue)
    elif args.check:
        problems = check_heartbeats()
        for service, status, age in problems:
            logger.warning("Service %s: %s (age %.1f min)", service, status, age)
        if problems:
            asyncio.run(send_discord_alert(
                "⚠️ PREMIUM MONITOR STALE",
                "\n".join(f"{s}: {st} ({a} min)" for s, st, a in problems),
                color=0xFFAA00,
            ))
            sys.exit(1)
        logger.info("All services healthy")
    else:
        ok, issues = preflight_check(fatal=False)
        if not ok:
            log_event(TradeEvent.PREFLIGHT_FAILED, "premium_monitor", {"issues": issues})
            asyncio.run(send_discord_alert(
                "🚨 PREMIUM MONITOR PREFLIGHT FAILED",
                "\n".join(issues), color=0xFF0000,
            ))
            sys.exit(1)
        if args.loop:
            asyncio.run(run_loop(args.queue))
        else:
            asyncio.run(run_pass(args.queue))
