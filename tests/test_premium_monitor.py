#!/usr/bin/env python3
"""Tests for premium_monitor.py — tick orchestration and the cron runner."""

import asyncio
import json
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

CE, PE = "NIFTY24JUN22500CE", "NIFTY24JUN22500PE"
Q = "exit_trading"


@pytest.fixture(autouse=True)
def _quiet_side_effects(monkeypatch):
    """No Discord, no runner heartbeat file."""
    import premium_monitor
    alert = AsyncMock()
    monkeypatch.setattr(premium_monitor, "send_discord_alert", alert)
    monkeypatch.setattr(premium_monitor, "write_heartbeat", MagicMock())
    return alert


def _ctx(prices, fast_retry, abort=False, remaining=timedelta(hours=1), square_off=None):
    """TickContext over fakes. prices: {symbol: price} or an exception to raise."""
    from premium_monitor import TickContext

    broker = AsyncMock()
    if isinstance(prices, BaseException):
        broker.get_live_price = AsyncMock(side_effect=prices)
    else:
        broker.get_live_price = AsyncMock(side_effect=lambda symbol, exchange: prices[symbol])
    store = AsyncMock()
    store.heartbeat = AsyncMock(return_value={"user_override": "ABORT" if abort else "NONE"})
    store.patch = AsyncMock(return_value={})
    queue = AsyncMock()
    queue.enqueue = AsyncMock(return_value={})

    return TickContext(
        broker=broker,
        store=store,
        queue=queue,
        queue_name=Q,
        square_off=square_off or AsyncMock(return_value={"placed": {CE: "1", PE: "2"}, "skipped": []}),
        time_remaining=lambda: remaining,
        retry_policy=fast_retry,
        extra_context={"raw_orders": ["1", "2"]},
    )


def _prices(ce, pe):
    return {CE: ce, PE: pe}


# =============================================================================
# SHORT-CIRCUITS
# =============================================================================

class TestShortCircuits:

    def test_window_closed_skips_heartbeat_and_fetch(self, make_job, fast_retry):
        from premium_monitor import TickStatus, run_tick
        ctx = _ctx(_prices(200, 200), fast_retry, remaining=timedelta(seconds=-1))

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.WINDOW_CLOSED
        ctx.store.heartbeat.assert_not_awaited()
        ctx.broker.get_live_price.assert_not_awaited()
        ctx.queue.enqueue.assert_not_awaited()

    def test_zero_remaining_still_ticks(self, make_job, fast_retry):
        from premium_monitor import NotYetTriggered, run_tick
        ctx = _ctx(_prices(160, 160), fast_retry, remaining=timedelta(0))
        with pytest.raises(NotYetTriggered):
            asyncio.run(run_tick(make_job(), ctx))
        ctx.store.heartbeat.assert_awaited_once()

    def test_abort_skips_fetch(self, make_job, fast_retry):
        from premium_monitor import TickStatus, run_tick
        ctx = _ctx(_prices(200, 200), fast_retry, abort=True)

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.ABORTED
        assert ctx.broker.get_live_price.await_count == 0
        ctx.queue.enqueue.assert_not_awaited()
        ctx.square_off.assert_not_awaited()

    def test_heartbeat_failure_does_not_block_evaluation(self, make_job, fast_retry):
        """Store down: tick still prices the legs and triggers."""
        from premium_monitor import TickStatus, run_tick
        ctx = _ctx(_prices(170, 170), fast_retry)
        ctx.store.heartbeat = AsyncMock(side_effect=ConnectionError("store down"))

        result = asyncio.run(run_tick(make_job(), ctx))

        assert ctx.broker.get_live_price.await_count == 2
        assert result.status == TickStatus.SQUARED_OFF


# =============================================================================
# PRICE FETCH
# =============================================================================

class TestPriceFetch:

    def test_exhausted_fetch_raises_transient(self, make_job, fast_retry):
        from premium_monitor import run_tick
        from remote_retry import TransientRemoteError
        ctx = _ctx(ConnectionError("quote down"), fast_retry)

        with pytest.raises(TransientRemoteError) as exc:
            asyncio.run(run_tick(make_job(), ctx))

        assert exc.value.operation.startswith("live_price:")
        ctx.queue.enqueue.assert_not_awaited()
        ctx.square_off.assert_not_awaited()

    def test_one_leg_failing_fails_the_tick(self, make_job, fast_retry):
        from premium_monitor import run_tick
        from remote_retry import TransientRemoteError
        ctx = _ctx(None, fast_retry)

        async def price(symbol, exchange):
            if symbol == PE:
                raise TimeoutError()
            return 400.0

        ctx.broker.get_live_price = AsyncMock(side_effect=price)
        with pytest.raises(TransientRemoteError):
            asyncio.run(run_tick(make_job(), ctx))
        ctx.square_off.assert_not_awaited()

    def test_failing_leg_cancels_sibling_fetch(self, make_job, fast_retry):
        from premium_monitor import run_tick
        from remote_retry import TransientRemoteError
        ctx = _ctx(None, fast_retry)
        cancelled = []

        async def price(symbol, exchange):
            if symbol == PE:
                raise ConnectionError("quote down")
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(symbol)
                raise
            return 400.0

        ctx.broker.get_live_price = AsyncMock(side_effect=price)

        async def tick():
            with pytest.raises(TransientRemoteError):
                await run_tick(make_job(), ctx)
            return list(cancelled)

        assert asyncio.run(tick()) == [CE]

    def test_fetch_uses_context_exchange(self, make_job, fast_retry):
        from premium_monitor import NotYetTriggered, run_tick
        ctx = _ctx(_prices(150, 150), fast_retry)
        with pytest.raises(NotYetTriggered):
            asyncio.run(run_tick(make_job(), ctx))
        assert {c.args for c in ctx.broker.get_live_price.await_args_list} == {(CE, "NFO"), (PE, "NFO")}


# =============================================================================
# DECISIONS
# =============================================================================

class TestTrigger:

    def test_stop_hit_squares_off(self, make_job, fast_retry, _quiet_side_effects):
        """Legs [150, 150], stop 10%, no trailing, live 340 -> square off."""
        from premium_monitor import TickStatus, run_tick
        job = make_job(risk={"stop_percent": 10})
        ctx = _ctx(_prices(170, 170), fast_retry)

        result = asyncio.run(run_tick(job, ctx))

        assert result.status == TickStatus.SQUARED_OFF
        assert result.payload["placed"] == {CE: "1", PE: "2"}
        ctx.square_off.assert_awaited_once_with(job.square_off_orders, ctx.broker, job, fast_retry)
        ctx.queue.enqueue.assert_not_awaited()
        _quiet_side_effects.assert_awaited()

    def test_sets_abort_after_square_off_when_configured(self, make_job, fast_retry):
        from premium_monitor import run_tick
        job = make_job(on_square_off_set_aborted=True)
        ctx = _ctx(_prices(170, 170), fast_retry)

        asyncio.run(run_tick(job, ctx))

        ctx.store.patch.assert_awaited_once_with("STRADDLE-1", {"user_override": "ABORT"})

    def test_no_abort_patch_by_default(self, make_job, fast_retry):
        from premium_monitor import run_tick
        ctx = _ctx(_prices(170, 170), fast_retry)
        asyncio.run(run_tick(make_job(), ctx))
        ctx.store.patch.assert_not_awaited()

    def test_square_off_failure_is_terminal(self, make_job, fast_retry, _quiet_side_effects):
        from premium_monitor import TickStatus, run_tick
        from square_off import SquareOffError
        square_off = AsyncMock(side_effect=SquareOffError("1 of 2 failed", failed={PE: "rejected"}, placed={CE: "1"}))
        ctx = _ctx(_prices(170, 170), fast_retry, square_off=square_off)

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.SQUARE_OFF_FAILED
        assert result.payload["failed"] == {PE: "rejected"}
        square_off.assert_awaited_once()  # not retried
        assert _quiet_side_effects.await_count == 1

    def test_squares_off_before_alerting(self, make_job, fast_retry, _quiet_side_effects):
        from premium_monitor import run_tick
        calls = []

        async def square_off(orders, broker, job, policy):
            calls.append("square_off")
            return {"placed": {CE: "1", PE: "2"}, "skipped": []}

        _quiet_side_effects.side_effect = lambda *a, **kw: calls.append("alert")
        ctx = _ctx(_prices(170, 170), fast_retry, square_off=AsyncMock(side_effect=square_off))

        asyncio.run(run_tick(make_job(), ctx))

        assert calls == ["square_off", "alert"]

    def test_unexpected_square_off_error_is_terminal(self, make_job, fast_retry, _quiet_side_effects):
        from premium_monitor import TickStatus, run_tick
        square_off = AsyncMock(side_effect=RuntimeError("session closed"))
        ctx = _ctx(_prices(170, 170), fast_retry, square_off=square_off)

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.SQUARE_OFF_FAILED
        assert "session closed" in result.message
        square_off.assert_awaited_once()
        _quiet_side_effects.assert_awaited_once()

    def test_exit_losing_gets_tick_retry_policy(self, make_job, fast_retry):
        from premium_monitor import run_tick
        job = make_job(exit_strategy="EXIT_LOSING")
        ctx = _ctx(_prices(170, 170), fast_retry)

        asyncio.run(run_tick(job, ctx))

        assert ctx.square_off.await_args.args[3] is fast_retry


class TestContinue:

    def test_below_stop_not_yet_triggered(self, make_job, fast_retry):
        """Live 320 against stop 330."""
        from premium_monitor import NotYetTriggered, run_tick
        job = make_job(risk={"stop_percent": 10})
        ctx = _ctx(_prices(160, 160), fast_retry)

        with pytest.raises(NotYetTriggered) as exc:
            asyncio.run(run_tick(job, ctx))

        assert exc.value.live_aggregate == 320
        assert exc.value.active_stop == pytest.approx(330)
        ctx.queue.enqueue.assert_not_awaited()
        ctx.square_off.assert_not_awaited()


class TestTrail:

    def test_trail_enqueues_exactly_one_successor(self, make_job, fast_retry):
        """300 received, live 280 (-6.67%) -> next generation anchored at 280."""
        from premium_monitor import TickStatus, run_tick
        ctx = _ctx(_prices(140, 140), fast_retry)

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.TRAILED
        assert result.payload == {"generation": 1, "anchor": 280}
        ctx.queue.enqueue.assert_awaited_once()
        name, successor, context = ctx.queue.enqueue.await_args.args
        assert name == Q
        assert successor.anchor == 280
        assert context == {"raw_orders": ["1", "2"]}
        ctx.square_off.assert_not_awaited()

    def test_patch_failure_still_trails(self, make_job, fast_retry):
        from premium_monitor import TickStatus, run_tick
        ctx = _ctx(_prices(140, 140), fast_retry)
        ctx.store.patch = AsyncMock(side_effect=ConnectionError("store down"))

        result = asyncio.run(run_tick(make_job(), ctx))

        assert result.status == TickStatus.TRAILED
        ctx.queue.enqueue.assert_awaited_once()

    def test_enqueue_failure_fails_the_tick(self, make_job, fast_retry):
        from premium_monitor import run_tick
        ctx = _ctx(_prices(140, 140), fast_retry)
        ctx.queue.enqueue = AsyncMock(side_effect=OSError("disk full"))
        with pytest.raises(OSError):
            asyncio.run(run_tick(make_job(), ctx))

    def test_successor_generations(self, make_job, fast_retry):
        """Anchor 280: live 300 continues against 308, live 310 triggers."""
        from premium_monitor import NotYetTriggered, TickStatus, run_tick
        gen1 = make_job().with_anchor(280)

        with pytest.raises(NotYetTriggered) as exc:
            asyncio.run(run_tick(gen1, _ctx(_prices(150, 150), fast_retry)))
        assert exc.value.active_stop == pytest.approx(308)

        result = asyncio.run(run_tick(gen1, _ctx(_prices(155, 155), fast_retry)))
        assert result.status == TickStatus.SQUARED_OFF


# =============================================================================
# RUNNER
# =============================================================================

@pytest.fixture
def runner(tmp_path, monkeypatch, make_job, fast_retry):
    """Real queue/store in tmp, fake broker per user, market open."""
    import premium_monitor
    from job_queue import JobQueue
    from trade_store import TradeStore

    monkeypatch.setattr(premium_monitor, "time_remaining_until_market_close", lambda: timedelta(hours=1))
    store = TradeStore(tmp_path / "trades.json")
    queue = JobQueue(tmp_path / "queue.json")
    brokers = {}
    prices = {CE: 150.0, PE: 150.0}

    def factory(user):
        broker = AsyncMock()
        broker.get_live_price = AsyncMock(side_effect=lambda symbol, exchange: prices[symbol])
        broker.place_order = AsyncMock(return_value={"order_id": "OID"})
        brokers[user] = broker
        return broker

    def add(job):
        store.register_sync(job)
        queue.enqueue_sync(Q, job, now=time.time() - 1)

    def run():
        return asyncio.run(premium_monitor.run_pass(
            Q, store=store, queue=queue, broker_factory=factory, retry_policy=fast_retry,
        ))

    return SimpleNamespace(store=store, queue=queue, brokers=brokers, prices=prices, add=add, run=run)


class TestRunPass:

    def test_empty_queue(self, runner):
        assert runner.run() == {}

    def test_not_triggered_is_released(self, runner, make_job):
        runner.add(make_job())
        assert runner.run() == {"pending": 1}

        [entry] = runner.queue.list_entries(Q)
        assert entry["claimed_at"] is None
        assert entry["run_after"] > time.time()
        assert entry["last_reason"] == "not_triggered"
        assert "last_heartbeat_at" in runner.store.get_sync("STRADDLE-1")

    def test_trigger_is_acked(self, runner, make_job):
        runner.add(make_job())
        runner.prices.update({CE: 200.0, PE: 140.0})

        assert runner.run() == {"squared_off": 1}
        assert runner.queue.list_entries(Q) == []
        assert runner.brokers["AB1234"].place_order.await_count == 2
        runner.brokers["AB1234"].stop.assert_awaited_once()

    def test_trail_leaves_only_successor(self, runner, make_job):
        runner.add(make_job())
        runner.prices.update({CE: 140.0, PE: 140.0})

        assert runner.run() == {"trailed": 1}
        [entry] = runner.queue.list_entries(Q)
        assert entry["generation"] == 1
        assert entry["job"]["anchor"] == 280.0
        assert entry["claimed_at"] is None
        assert runner.store.get_sync("STRADDLE-1")["live_trailing_sl"] == 308.0

    def test_transient_failure_is_released(self, runner, make_job):
        runner.add(make_job())
        runner.prices.clear()  # KeyError on every fetch

        assert runner.run() == {"transient": 1}
        [entry] = runner.queue.list_entries(Q)
        assert entry["last_reason"].startswith("transient: live_price:")

    def test_unexpected_error_released_and_alerted(self, runner, make_job, _quiet_side_effects):
        runner.add(make_job())
        runner.prices.update({CE: None, PE: None})

        assert runner.run() == {"error": 1}
        [entry] = runner.queue.list_entries(Q)
        assert entry["last_reason"].startswith("error:")
        _quiet_side_effects.assert_awaited_once()

    def test_aborted_is_acked(self, runner, make_job):
        from trade_store import UserOverride
        runner.add(make_job())
        runner.store.set_user_override_sync("STRADDLE-1", UserOverride.ABORT)

        assert runner.run() == {"aborted": 1}
        assert runner.queue.list_entries(Q) == []
        runner.brokers["AB1234"].get_live_price.assert_not_awaited()

    def test_window_closed_is_acked(self, runner, make_job, monkeypatch):
        import premium_monitor
        monkeypatch.setattr(premium_monitor, "time_remaining_until_market_close", lambda: timedelta(minutes=-5))
        runner.add(make_job())

        assert runner.run() == {"window_closed": 1}
        assert runner.queue.list_entries(Q) == []

    def test_malformed_entry_dropped(self, runner, make_job):
        runner.add(make_job())
        runner.queue.path.write_text(json.dumps([{
            **runner.queue.list_entries(Q)[0], "job": {"id": "BROKEN", "legs": []},
        }]))

        assert runner.run() == {"malformed": 1}
        assert runner.queue.list_entries(Q) == []

    def test_one_broker_per_user(self, runner, make_job):
        runner.add(make_job())
        runner.add(make_job(id="OTHER", user="CD5678"))
        runner.add(make_job(id="THIRD"))

        assert runner.run() == {"pending": 3}
        assert set(runner.brokers) == {"AB1234", "CD5678"}
        runner.brokers["AB1234"].start.assert_awaited_once()


class TestAddJob:

    def test_registers_and_queues_generation_zero(self, tmp_path, make_job):
        from job_queue import JobQueue
        from premium_monitor import add_job
        from trade_store import TradeStore

        path = tmp_path / "job.json"
        path.write_text(json.dumps({**make_job().with_anchor(280).to_dict()}))
        store = TradeStore(tmp_path / "trades.json")
        queue = JobQueue(tmp_path / "queue.json")

        job = add_job(str(path), Q, store=store, queue=queue)

        assert job.generation == 0 and job.anchor is None
        [entry] = queue.list_entries(Q)
        assert entry["generation"] == 0
        assert store.get_sync("STRADDLE-1")["user_override"] == "NONE"


class TestShowStatus:

    def test_lists_queue_and_trades(self, tmp_path, make_job, capsys):
        from job_queue import JobQueue
        from premium_monitor import show_status
        from trade_store import TradeStore, UserOverride

        store = TradeStore(tmp_path / "trades.json")
        queue = JobQueue(tmp_path / "queue.json")
        job = make_job()
        store.register_sync(job)
        store.set_user_override_sync(job.id, UserOverride.ABORT)
        queue.enqueue_sync(Q, job.with_anchor(280))

        show_status(Q, store=store, queue=queue)

        out = capsys.readouterr().out
        assert "STRADDLE-1" in out
        assert "280.00" in out
        assert "ABORT" in out

    def test_empty(self, tmp_path, capsys):
        from job_queue import JobQueue
        from premium_monitor import show_status
        from trade_store import TradeStore

        show_status(Q, store=TradeStore(tmp_path / "t.json"), queue=JobQueue(tmp_path / "q.json"))
        assert "No jobs queued" in capsys.readouterr().out
