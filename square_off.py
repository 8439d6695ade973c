#!/usr/bin/env python3
"""
SQUARE OFF — Close the legs of a triggered position.

Places the opposite MARKET order for every entry order of the position,
concurrently. With ExitStrategy.EXIT_LOSING only legs trading above their
average entry price (the losing legs of a short) are closed.

Failures are not retried here: a half-closed position needs a human, so
SquareOffError reports both what failed and what went through.
"""

import asyncio

from job_record import ExitStrategy, JobRecord, SquareOffOrder
from log_setup import get_logger
from remote_retry import RetryPolicy, TransientRemoteError, with_remote_retry

logger = get_logger(__name__)

__all__ = ["SquareOffError", "select_orders", "square_off_positions"]


class SquareOffError(Exception):
    """Raised when one or more square-off orders could not be placed."""
    def __init__(self, message: str, failed: dict | None = None, placed: dict | None = None):
        self.failed = failed or {}
        self.placed = placed or {}
        super().__init__(message)


async def select_orders(
    orders: tuple[SquareOffOrder, ...],
    broker,
    strategy: ExitStrategy,
    policy: RetryPolicy | None = None,
) -> list[SquareOffOrder]:
    """Orders to close under the given exit strategy."""
    if strategy == ExitStrategy.EXIT_ALL:
        return list(orders)

    prices = await asyncio.gather(*[
        with_remote_retry(
            lambda o=o: broker.get_live_price(o.symbol, o.exchange),
            f"square_off_price:{o.symbol}", policy,
        )
        for o in orders
    ])
    losing = [o for o, price in zip(orders, prices) if price > o.average_price]
    logger.info("EXIT_LOSING: %d of %d legs losing (%s)",
                len(losing), len(orders), ", ".join(o.symbol for o in losing) or "none")
    return losing


async def square_off_positions(
    orders: tuple[SquareOffOrder, ...],
    broker,
    job: JobRecord,
    policy: RetryPolicy | None = None,
) -> dict:
    """Exit the position. Returns {"placed": {symbol: order_id}, "skipped": [...]}.

    Raises SquareOffError if any exit order is rejected.
    """
    if not orders:
        raise SquareOffError(f"{job.id}: no square-off orders configured")

    try:
        to_close = await select_orders(orders, broker, job.exit_strategy, policy)
    except TransientRemoteError as e:
        raise SquareOffError(f"{job.id}: could not price legs for {job.exit_strategy.value} — {e}") from e
    skipped = [o.symbol for o in orders if o not in to_close]

    results = await asyncio.gather(*[
        broker.place_order(
            symbol=o.symbol,
            exchange=o.exchange,
            transaction_type=o.exit_transaction_type,
            quantity=o.quantity,
            product=o.product,
            order_type="MARKET",
            tag=f"sqoff-{job.id}",
        )
        for o in to_close
    ], return_exceptions=True)

    placed, failed = {}, {}
    for order, result in zip(to_close, results):
        if isinstance(result, Exception):
            failed[order.symbol] = repr(result)
            logger.error("%s: square-off %s %dx %s FAILED — %s",
                         job.id, order.exit_transaction_type, order.quantity, order.symbol, result)
        else:
            placed[order.symbol] = (result or {}).get("order_id", "")
            logger.info("%s: square-off %s %dx %s placed (order %s)",
                        job.id, order.exit_transaction_type, order.quantity,
                        order.symbol, placed[order.symbol])

    if failed:
        raise SquareOffError(
            f"{job.id}: {len(failed)} of {len(to_close)} square-off orders failed",
            failed=failed, placed=placed,
        )
    return {"placed": placed, "skipped": skipped}
