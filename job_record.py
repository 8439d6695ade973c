#!/usr/bin/env python3
"""
JOB RECORD — The unit of state threaded across exit-checker ticks.

A JobRecord is one *generation* of a monitored multi-leg short position.
It is never mutated: a trail event produces a new generation through
with_anchor(), and the previous generation simply stops being ticked.

Serialized form (queue.json / --add FILE) uses the same field names as
the dataclasses, e.g.:

    {
      "id": "64f0c...", "user": "AB1234",
      "legs": [{"symbol": "NIFTY24JUN22500CE", "entry_price": 150.0}, ...],
      "risk": {"stop_percent": 10, "trail_percent": 10, "trail_trigger_percent": 5},
      "anchor": null,
      "square_off_orders": [{"symbol": "NIFTY24JUN22500CE", "transaction_type": "SELL",
                             "quantity": 50, "average_price": 150.0}],
      "exit_strategy": "EXIT_ALL",
      "generation": 0
    }
"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional

from config import DEFAULT_EXCHANGE

__all__ = [
    "ExitStrategy", "Leg", "SquareOffOrder", "RiskParams", "JobRecord",
]


class ExitStrategy(str, Enum):
    """Which legs a triggered square-off closes."""
    EXIT_ALL = "EXIT_ALL"
    EXIT_LOSING = "EXIT_LOSING"


@dataclass(frozen=True)
class Leg:
    """One instrument of the position and its average entry price."""
    symbol: str
    entry_price: float


@dataclass(frozen=True)
class SquareOffOrder:
    """An entry order of the position; square-off places its opposite."""
    symbol: str
    transaction_type: str       # Entry side: "SELL" for a short leg
    quantity: int
    average_price: float = 0.0
    exchange: str = DEFAULT_EXCHANGE
    product: str = "MIS"        # MIS (intraday) or NRML (carry forward)

    @property
    def exit_transaction_type(self) -> str:
        return "BUY" if self.transaction_type.upper() == "SELL" else "SELL"


@dataclass(frozen=True)
class RiskParams:
    """Stop configuration. Strategies differ only in which optionals are set.

    stop_percent:           initial stop, % above the premium received
    trail_percent:          stop distance once trailed (defaults to stop_percent)
    trail_trigger_percent:  premium drop from the anchor that re-bases the stop
    """
    stop_percent: float
    trail_percent: Optional[float] = None
    trail_trigger_percent: Optional[float] = None

    @property
    def trailing_enabled(self) -> bool:
        # A zero trigger means "never trail", same as unset
        return bool(self.trail_trigger_percent)


@dataclass(frozen=True)
class JobRecord:
    id: str
    legs: tuple[Leg, ...]
    risk: RiskParams
    user: str = ""
    anchor: Optional[float] = None
    square_off_orders: tuple[SquareOffOrder, ...] = field(default_factory=tuple)
    exit_strategy: ExitStrategy = ExitStrategy.EXIT_ALL
    on_square_off_set_aborted: bool = False
    generation: int = 0

    @property
    def initial_aggregate(self) -> float:
        """Combined premium received at entry (sum of leg entry prices)."""
        return sum(leg.entry_price for leg in self.legs)

    def with_anchor(self, new_anchor: float) -> "JobRecord":
        """Successor generation re-based at new_anchor."""
        return replace(self, anchor=new_anchor, generation=self.generation + 1)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["legs"] = [asdict(leg) for leg in self.legs]
        data["square_off_orders"] = [asdict(o) for o in self.square_off_orders]
        data["exit_strategy"] = self.exit_strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobRecord":
        """Build and validate a JobRecord from its serialized form.

        Raises ValueError on a malformed record; this is the only place
        job state is validated.
        """
        job_id = str(data.get("id") or "")
        if not job_id:
            raise ValueError("job record missing id")

        legs = tuple(
            Leg(symbol=str(leg["symbol"]), entry_price=float(leg["entry_price"]))
            for leg in data.get("legs") or []
        )
        if not legs:
            raise ValueError(f"job {job_id}: no legs")
        for leg in legs:
            if leg.entry_price <= 0:
                raise ValueError(f"job {job_id}: leg {leg.symbol} has non-positive entry price")

        raw_risk = data.get("risk") or {}
        risk = RiskParams(
            stop_percent=float(raw_risk["stop_percent"]),
            trail_percent=_optional_float(raw_risk.get("trail_percent")),
            trail_trigger_percent=_optional_float(raw_risk.get("trail_trigger_percent")),
        )
        if risk.stop_percent <= 0:
            raise ValueError(f"job {job_id}: stop_percent must be positive")

        anchor = _optional_float(data.get("anchor"))
        if anchor is not None and anchor <= 0:
            raise ValueError(f"job {job_id}: anchor must be positive, got {anchor}")

        orders = tuple(
            SquareOffOrder(
                symbol=str(o["symbol"]),
                transaction_type=str(o.get("transaction_type", "SELL")).upper(),
                quantity=int(o["quantity"]),
                average_price=float(o.get("average_price") or 0.0),
                exchange=o.get("exchange") or DEFAULT_EXCHANGE,
                product=o.get("product") or "MIS",
            )
            for o in data.get("square_off_orders") or []
        )

        return cls(
            id=job_id,
            legs=legs,
            risk=risk,
            user=str(data.get("user") or ""),
            anchor=anchor,
            square_off_orders=orders,
            exit_strategy=ExitStrategy(data.get("exit_strategy") or ExitStrategy.EXIT_ALL.value),
            on_square_off_set_aborted=bool(data.get("on_square_off_set_aborted", False)),
            generation=int(data.get("generation", 0)),
        )


def _optional_float(value) -> Optional[float]:
    return None if value is None else float(value)
