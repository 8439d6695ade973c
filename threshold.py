#!/usr/bin/env python3
"""
THRESHOLD — Combined-premium stop evaluation. Pure functions, no I/O.

Trailing SL method (short premium: lower combined premium is good):
  1. initial stop = premium received * (1 + stop%)
  2. every time the combined premium falls trail-trigger% below the last
     anchor, the anchor moves down to the live premium and the stop is
     re-based to anchor * (1 + trail%)

  e.g. premium received 400, stop 10%, trail 10%, trigger 5%
       stop = 440
       premium falls to 380 (-5%)  -> TRAIL, anchor 380, stop 418
       premium back to 390         -> CONTINUE (390 < 418, not a new low)
       premium to 420              -> TRIGGER (420 >= 418)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from job_record import RiskParams

__all__ = ["DecisionKind", "Decision", "evaluate", "trailing_stop_for"]


class DecisionKind(str, Enum):
    TRIGGER = "trigger"
    TRAIL = "trail"
    CONTINUE = "continue"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    active_stop: float
    live_aggregate: float
    new_anchor: Optional[float] = None  # Set only for TRAIL


def trailing_stop_for(risk: RiskParams, anchor: float) -> float:
    """Stop level for a position re-based at anchor."""
    pct = risk.trail_percent if risk.trail_percent is not None else risk.stop_percent
    return anchor * (1 + pct / 100)


def evaluate(
    risk: RiskParams,
    anchor: Optional[float],
    initial_aggregate: float,
    live_aggregate: float,
) -> Decision:
    """Decide TRIGGER / TRAIL / CONTINUE for one tick.

    The stop is inclusive: live_aggregate == active_stop triggers.
    """
    initial_stop = initial_aggregate * (1 + risk.stop_percent / 100)

    active_stop = initial_stop
    if risk.trailing_enabled and anchor is not None:
        active_stop = trailing_stop_for(risk, anchor)

    if live_aggregate >= active_stop:
        return Decision(DecisionKind.TRIGGER, active_stop, live_aggregate)

    if risk.trailing_enabled:
        reference = anchor if anchor is not None else initial_aggregate
        if reference > 0:
            change_pct = (live_aggregate - reference) / reference * 100
            if change_pct < 0 and abs(change_pct) >= risk.trail_trigger_percent:
                return Decision(
                    DecisionKind.TRAIL, active_stop, live_aggregate,
                    new_anchor=live_aggregate,
                )

    return Decision(DecisionKind.CONTINUE, active_stop, live_aggregate)
