"""
Money-weighted rate of return (XIRR).

Solves for the annual rate ``r`` that brings the net present value of a
dated series of cash flows to zero:

    sum(amount_i / (1 + r) ** (days_i / 365)) = 0

where ``days_i`` is measured from the earliest flow. Outflows (money put in)
are negative and inflows (money taken out, or the terminal market value)
are positive.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Iterable, Sequence

import numpy as np

from ..activities import Activity, ActivityBehavior, BehaviorMap, DIVIDEND, sort_activities
from ..holdings import is_well_formed
from ..valuation import ValuationPoint

DAYS_PER_YEAR = 365.0


@dataclass(frozen=True)
class CashFlow:
    """A dated cash movement, negative for contributions."""
    flow_date: datetime | date
    amount: float


def _as_datetime(value: datetime | date) -> datetime:
    if isinstance(value, datetime):
        # Mixed aware and naive inputs are compared on wall-clock time
        return value.replace(tzinfo=None)
    return datetime.combine(value, time())


def calculate_xirr(
    cash_flows: Sequence[CashFlow],
    guess: float = 0.1,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> float | None:
    """
    Calculate the XIRR of a series of cash flows with Newton-Raphson.

    The input is not modified; flows are sorted by date internally.

    Args:
        cash_flows: Dated flows, at least two.
        guess: Starting rate.
        max_iterations: Iteration cap.
        tolerance: Convergence threshold on successive rates, also used as
            the minimum derivative magnitude.

    Returns:
        The annualized rate as a float (0.1 = 10%), or None when there are
        fewer than two flows, the derivative vanishes, the rate leaves the
        domain ``r > -1`` or the iteration does not converge.
    """
    if len(cash_flows) < 2:
        return None

    ordered = sorted(cash_flows, key=lambda cf: _as_datetime(cf.flow_date))
    first = _as_datetime(ordered[0].flow_date)
    years = np.array(
        [(_as_datetime(cf.flow_date) - first).total_seconds() / 86400.0 / DAYS_PER_YEAR for cf in ordered],
        dtype=float,
    )
    amounts = np.array([float(cf.amount) for cf in ordered], dtype=float)

    rate = float(guess)
    for _ in range(max_iterations):
        base = 1.0 + rate
        if base <= 0:
            return None

        with np.errstate(over="raise", divide="raise", invalid="raise"):
            try:
                discount = np.power(base, years)
                value = float(np.sum(amounts / discount))
                derivative = float(np.sum(-years * amounts / (discount * base)))
            except FloatingPointError:
                return None

        if not np.isfinite(value) or not np.isfinite(derivative):
            return None
        if abs(derivative) < tolerance:
            return None

        next_rate = rate - value / derivative
        if abs(next_rate - rate) < tolerance:
            return next_rate
        rate = next_rate

    return None


def cash_flows_from_activities(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    terminal_value: Decimal | float | None = None,
    as_of: datetime | None = None,
    rate: Decimal = Decimal("1"),
) -> list[CashFlow]:
    """
    Build XIRR cash flows for one investment's activities.

    - ADD: ``-(amount + fee)``
    - REMOVE: ``amount - fee``
    - DIVIDEND: ``amount - fee``

    The current market value, when given and non-zero, is added as a final
    inflow at ``as_of``.

    Args:
        activities: The investment's activities.
        behavior_map: Activity type to behavior lookup.
        terminal_value: Market value of what is still held.
        as_of: Date of the terminal value. Defaults to now.
        rate: Multiplier converting activity amounts into the report currency.

    Returns:
        Cash flows in date order.
    """
    flows: list[CashFlow] = []
    for activity in sort_activities(activities):
        if not is_well_formed(activity):
            continue
        behavior = behavior_map.behavior_for(activity.activity_type)
        amount = activity.amount * rate
        fee = Decimal(str(activity.fee)) * rate
        if behavior == ActivityBehavior.ADD:
            flows.append(CashFlow(activity.activity_datetime, -float(amount + fee)))
        elif behavior == ActivityBehavior.REMOVE:
            flows.append(CashFlow(activity.activity_datetime, float(amount - fee)))
        elif activity.activity_type.upper() == DIVIDEND:
            flows.append(CashFlow(activity.activity_datetime, float(amount - fee)))

    if terminal_value is not None and terminal_value != 0:
        flows.append(CashFlow(as_of or datetime.now(), float(terminal_value)))
    return flows


def cash_flows_from_series(points: Sequence[ValuationPoint]) -> list[CashFlow]:
    """
    Build portfolio-level cash flows from a daily valuation series.

    Every non-zero daily net flow becomes a flow on that day, and the last
    day's market value is the terminal inflow.
    """
    flows = [CashFlow(p.day, float(p.net_flow)) for p in points if p.net_flow != 0]
    if points and points[-1].market_value != 0:
        flows.append(CashFlow(points[-1].day, float(points[-1].market_value)))
    return flows

