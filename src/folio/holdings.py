"""
Holdings replay.

Folds an investment's activities, in date order, into a running quantity and
cost basis per account bucket. Activities without an account form their own
"Unassigned" bucket and never spill into named accounts. Totals across
accounts are sums of the per-bucket replays, so a STOCK_SPLIT recorded
against one account only multiplies that account's units.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable
import math
import warnings

from .activities import (
    Activity,
    ActivityBehavior,
    BehaviorMap,
    DIVIDEND,
    sort_activities,
    to_aware,
)


@dataclass
class HoldingState:
    """Running position for one investment in one account bucket.

    ``quantity`` may go negative when sells exceed buys; it is never clamped.
    ``fees`` and ``dividends`` are reporting totals and never touch the cost
    basis.
    """
    quantity: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    dividends: Decimal = Decimal("0")

    @property
    def average_price(self) -> Decimal:
        """Cost basis per unit held, zero when nothing is held."""
        if self.quantity <= 0:
            return Decimal("0")
        return self.cost_basis / self.quantity

    def copy(self) -> "HoldingState":
        return replace(self)

    def __add__(self, other: "HoldingState") -> "HoldingState":
        return HoldingState(
            quantity=self.quantity + other.quantity,
            cost_basis=self.cost_basis + other.cost_basis,
            fees=self.fees + other.fees,
            dividends=self.dividends + other.dividends,
        )


@dataclass
class ReplayStep:
    """State of the replayed slice right after ``activity`` was applied."""
    activity: Activity
    behavior: ActivityBehavior
    state: HoldingState = field(default_factory=HoldingState)


def _as_decimal(value: Decimal | int | float) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _is_finite_number(value: object) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return math.isfinite(value)
    return False


def is_well_formed(activity: Activity) -> bool:
    """Check that an activity can be replayed, warning when it cannot.

    Activities with an unparseable date or a non-finite quantity, price or
    fee are skipped by every replay.
    """
    if not isinstance(activity.activity_datetime, datetime):
        warnings.warn(
            f"Skipping activity {activity.activity_id} ({activity.symbol}): invalid date {activity.activity_datetime!r}",
            UserWarning
        )
        return False
    for name in ("quantity", "price", "fee"):
        value = getattr(activity, name)
        if not _is_finite_number(value):
            warnings.warn(
                f"Skipping activity {activity.activity_id} ({activity.symbol}): invalid {name} {value!r}",
                UserWarning
            )
            return False
    return True


def apply_activity(state: HoldingState, activity: Activity, behavior: ActivityBehavior) -> HoldingState:
    """
    Apply one activity to a holding state in place.

    - ADD: units and their cost are added.
    - REMOVE: cost basis drops by the removed units at the pre-removal
      average cost, then units are removed.
    - SPLIT: units are multiplied by the ratio stored in ``quantity``;
      cost basis is unchanged and a non-positive ratio is ignored.
    - NEUTRAL: no unit or cost effect; dividends are tallied.

    ADD and REMOVE use the absolute quantity, so a sell recorded with a
    negative quantity still removes units.

    Args:
        state: State to update.
        activity: The activity being applied.
        behavior: Behavior resolved for the activity's type.

    Returns:
        The same ``state`` object.
    """
    quantity = _as_decimal(activity.quantity)
    price = _as_decimal(activity.price)
    fee = _as_decimal(activity.fee)

    if behavior == ActivityBehavior.ADD:
        units = abs(quantity)
        state.quantity += units
        state.cost_basis += units * price

    elif behavior == ActivityBehavior.REMOVE:
        units = abs(quantity)
        average_cost = state.cost_basis / state.quantity if state.quantity > 0 else Decimal("0")
        state.cost_basis -= units * average_cost
        state.quantity -= units

    elif behavior == ActivityBehavior.SPLIT:
        if quantity > 0:
            state.quantity *= quantity

    elif activity.activity_type.upper() == DIVIDEND:
        state.dividends += abs(quantity) * price

    state.fees += fee
    return state


class HoldingsLedger:
    """Incremental replay cursor keyed by (symbol, account bucket).

    Activities must be fed in ascending date order. Malformed activities
    are skipped.
    """

    def __init__(self, behavior_map: BehaviorMap):
        self.behavior_map = behavior_map
        self.states: dict[tuple[str, str], HoldingState] = {}

    def apply(self, activity: Activity) -> ActivityBehavior | None:
        """Apply one activity.

        Returns:
            The behavior applied, or None when the activity was skipped.
        """
        if not is_well_formed(activity):
            return None
        behavior = self.behavior_map.behavior_for(activity.activity_type)
        key = (activity.symbol, activity.bucket)
        state = self.states.get(key)
        if state is None:
            state = self.states[key] = HoldingState()
        apply_activity(state, activity, behavior)
        return behavior

    def symbols(self) -> list[str]:
        return sorted({symbol for symbol, _ in self.states})

    def quantity(self, symbol: str) -> Decimal:
        """Total units of ``symbol`` across all account buckets."""
        total = Decimal("0")
        for (sym, _), state in self.states.items():
            if sym == symbol:
                total += state.quantity
        return total

    def state_for(self, symbol: str | None = None, bucket: str | None = None) -> HoldingState:
        """Sum of the states matching ``symbol`` and ``bucket`` (None matches all)."""
        total = HoldingState()
        for (sym, bkt), state in self.states.items():
            if symbol is not None and sym != symbol:
                continue
            if bucket is not None and bkt != bucket:
                continue
            total = total + state
        return total

    def by_bucket(self, symbol: str | None = None) -> dict[str, HoldingState]:
        result: dict[str, HoldingState] = {}
        for (sym, bkt), state in self.states.items():
            if symbol is not None and sym != symbol:
                continue
            result[bkt] = result[bkt] + state if bkt in result else state.copy()
        return result


def _scoped(activities: Iterable[Activity], account_id: str | None) -> list[Activity]:
    ordered = sort_activities(activities)
    if account_id is None:
        return ordered
    return [a for a in ordered if a.bucket == account_id]


def replay_holdings(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    account_id: str | None = None,
) -> HoldingState:
    """
    Replay activities into a terminal holding state.

    Args:
        activities: Activities for one investment, in any order.
        behavior_map: Activity type to behavior lookup.
        account_id: Restrict to one account bucket (``UNASSIGNED`` for
            activities without an account). None replays every bucket
            and sums them.

    Returns:
        The resulting HoldingState.
    """
    ledger = HoldingsLedger(behavior_map)
    for activity in _scoped(activities, account_id):
        ledger.apply(activity)
    return ledger.state_for()


def replay_holdings_trace(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    account_id: str | None = None,
) -> list[ReplayStep]:
    """Replay activities and record the state after each applied activity."""
    ledger = HoldingsLedger(behavior_map)
    steps: list[ReplayStep] = []
    for activity in _scoped(activities, account_id):
        behavior = ledger.apply(activity)
        if behavior is None:
            continue
        steps.append(ReplayStep(activity=activity, behavior=behavior, state=ledger.state_for()))
    return steps


def replay_by_account(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    before: datetime | None = None,
) -> dict[str, HoldingState]:
    """
    Replay activities separately for each account bucket.

    Args:
        activities: Activities for one investment.
        behavior_map: Activity type to behavior lookup.
        before: If given, only activities strictly before this datetime
            are applied.

    Returns:
        Mapping of account bucket to terminal state.
    """
    cutoff = to_aware(before) if before is not None else None
    ledger = HoldingsLedger(behavior_map)
    for activity in sort_activities(activities):
        if cutoff is not None and isinstance(activity.activity_datetime, datetime):
            if to_aware(activity.activity_datetime) >= cutoff:
                break
        ledger.apply(activity)
    return ledger.by_bucket()
