"""
Stock split reconciliation.

Brokers exports often miss corporate splits. This module asks the market
data service for each investment's split history and records a STOCK_SPLIT
activity for every account that held the investment before the split and
does not already have one.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable
import warnings

from .activities import (
    Activity,
    ActivityBehavior,
    ActivityStore,
    BehaviorMap,
    STOCK_SPLIT,
    UNASSIGNED,
    sort_activities,
    to_aware,
)
from .holdings import HoldingsLedger
from .pricingdata import MarketDataService, SplitEvent

# Splits recorded within this distance of a market split count as the same split
DUPLICATE_WINDOW = timedelta(hours=24)


@dataclass
class SplitReconciliationResult:
    """Outcome of one reconciliation run."""
    created: list[Activity] = field(default_factory=list)
    already_applied: int = 0
    failed_symbols: dict[str, str] = field(default_factory=dict)

    @property
    def created_count(self) -> int:
        return len(self.created)


def affected_buckets(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    split_date: datetime,
) -> list[str]:
    """
    Account buckets that held units at any point strictly before ``split_date``.

    Accounts that exited before the split are included; multiplying a zero
    quantity by the ratio changes nothing.

    Args:
        activities: Activities for one investment.
        behavior_map: Activity type to behavior lookup.
        split_date: When the split took effect.

    Returns:
        Bucket names in the order they first held units.
    """
    cutoff = to_aware(split_date)
    ledger = HoldingsLedger(behavior_map)
    buckets: list[str] = []
    for activity in sort_activities(activities):
        if not isinstance(activity.activity_datetime, datetime):
            continue
        if to_aware(activity.activity_datetime) >= cutoff:
            break
        if ledger.apply(activity) is None:
            continue
        state = ledger.states[(activity.symbol, activity.bucket)]
        if state.quantity != 0 and activity.bucket not in buckets:
            buckets.append(activity.bucket)
    return buckets


def has_recorded_split(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    bucket: str,
    split_date: datetime,
    window: timedelta = DUPLICATE_WINDOW,
) -> bool:
    """True if ``bucket`` already has a split activity within ``window`` of ``split_date``."""
    target = to_aware(split_date)
    for activity in activities:
        if activity.bucket != bucket or not isinstance(activity.activity_datetime, datetime):
            continue
        if behavior_map.behavior_for(activity.activity_type) != ActivityBehavior.SPLIT:
            continue
        if abs(to_aware(activity.activity_datetime) - target) <= window:
            return True
    return False


class SplitReconciler:
    """Detects market splits missing from the ledger and records them."""

    def __init__(self, store: ActivityStore, market_data: MarketDataService):
        self.store = store
        self.market_data = market_data

    def detect_and_apply(self, symbol: str | None = None, dry_run: bool = False) -> SplitReconciliationResult:
        """
        Record missing STOCK_SPLIT activities.

        Running this twice creates nothing the second time.

        Args:
            symbol: Only reconcile this investment. None reconciles every
                investment in the store.
            dry_run: Report what would be created without writing it.

        Returns:
            SplitReconciliationResult with the activities created.
        """
        result = SplitReconciliationResult()
        behavior_map = self.store.get_behavior_map()
        symbols = [symbol] if symbol is not None else self.store.list_symbols()

        for current_symbol in symbols:
            activities = self.store.get_activities(symbol=current_symbol)
            dated = [a for a in activities if isinstance(a.activity_datetime, datetime)]
            if not dated:
                continue

            try:
                events = self.market_data.get_splits(current_symbol, dated[0].activity_datetime)
            except Exception as e:
                result.failed_symbols[current_symbol] = str(e)
                warnings.warn(f"Could not fetch splits for {current_symbol}: {e}", UserWarning)
                continue

            for event in sorted(events, key=lambda ev: to_aware(ev.split_date)):
                self._reconcile_event(current_symbol, event, dated, behavior_map, result, dry_run)

        return result

    def _reconcile_event(
        self,
        symbol: str,
        event: SplitEvent,
        activities: list[Activity],
        behavior_map: BehaviorMap,
        result: SplitReconciliationResult,
        dry_run: bool,
    ) -> None:
        ratio = event.ratio
        if ratio <= 0:
            warnings.warn(f"Ignoring split for {symbol} on {event.split_date:%Y-%m-%d} with ratio {ratio}", UserWarning)
            return

        for bucket in affected_buckets(activities, behavior_map, event.split_date):
            if has_recorded_split(activities, behavior_map, bucket, event.split_date):
                result.already_applied += 1
                continue

            split_activity = Activity(
                symbol=symbol,
                activity_datetime=event.split_date,
                activity_type=STOCK_SPLIT,
                quantity=ratio,
                price=Decimal("0"),
                fee=Decimal("0"),
                currency=activities[-1].currency,
                account_id=None if bucket == UNASSIGNED else bucket,
            )
            if not dry_run:
                self.store.add_activity(split_activity)
            # Later events in this run must see it for de-duplication
            activities.append(split_activity)
            result.created.append(split_activity)
