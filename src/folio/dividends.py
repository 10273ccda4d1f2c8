"""
Dividend scanning.

Finds cash dividends paid on investments in the ledger and records a
DIVIDEND activity for every account that held units going into the
ex-date. With reinvestment on, each dividend is followed by a BUY of the
shares it would have bought at that day's close.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable
import warnings

from .activities import (
    Activity,
    ActivityStore,
    BehaviorMap,
    DIVIDEND,
    UNASSIGNED,
    local_day,
    to_aware,
)
from .holdings import replay_by_account
from .pricingdata import DividendEvent, MarketDataService
from .valuation import MAX_PRICE_LOOKBACK_DAYS, PriceHistory, normalize_history, resolve_price

# A dividend recorded within this distance of an ex-date is the same dividend
DIVIDEND_MATCH_WINDOW = timedelta(hours=24)

REINVEST_QUANTITY_STEP = Decimal("0.0001")


@dataclass
class DividendScanResult:
    """Outcome of one scan."""
    created: list[Activity] = field(default_factory=list)
    reinvested: list[Activity] = field(default_factory=list)
    already_recorded: int = 0
    failed_symbols: dict[str, str] = field(default_factory=dict)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def total_amount(self) -> Decimal:
        return sum((a.amount for a in self.created), Decimal("0"))


def holdings_at(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    ex_date: datetime,
) -> dict[str, Decimal]:
    """Units held per account bucket going into ``ex_date``; empty positions are left out."""
    states = replay_by_account(activities, behavior_map, before=ex_date)
    return {bucket: state.quantity for bucket, state in states.items() if state.quantity > 0}


def has_recorded_dividend(
    activities: Iterable[Activity],
    bucket: str,
    ex_date: datetime,
    window: timedelta = DIVIDEND_MATCH_WINDOW,
) -> bool:
    """True if ``bucket`` already has a DIVIDEND within ``window`` of ``ex_date``."""
    target = to_aware(ex_date)
    for activity in activities:
        if activity.bucket != bucket or not isinstance(activity.activity_datetime, datetime):
            continue
        if activity.activity_type.upper() != DIVIDEND:
            continue
        if abs(to_aware(activity.activity_datetime) - target) <= window:
            return True
    return False


def reinvest_quantity(cash: Decimal, price: Decimal) -> Decimal:
    """Shares ``cash`` buys at ``price``, rounded to four decimal places."""
    return (cash / price).quantize(REINVEST_QUANTITY_STEP, rounding=ROUND_HALF_UP)


class DividendScanner:
    """Detects dividends missing from the ledger and records them."""

    def __init__(self, store: ActivityStore, market_data: MarketDataService):
        self.store = store
        self.market_data = market_data

    def scan(self, symbol: str | None = None, dry_run: bool = False, reinvest: bool = False) -> DividendScanResult:
        """
        Record missing DIVIDEND activities.

        Running this twice creates nothing the second time.

        Args:
            symbol: Only scan this investment. None scans every investment
                in the store.
            dry_run: Report what would be created without writing it.
            reinvest: Also record a BUY of the shares each dividend buys
                at the ex-date close.

        Returns:
            DividendScanResult with the activities created.
        """
        result = DividendScanResult()
        behavior_map = self.store.get_behavior_map()
        symbols = [symbol] if symbol is not None else self.store.list_symbols()

        for current_symbol in symbols:
            activities = self.store.get_activities(symbol=current_symbol)
            dated = [a for a in activities if isinstance(a.activity_datetime, datetime)]
            if not dated:
                continue

            first = dated[0].activity_datetime
            try:
                events = self.market_data.get_dividends(current_symbol, first)
                closes: PriceHistory = {}
                if reinvest and events:
                    start = local_day(first) - timedelta(days=MAX_PRICE_LOOKBACK_DAYS + 2)
                    closes = normalize_history(self.market_data.get_historical_prices(current_symbol, start))
            except Exception as e:
                result.failed_symbols[current_symbol] = str(e)
                warnings.warn(f"Could not fetch dividends for {current_symbol}: {e}", UserWarning)
                continue

            for event in sorted(events, key=lambda ev: to_aware(ev.ex_date)):
                self._record_event(current_symbol, event, dated, behavior_map, closes, result, dry_run, reinvest)

        return result

    def _record_event(
        self,
        symbol: str,
        event: DividendEvent,
        activities: list[Activity],
        behavior_map: BehaviorMap,
        closes: PriceHistory,
        result: DividendScanResult,
        dry_run: bool,
        reinvest: bool,
    ) -> None:
        if event.amount <= 0:
            return

        for bucket, held in holdings_at(activities, behavior_map, event.ex_date).items():
            if has_recorded_dividend(activities, bucket, event.ex_date):
                result.already_recorded += 1
                continue

            account_id = None if bucket == UNASSIGNED else bucket
            currency = activities[-1].currency
            dividend = Activity(
                symbol=symbol,
                activity_datetime=event.ex_date,
                activity_type=DIVIDEND,
                quantity=held,
                price=event.amount,
                fee=Decimal("0"),
                currency=currency,
                account_id=account_id,
            )
            self._add(dividend, activities, dry_run)
            result.created.append(dividend)

            if not reinvest:
                continue
            close = resolve_price(closes, local_day(event.ex_date))
            if close is None or close <= 0:
                warnings.warn(
                    f"No close for {symbol} near {event.ex_date:%Y-%m-%d}; dividend not reinvested",
                    UserWarning
                )
                continue
            quantity = reinvest_quantity(dividend.amount, close)
            if quantity <= 0:
                continue
            buy = Activity(
                symbol=symbol,
                activity_datetime=event.ex_date,
                activity_type="BUY",
                quantity=quantity,
                price=close,
                fee=Decimal("0"),
                currency=currency,
                account_id=account_id,
            )
            self._add(buy, activities, dry_run)
            result.reinvested.append(buy)

    def _add(self, activity: Activity, activities: list[Activity], dry_run: bool) -> None:
        if not dry_run:
            self.store.add_activity(activity)
        # Later events in this run must see it
        activities.append(activity)
