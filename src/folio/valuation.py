"""
Daily valuation series.

Walks every calendar day in a range, applies the activities dated that day
(in New York local time) and values what is held at that day's close.
Prices are sparse (weekends, holidays, gaps in the feed), so a missing close
falls back to the most recent close within five days, and a symbol with no
close in that window contributes nothing that day.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Mapping
import warnings

from .activities import (
    Activity,
    ActivityBehavior,
    ActivityStore,
    BehaviorMap,
    local_day,
    sort_activities,
)
from .currency import Currency
from .holdings import HoldingsLedger, is_well_formed
from .pricingdata import MarketDataService, fetch_in_batches, parse_price_map

MAX_PRICE_LOOKBACK_DAYS = 5

PriceHistory = Mapping[date, Decimal]


@dataclass
class ValuationPoint:
    """Portfolio state at the end of one day.

    ``net_flow`` is negative when money went in (buys) and positive when it
    came out (sells). ``invested`` is the running total of money put in,
    filled by ``accumulate_invested``.
    """
    day: date
    market_value: Decimal
    net_flow: Decimal = Decimal("0")
    invested: Decimal = Decimal("0")


@dataclass
class PortfolioHistory:
    """Valuation series plus what went wrong while building it."""
    points: list[ValuationPoint] = field(default_factory=list)
    currency: Currency | None = None
    failed_symbols: dict[str, str] = field(default_factory=dict)
    debug: list[str] = field(default_factory=list)


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return local_day(value)
    return value


def normalize_history(history: Mapping[date, Decimal] | Mapping[str, Decimal]) -> dict[date, Decimal]:
    """Accept a price map keyed by dates or ISO strings; drop summary keys."""
    dated: dict[date, Decimal] = {}
    string_keyed: dict[str, Decimal] = {}
    for key, price in history.items():
        if isinstance(key, datetime):
            dated[key.date()] = price
        elif isinstance(key, date):
            dated[key] = price
        else:
            string_keyed[str(key)] = price
    dated.update(parse_price_map(string_keyed))
    return dated


def resolve_price(history: PriceHistory, day: date, max_lookback_days: int = MAX_PRICE_LOOKBACK_DAYS) -> Decimal | None:
    """
    Find the close for ``day``, looking back over missing days.

    Args:
        history: Closing prices by date.
        day: The day being valued.
        max_lookback_days: How many earlier days may stand in for ``day``.

    Returns:
        The exact close, else the closest earlier close within the window,
        else None.
    """
    for days_back in range(max_lookback_days + 1):
        price = history.get(day - timedelta(days=days_back))
        if price is not None:
            return price
    return None


def activity_net_flow(activity: Activity, behavior: ActivityBehavior, rate: Decimal = Decimal("1")) -> Decimal:
    """Cash effect of one activity: ADD ``-(amount + fee)``, REMOVE ``amount - fee``, else 0."""
    if behavior == ActivityBehavior.ADD:
        return -(activity.amount + Decimal(str(activity.fee))) * rate
    if behavior == ActivityBehavior.REMOVE:
        return (activity.amount - Decimal(str(activity.fee))) * rate
    return Decimal("0")


def _rate_for(exchange_rates: Mapping[Currency, Decimal] | None, currency: Currency | None) -> Decimal:
    if exchange_rates is None or currency is None:
        return Decimal("1")
    return exchange_rates.get(currency, Decimal("1"))


def _replayable(activities: Iterable[Activity]) -> list[Activity]:
    return [a for a in sort_activities(activities) if is_well_formed(a)]


def _market_value(
    ledger: HoldingsLedger,
    histories: Mapping[str, PriceHistory],
    day: date,
    holding_currencies: Mapping[str, Currency],
    exchange_rates: Mapping[Currency, Decimal] | None,
) -> Decimal:
    total = Decimal("0")
    for symbol in ledger.symbols():
        quantity = ledger.quantity(symbol)
        if quantity <= 0:
            continue
        price = resolve_price(histories.get(symbol, {}), day)
        if price is None:
            continue
        total += quantity * price * _rate_for(exchange_rates, holding_currencies.get(symbol))
    return total


def build_valuation_series(
    activities: Iterable[Activity],
    start_date: date | datetime,
    end_date: date | datetime,
    price_histories: Mapping[str, Mapping[date, Decimal] | Mapping[str, Decimal]],
    behavior_map: BehaviorMap,
    exchange_rates: Mapping[Currency, Decimal] | None = None,
) -> list[ValuationPoint]:
    """
    Build the daily valuation series with a single pass over the activities.

    Activities dated before ``start_date`` are applied on the first day, and
    their flows count toward the first day's ``net_flow``.

    Args:
        activities: Activities to replay, in any order.
        start_date: First day of the series (inclusive).
        end_date: Last day of the series (inclusive).
        price_histories: Closing prices per symbol, keyed by date or ISO
            date string.
        behavior_map: Activity type to behavior lookup.
        exchange_rates: Optional rate per currency into the report
            currency. A holding is converted at the rate of the currency it
            was last bought in; flows at their activity's currency.

    Returns:
        One ValuationPoint per calendar day, ``invested`` left at zero.

    Raises:
        ValueError: If ``end_date`` is before ``start_date``.
    """
    start = _as_date(start_date)
    end = _as_date(end_date)
    if end < start:
        raise ValueError(f"end_date {end} is before start_date {start}")

    ordered = _replayable(activities)
    histories = {symbol: normalize_history(h) for symbol, h in price_histories.items()}
    ledger = HoldingsLedger(behavior_map)
    holding_currencies: dict[str, Currency] = {}
    points: list[ValuationPoint] = []

    activity_index = 0
    current = start
    while current <= end:
        net_flow = Decimal("0")
        while activity_index < len(ordered):
            activity = ordered[activity_index]
            if local_day(activity.activity_datetime) > current:
                break
            behavior = ledger.apply(activity)
            if behavior is not None:
                net_flow += activity_net_flow(activity, behavior, _rate_for(exchange_rates, activity.currency))
                if behavior == ActivityBehavior.ADD:
                    holding_currencies[activity.symbol] = activity.currency
            activity_index += 1

        market_value = _market_value(ledger, histories, current, holding_currencies, exchange_rates)
        points.append(ValuationPoint(day=current, market_value=market_value, net_flow=net_flow))
        current += timedelta(days=1)

    return points


def build_valuation_series_naive(
    activities: Iterable[Activity],
    start_date: date | datetime,
    end_date: date | datetime,
    price_histories: Mapping[str, Mapping[date, Decimal] | Mapping[str, Decimal]],
    behavior_map: BehaviorMap,
    exchange_rates: Mapping[Currency, Decimal] | None = None,
) -> list[ValuationPoint]:
    """
    Build the same series as ``build_valuation_series`` by replaying from
    scratch every day. Quadratic; kept as the reference for the cursor
    version.
    """
    start = _as_date(start_date)
    end = _as_date(end_date)
    if end < start:
        raise ValueError(f"end_date {end} is before start_date {start}")

    ordered = _replayable(activities)
    histories = {symbol: normalize_history(h) for symbol, h in price_histories.items()}
    points: list[ValuationPoint] = []

    current = start
    while current <= end:
        ledger = HoldingsLedger(behavior_map)
        holding_currencies: dict[str, Currency] = {}
        net_flow = Decimal("0")
        for activity in ordered:
            activity_day = local_day(activity.activity_datetime)
            if activity_day > current:
                continue
            behavior = ledger.apply(activity)
            if behavior is None:
                continue
            if activity_day == current or (current == start and activity_day < start):
                net_flow += activity_net_flow(activity, behavior, _rate_for(exchange_rates, activity.currency))
            if behavior == ActivityBehavior.ADD:
                holding_currencies[activity.symbol] = activity.currency

        market_value = _market_value(ledger, histories, current, holding_currencies, exchange_rates)
        points.append(ValuationPoint(day=current, market_value=market_value, net_flow=net_flow))
        current += timedelta(days=1)

    return points


def accumulate_invested(points: list[ValuationPoint]) -> list[ValuationPoint]:
    """Fill each point's ``invested`` with the running total of contributions."""
    invested = Decimal("0")
    for point in points:
        invested -= point.net_flow
        point.invested = invested
    return points


class PortfolioHistoryBuilder:
    """Builds a portfolio's valuation history from a store and a market data service."""

    def __init__(self, store: ActivityStore, market_data: MarketDataService):
        self.store = store
        self.market_data = market_data

    def load_exchange_rates(
        self,
        currencies: Iterable[Currency],
        target_currency: Currency,
        debug: list[str],
    ) -> dict[Currency, Decimal]:
        """Rates into ``target_currency``; a missing or failed rate falls back to 1 and is noted in ``debug``."""
        rates: dict[Currency, Decimal] = {}
        for currency in sorted(set(currencies), key=lambda c: c.value):
            if currency == target_currency:
                rates[currency] = Decimal("1")
                continue
            try:
                rate = self.market_data.get_exchange_rate(currency, target_currency)
            except Exception as e:
                debug.append(f"Exchange rate lookup failed {currency.value}->{target_currency.value}: {e}; using 1")
                rates[currency] = Decimal("1")
                continue
            if rate is None:
                debug.append(f"No exchange rate {currency.value}->{target_currency.value}; using 1")
                rate = Decimal("1")
            else:
                debug.append(f"Exchange rate {currency.value}->{target_currency.value} = {rate}")
            rates[currency] = rate
        return rates

    def fetch_histories(
        self,
        symbols: Iterable[str],
        start: date,
        history: PortfolioHistory,
    ) -> dict[str, dict[date, Decimal]]:
        """Fetch price histories in batches, recording failed symbols."""
        # Leave room for the look-back on the first day
        fetch_start = start - timedelta(days=MAX_PRICE_LOOKBACK_DAYS + 2)
        results, failures = fetch_in_batches(
            symbols,
            lambda symbol: self.market_data.get_historical_prices(symbol, fetch_start),
        )
        for symbol, error in failures.items():
            history.failed_symbols[symbol] = str(error)
            history.debug.append(f"Price history fetch failed for {symbol}: {error}")
            warnings.warn(f"Could not fetch price history for {symbol}: {error}", UserWarning)
        histories = {symbol: normalize_history(prices) for symbol, prices in results.items()}
        for symbol, prices in histories.items():
            history.debug.append(f"Fetched {len(prices)} closes for {symbol}")
        return histories

    def build(
        self,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        account_ids: Iterable[str] | None = None,
        symbols: Iterable[str] | None = None,
        target_currency: Currency | None = None,
    ) -> PortfolioHistory:
        """
        Build the daily valuation history.

        Args:
            start_date: First day. Defaults to the first activity's day.
            end_date: Last day. Defaults to today.
            account_ids: Restrict to these account buckets.
            symbols: Restrict to these investments.
            target_currency: Convert prices and flows into this currency.
                None leaves amounts in their own currencies.

        Returns:
            PortfolioHistory with ``invested`` filled in.
        """
        history = PortfolioHistory(currency=target_currency)
        activities = self.store.get_activities(account_ids=account_ids)
        if symbols is not None:
            wanted = set(symbols)
            activities = [a for a in activities if a.symbol in wanted]
        if not activities:
            return history

        behavior_map = self.store.get_behavior_map()
        dated = [a for a in activities if isinstance(a.activity_datetime, datetime)]
        if not dated:
            return history
        start = _as_date(start_date) if start_date is not None else local_day(dated[0].activity_datetime)
        end = _as_date(end_date) if end_date is not None else date.today()

        histories = self.fetch_histories([a.symbol for a in activities], start, history)

        exchange_rates: dict[Currency, Decimal] | None = None
        if target_currency is not None:
            exchange_rates = self.load_exchange_rates((a.currency for a in activities), target_currency, history.debug)

        history.points = accumulate_invested(
            build_valuation_series(activities, start, end, histories, behavior_map, exchange_rates)
        )
        return history
