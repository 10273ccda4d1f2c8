from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Mapping
import warnings

from .activities import (
    Activity,
    ActivityBehavior,
    ActivityStore,
    BehaviorMap,
    NYC_TIMEZONE,
    local_day,
    sort_activities,
    to_aware,
)
from .currency import Currency
from .holdings import HoldingsLedger, is_well_formed, replay_by_account
from .metrics.xirr import CashFlow, calculate_xirr, cash_flows_from_activities
from .pricingdata import MarketDataService, Quote, fetch_in_batches
from .valuation import normalize_history


@dataclass
class InvestmentStats:
    """Position summary for one investment, in the investment's own currency."""
    symbol: str
    quantity: Decimal
    average_price: Decimal
    total_investment: Decimal
    market_price: Decimal | None
    current_value: Decimal
    absolute_return: Decimal
    percent_return: Decimal | None
    total_fees: Decimal
    total_dividends: Decimal
    activity_count: int
    first_activity_date: date | None
    investment_age_days: int
    account_quantities: dict[str, Decimal] = field(default_factory=dict)
    xirr: float | None = None
    average_price_history: dict[str, Decimal] = field(default_factory=dict)
    currency: Currency = Currency.USD
    name: str | None = None


def _is_split(activity: Activity, behavior_map: BehaviorMap) -> bool:
    return behavior_map.behavior_for(activity.activity_type) == ActivityBehavior.SPLIT


def average_price_history(
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    history_dates: Iterable[date],
) -> dict[str, Decimal]:
    """
    Average cost per unit on each price date, split-adjusted.

    When a split is applied, every average already recorded is divided by
    the split's effect on the units held, so the whole history is expressed
    in post-split units, the same basis as split-adjusted price charts.
    Split activities sharing a timestamp (one per account) count as one
    event and are measured together. Days with nothing held are left out.

    Args:
        activities: Activities for one investment.
        behavior_map: Activity type to behavior lookup.
        history_dates: Dates to sample, usually the price history's dates.

    Returns:
        Average price keyed by ISO date.
    """
    ordered = [a for a in sort_activities(activities) if is_well_formed(a)]
    ledger = HoldingsLedger(behavior_map)
    history: dict[str, Decimal] = {}
    index = 0

    for day in sorted(set(history_dates)):
        while index < len(ordered) and local_day(ordered[index].activity_datetime) <= day:
            activity = ordered[index]
            if not _is_split(activity, behavior_map):
                ledger.apply(activity)
                index += 1
                continue

            held_before = ledger.state_for().quantity
            event_time = to_aware(activity.activity_datetime)
            while (
                index < len(ordered)
                and _is_split(ordered[index], behavior_map)
                and to_aware(ordered[index].activity_datetime) == event_time
            ):
                ledger.apply(ordered[index])
                index += 1

            held_after = ledger.state_for().quantity
            if held_before > 0 and held_after > 0 and held_after != held_before:
                factor = held_after / held_before
                for key in history:
                    history[key] = history[key] / factor

        state = ledger.state_for()
        if state.quantity > 0:
            history[day.isoformat()] = state.average_price

    return history


def calculate_investment_stats(
    symbol: str,
    activities: Iterable[Activity],
    behavior_map: BehaviorMap,
    quote: Quote | None = None,
    historical_prices: Mapping[str, Decimal] | Mapping[date, Decimal] | None = None,
    as_of: datetime | None = None,
) -> InvestmentStats:
    """
    Summarize one investment.

    Args:
        symbol: The investment.
        activities: Its activities; others are ignored.
        behavior_map: Activity type to behavior lookup.
        quote: Latest quote. Without one, the latest historical close is used.
        historical_prices: Closing prices; also the dates sampled for the
            average price history.
        as_of: Valuation time for age and XIRR. Defaults to now.

    Returns:
        InvestmentStats for the investment.
    """
    if as_of is None:
        as_of = datetime.now(NYC_TIMEZONE)

    own = [a for a in sort_activities(activities) if a.symbol == symbol]
    valid = [a for a in own if is_well_formed(a)]
    closes = normalize_history(historical_prices or {})

    by_account = replay_by_account(valid, behavior_map)
    quantity = sum((s.quantity for s in by_account.values()), Decimal("0"))
    cost_basis = sum((s.cost_basis for s in by_account.values()), Decimal("0"))
    fees = sum((s.fees for s in by_account.values()), Decimal("0"))
    dividends = sum((s.dividends for s in by_account.values()), Decimal("0"))

    market_price: Decimal | None = quote.price if quote is not None else None
    if market_price is None and closes:
        market_price = closes[max(closes)]

    current_value = quantity * market_price if market_price is not None and quantity > 0 else Decimal("0")
    absolute_return = current_value - cost_basis
    percent_return = absolute_return / cost_basis * 100 if cost_basis > 0 else None

    first_day = local_day(valid[0].activity_datetime) if valid else None
    age_days = (local_day(as_of) - first_day).days if first_day is not None else 0

    flows = cash_flows_from_activities(valid, behavior_map, current_value, as_of)

    return InvestmentStats(
        symbol=symbol,
        quantity=quantity,
        average_price=cost_basis / quantity if quantity > 0 else Decimal("0"),
        total_investment=cost_basis,
        market_price=market_price,
        current_value=current_value,
        absolute_return=absolute_return,
        percent_return=percent_return,
        total_fees=fees,
        total_dividends=dividends,
        activity_count=len(own),
        first_activity_date=first_day,
        investment_age_days=age_days,
        account_quantities={bucket: state.quantity for bucket, state in by_account.items()},
        xirr=calculate_xirr(flows),
        average_price_history=average_price_history(valid, behavior_map, closes.keys()),
        currency=(quote.currency if quote is not None and quote.currency is not None else (own[-1].currency if own else Currency.USD)),
        name=quote.name if quote is not None else None,
    )


@dataclass
class PortfolioSummary:
    """Per-investment stats plus portfolio totals in one currency."""
    currency: Currency
    investments: list[InvestmentStats] = field(default_factory=list)
    total_value: Decimal = Decimal("0")
    total_investment: Decimal = Decimal("0")
    xirr: float | None = None
    failed_symbols: dict[str, str] = field(default_factory=dict)

    @property
    def absolute_return(self) -> Decimal:
        return self.total_value - self.total_investment

    def top_performers(self, count: int = 3) -> list[InvestmentStats]:
        ranked = [s for s in self.investments if s.percent_return is not None]
        return sorted(ranked, key=lambda s: s.percent_return, reverse=True)[:count]  # type: ignore[arg-type, return-value]

    def bottom_performers(self, count: int = 3) -> list[InvestmentStats]:
        ranked = [s for s in self.investments if s.percent_return is not None]
        return sorted(ranked, key=lambda s: s.percent_return)[:count]  # type: ignore[arg-type, return-value]


class PortfolioAnalyzer:
    """Computes InvestmentStats for every investment in a store."""

    def __init__(self, store: ActivityStore, market_data: MarketDataService):
        self.store = store
        self.market_data = market_data

    def _fetch(self, symbol: str) -> tuple[Quote | None, dict[str, Decimal]]:
        return self.market_data.get_price(symbol), self.market_data.get_historical_prices(symbol)

    def analyze(
        self,
        target_currency: Currency = Currency.USD,
        account_ids: Iterable[str] | None = None,
        as_of: datetime | None = None,
    ) -> PortfolioSummary:
        """
        Summarize every investment and the whole portfolio.

        Quotes and histories are fetched in batches; an investment whose
        data could not be fetched is still reported, without a market price.

        Args:
            target_currency: Currency for the portfolio totals and XIRR.
            account_ids: Restrict to these account buckets.
            as_of: Valuation time. Defaults to now.

        Returns:
            PortfolioSummary.
        """
        if as_of is None:
            as_of = datetime.now(NYC_TIMEZONE)

        summary = PortfolioSummary(currency=target_currency)
        activities = self.store.get_activities(account_ids=account_ids)
        if not activities:
            return summary
        behavior_map = self.store.get_behavior_map()

        symbols = list(dict.fromkeys(a.symbol for a in activities))
        results, failures = fetch_in_batches(symbols, self._fetch)
        for symbol, error in failures.items():
            summary.failed_symbols[symbol] = str(error)
            warnings.warn(f"Could not fetch market data for {symbol}: {error}", UserWarning)

        rates: dict[Currency, Decimal] = {target_currency: Decimal("1")}
        portfolio_flows: list[CashFlow] = []

        for symbol in symbols:
            quote, prices = results.get(symbol, (None, {}))
            own = [a for a in activities if a.symbol == symbol]
            stats = calculate_investment_stats(symbol, own, behavior_map, quote, prices, as_of)
            summary.investments.append(stats)

            if stats.currency not in rates:
                try:
                    rate = self.market_data.get_exchange_rate(stats.currency, target_currency)
                except Exception as e:
                    warnings.warn(
                        f"Exchange rate lookup failed {stats.currency.value}->{target_currency.value}: {e}; using 1",
                        UserWarning
                    )
                    rate = Decimal("1")
                if rate is None:
                    warnings.warn(
                        f"No exchange rate {stats.currency.value}->{target_currency.value}; using 1",
                        UserWarning
                    )
                    rate = Decimal("1")
                rates[stats.currency] = rate
            rate = rates[stats.currency]

            summary.total_value += stats.current_value * rate
            summary.total_investment += stats.total_investment * rate
            portfolio_flows.extend(cash_flows_from_activities(own, behavior_map, rate=rate))

        if summary.total_value != 0:
            portfolio_flows.append(CashFlow(as_of, float(summary.total_value)))
        summary.xirr = calculate_xirr(portfolio_flows)
        return summary
