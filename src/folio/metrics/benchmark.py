"""
Benchmark comparison.

Answers "what would the same money have done in an index fund?". Every
contribution to the portfolio buys benchmark units at that day's benchmark
close, every withdrawal sells them, and the two values are tracked side by
side together with their money-weighted returns.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Mapping
import warnings

from ..activities import ActivityStore
from ..currency import Currency
from ..pricingdata import MarketDataService, fetch_in_batches
from ..valuation import (
    MAX_PRICE_LOOKBACK_DAYS,
    PortfolioHistoryBuilder,
    ValuationPoint,
    normalize_history,
    resolve_price,
)
from .xirr import CashFlow, calculate_xirr, cash_flows_from_series

BENCHMARK_SP500 = "^GSPC"
BENCHMARK_NASDAQ = "^IXIC"
BENCHMARK_DOW = "^DJI"


@dataclass
class BenchmarkPoint:
    """One day of the side-by-side comparison.

    ``benchmark_index`` is the benchmark close rebased to 100 on the first
    day it has a price.
    """
    day: date
    invested: Decimal
    portfolio_value: Decimal
    benchmark_value: Decimal
    net_flow: Decimal = Decimal("0")
    benchmark_index: Decimal | None = None


@dataclass
class BenchmarkComparison:
    """Result of comparing a portfolio with a benchmark."""
    benchmark_symbol: str
    currency: Currency
    points: list[BenchmarkPoint] = field(default_factory=list)
    portfolio_xirr: float | None = None
    benchmark_xirr: float | None = None
    debug: list[str] = field(default_factory=list)

    @property
    def total_invested(self) -> Decimal:
        return self.points[-1].invested if self.points else Decimal("0")

    @property
    def portfolio_value(self) -> Decimal:
        return self.points[-1].portfolio_value if self.points else Decimal("0")

    @property
    def benchmark_value(self) -> Decimal:
        return self.points[-1].benchmark_value if self.points else Decimal("0")


def simulate_benchmark(
    points: Iterable[ValuationPoint],
    benchmark_history: Mapping[date, Decimal],
    rate: Decimal = Decimal("1"),
) -> list[BenchmarkPoint]:
    """
    Mirror a portfolio's cash flows into a benchmark.

    Money that arrives before the benchmark has any price is held as cash
    and invested at the first available close. A day without a close
    within the look-back window trades at the last known close.

    Args:
        points: Daily portfolio valuation with ``invested`` filled.
        benchmark_history: Benchmark closes by date, in the benchmark's
            own currency.
        rate: Converts benchmark prices into the portfolio's currency.

    Returns:
        One BenchmarkPoint per valuation point.
    """
    units = Decimal("0")
    cash = Decimal("0")
    last_price: Decimal | None = None
    first_price: Decimal | None = None
    result: list[BenchmarkPoint] = []

    for point in points:
        close = resolve_price(benchmark_history, point.day)
        if close is not None:
            last_price = close * rate
            if first_price is None:
                first_price = close

        cash -= point.net_flow
        if last_price is not None and last_price > 0 and cash != 0:
            units += cash / last_price
            cash = Decimal("0")

        value = cash + (units * last_price if last_price is not None else Decimal("0"))
        index = None
        if close is not None and first_price:
            index = close / first_price * 100

        result.append(BenchmarkPoint(
            day=point.day,
            invested=point.invested,
            portfolio_value=point.market_value,
            benchmark_value=value,
            net_flow=point.net_flow,
            benchmark_index=index,
        ))

    return result


def _benchmark_cash_flows(points: list[BenchmarkPoint]) -> list[CashFlow]:
    flows = [CashFlow(p.day, float(p.net_flow)) for p in points if p.net_flow != 0]
    if points and points[-1].benchmark_value != 0:
        flows.append(CashFlow(points[-1].day, float(points[-1].benchmark_value)))
    return flows


class BenchmarkComparator:
    """Compares a portfolio's history with a benchmark bought with the same flows."""

    def __init__(self, store: ActivityStore, market_data: MarketDataService):
        self.store = store
        self.market_data = market_data

    def _benchmark_rate(self, benchmark_symbol: str, target_currency: Currency, debug: list[str]) -> Decimal:
        try:
            quote = self.market_data.get_price(benchmark_symbol)
        except Exception as e:
            debug.append(f"Quote fetch failed for {benchmark_symbol}: {e}; assuming USD")
            quote = None
        benchmark_currency = quote.currency if quote is not None and quote.currency is not None else Currency.USD
        if benchmark_currency == target_currency:
            return Decimal("1")

        try:
            rate = self.market_data.get_exchange_rate(benchmark_currency, target_currency)
        except Exception as e:
            debug.append(
                f"Exchange rate lookup failed {benchmark_currency.value}->{target_currency.value} "
                f"for {benchmark_symbol}: {e}; using 1"
            )
            return Decimal("1")
        if rate is None:
            debug.append(f"No exchange rate {benchmark_currency.value}->{target_currency.value} for {benchmark_symbol}; using 1")
            return Decimal("1")
        debug.append(f"Benchmark rate {benchmark_currency.value}->{target_currency.value} = {rate}")
        return rate

    def compare(
        self,
        benchmark_symbol: str = BENCHMARK_SP500,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        target_currency: Currency = Currency.USD,
        account_ids: Iterable[str] | None = None,
    ) -> BenchmarkComparison:
        """
        Build the portfolio history and its benchmark mirror.

        Args:
            benchmark_symbol: Yahoo Finance ticker of the benchmark.
            start_date: First day. Defaults to the first activity's day.
            end_date: Last day. Defaults to today.
            target_currency: Currency of every value in the result.
            account_ids: Restrict to these account buckets.

        Returns:
            BenchmarkComparison. Missing data never raises; it is noted in
            ``debug`` instead.
        """
        history = PortfolioHistoryBuilder(self.store, self.market_data).build(
            start_date=start_date,
            end_date=end_date,
            account_ids=account_ids,
            target_currency=target_currency,
        )
        comparison = BenchmarkComparison(
            benchmark_symbol=benchmark_symbol,
            currency=target_currency,
            debug=history.debug,
        )
        if not history.points:
            comparison.debug.append("No activities in range")
            return comparison

        start = history.points[0].day - timedelta(days=MAX_PRICE_LOOKBACK_DAYS + 2)
        results, failures = fetch_in_batches(
            [benchmark_symbol],
            lambda symbol: self.market_data.get_historical_prices(symbol, start),
        )
        if benchmark_symbol in failures:
            error = failures[benchmark_symbol]
            comparison.debug.append(f"Benchmark history fetch failed for {benchmark_symbol}: {error}")
            warnings.warn(f"Could not fetch benchmark history for {benchmark_symbol}: {error}", UserWarning)
        benchmark_history = normalize_history(results.get(benchmark_symbol, {}))
        if not benchmark_history:
            comparison.debug.append(f"No benchmark prices for {benchmark_symbol}")

        rate = self._benchmark_rate(benchmark_symbol, target_currency, comparison.debug)
        comparison.points = simulate_benchmark(history.points, benchmark_history, rate)
        comparison.portfolio_xirr = calculate_xirr(cash_flows_from_series(history.points))
        comparison.benchmark_xirr = calculate_xirr(_benchmark_cash_flows(comparison.points))
        return comparison
