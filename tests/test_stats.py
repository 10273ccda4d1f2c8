"""Tests for per-investment statistics and the portfolio analyzer."""

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from folio.activities import Activity, BehaviorMap, InMemoryActivityStore
from folio.currency import Currency, FixedExchangeRateManager
from folio.pricingdata import Quote, RateLimitError, StaticMarketDataService
from folio.stats import PortfolioAnalyzer, average_price_history, calculate_investment_stats

NY = ZoneInfo("America/New_York")

AS_OF = datetime(2024, 1, 3, 12, tzinfo=NY)


def aapl_activities():
    return [
        Activity("AAPL", datetime(2023, 1, 3, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("100"), Decimal("1"), account_id="a"),
        Activity("AAPL", datetime(2023, 6, 1, tzinfo=NY), "STOCK_SPLIT", Decimal("2"), Decimal("0"), account_id="a"),
        Activity("AAPL", datetime(2023, 9, 1, 12, tzinfo=NY), "SELL", Decimal("4"), Decimal("60"), account_id="a"),
        Activity("AAPL", datetime(2023, 10, 2, 12, tzinfo=NY), "DIVIDEND", Decimal("16"), Decimal("0.5"), account_id="a"),
    ]


def aapl_prices():
    return {
        date(2023, 1, 2): Decimal("99"),
        date(2023, 1, 3): Decimal("100"),
        date(2023, 5, 31): Decimal("110"),
        date(2023, 6, 1): Decimal("56"),
        date(2023, 9, 1): Decimal("60"),
        date(2024, 1, 2): Decimal("68"),
    }


def test_investment_stats_values():
    """Quantity, cost, return, fees and dividends after a split and a sale."""
    stats = calculate_investment_stats(
        "AAPL",
        aapl_activities(),
        BehaviorMap(),
        quote=Quote("AAPL", Decimal("70"), currency=Currency.USD),
        historical_prices=aapl_prices(),
        as_of=AS_OF,
    )

    assert stats.quantity == Decimal("16")
    assert stats.total_investment == Decimal("800")
    assert stats.average_price == Decimal("50")
    assert stats.current_value == Decimal("1120")
    assert stats.absolute_return == Decimal("320")
    assert stats.percent_return == Decimal("40")
    assert stats.total_fees == Decimal("1")
    assert stats.total_dividends == Decimal("8")
    assert stats.activity_count == 4
    assert stats.first_activity_date == date(2023, 1, 3)
    assert stats.investment_age_days == 365
    assert stats.account_quantities == {"a": Decimal("16")}
    assert stats.xirr is not None and stats.xirr > 0


def test_stats_fall_back_to_latest_close():
    """Without a quote, the last historical close prices the position."""
    stats = calculate_investment_stats("AAPL", aapl_activities(), BehaviorMap(), historical_prices=aapl_prices(), as_of=AS_OF)
    assert stats.market_price == Decimal("68")
    assert stats.current_value == Decimal("1088")
    assert stats.currency == Currency.USD


def test_stats_ignore_other_symbols():
    activities = aapl_activities() + [
        Activity("MSFT", datetime(2023, 1, 3, 12, tzinfo=NY), "BUY", Decimal("3"), Decimal("250")),
    ]
    stats = calculate_investment_stats("AAPL", activities, BehaviorMap(), as_of=AS_OF)
    assert stats.activity_count == 4
    assert stats.quantity == Decimal("16")
    assert stats.market_price is None
    assert stats.current_value == Decimal("0")


def test_average_price_history_is_split_adjusted():
    """Averages recorded before a split are divided by its ratio."""
    history = average_price_history(aapl_activities(), BehaviorMap(), aapl_prices().keys())
    assert history == {
        "2023-01-03": Decimal("50"),
        "2023-05-31": Decimal("50"),
        "2023-06-01": Decimal("50"),
        "2023-09-01": Decimal("50"),
        "2024-01-02": Decimal("50"),
    }


def test_average_price_history_counts_per_account_splits_once():
    """One split recorded in two accounts adjusts earlier averages by its ratio, not its square."""
    split_time = datetime(2023, 6, 2, tzinfo=NY)
    activities = [
        Activity("AAPL", datetime(2023, 1, 4, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("100"), account_id="a"),
        Activity("AAPL", datetime(2023, 1, 4, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("100"), account_id="b"),
        Activity("AAPL", split_time, "STOCK_SPLIT", Decimal("2"), Decimal("0"), account_id="a"),
        Activity("AAPL", split_time, "STOCK_SPLIT", Decimal("2"), Decimal("0"), account_id="b"),
    ]
    history = average_price_history(activities, BehaviorMap(), [date(2023, 1, 4), date(2023, 6, 2)])
    assert history == {"2023-01-04": Decimal("50"), "2023-06-02": Decimal("50")}


def test_average_price_history_split_in_one_of_two_accounts():
    """A split held in only one account rescales by the change in total units."""
    activities = [
        Activity("AAPL", datetime(2023, 1, 4, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("100"), account_id="a"),
        Activity("AAPL", datetime(2023, 1, 4, 12, tzinfo=NY), "BUY", Decimal("30"), Decimal("100"), account_id="b"),
        Activity("AAPL", datetime(2023, 6, 2, tzinfo=NY), "STOCK_SPLIT", Decimal("5"), Decimal("0"), account_id="a"),
    ]
    history = average_price_history(activities, BehaviorMap(), [date(2023, 1, 4), date(2023, 6, 2)])
    # 40 units become 80; cost 4000 stays
    assert history == {"2023-01-04": Decimal("50"), "2023-06-02": Decimal("50")}


def test_average_price_history_tracks_new_buys():
    activities = [
        Activity("AAPL", datetime(2023, 1, 3, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("100")),
        Activity("AAPL", datetime(2023, 1, 5, 12, tzinfo=NY), "BUY", Decimal("10"), Decimal("200")),
    ]
    history = average_price_history(activities, BehaviorMap(), [date(2023, 1, 4), date(2023, 1, 5)])
    assert history == {"2023-01-04": Decimal("100"), "2023-01-05": Decimal("150")}


def analyzer_store():
    return InMemoryActivityStore(aapl_activities() + [
        Activity("MSFT", datetime(2023, 3, 1, 12, tzinfo=NY), "BUY", Decimal("5"), Decimal("200"), currency=Currency.CAD),
    ])


def test_portfolio_analyzer_totals_in_target_currency():
    """Totals convert each investment at its currency's rate."""
    market_data = StaticMarketDataService(
        quotes={
            "AAPL": Quote("AAPL", Decimal("70"), currency=Currency.USD),
            "MSFT": Quote("MSFT", Decimal("220"), currency=Currency.CAD),
        },
        histories={"AAPL": aapl_prices()},
        exchange_rate_manager=FixedExchangeRateManager({(Currency.CAD, Currency.USD): Decimal("0.75")}),
    )

    summary = PortfolioAnalyzer(analyzer_store(), market_data).analyze(as_of=AS_OF)

    assert summary.total_value == Decimal("1945.00")
    assert summary.total_investment == Decimal("1550.00")
    assert summary.absolute_return == Decimal("395.00")
    assert [s.symbol for s in summary.top_performers()] == ["AAPL", "MSFT"]
    assert [s.symbol for s in summary.bottom_performers(1)] == ["MSFT"]
    assert summary.xirr is not None
    assert summary.failed_symbols == {}


def test_portfolio_analyzer_reports_failed_symbols():
    """An investment without market data is still listed, unpriced."""
    market_data = StaticMarketDataService(
        quotes={"AAPL": Quote("AAPL", Decimal("70"), currency=Currency.USD)},
        failing={"MSFT": ConnectionError("timeout")},
    )

    with pytest.warns(UserWarning, match="MSFT"):
        summary = PortfolioAnalyzer(analyzer_store(), market_data).analyze(as_of=AS_OF)

    assert summary.failed_symbols == {"MSFT": "timeout"}
    msft = next(s for s in summary.investments if s.symbol == "MSFT")
    assert msft.market_price is None
    assert msft.quantity == Decimal("5")


class RateLimitedRates(StaticMarketDataService):
    def get_exchange_rate(self, from_currency, to_currency):
        raise RateLimitError("Too Many Requests")


def test_portfolio_analyzer_survives_rate_lookup_failure():
    """A CAD investment counts at face value when its rate lookup raises."""
    market_data = RateLimitedRates(
        quotes={
            "AAPL": Quote("AAPL", Decimal("70"), currency=Currency.USD),
            "MSFT": Quote("MSFT", Decimal("220"), currency=Currency.CAD),
        },
        histories={"AAPL": aapl_prices()},
    )

    with pytest.warns(UserWarning, match="Exchange rate lookup failed CAD->USD"):
        summary = PortfolioAnalyzer(analyzer_store(), market_data).analyze(as_of=AS_OF)

    assert summary.total_value == Decimal("2220")
    assert summary.total_investment == Decimal("1800")
    assert summary.failed_symbols == {}


def test_portfolio_analyzer_empty_store():
    summary = PortfolioAnalyzer(InMemoryActivityStore(), StaticMarketDataService()).analyze(as_of=AS_OF)
    assert summary.investments == []
    assert summary.total_value == Decimal("0")
