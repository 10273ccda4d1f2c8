"""Tests for market data helpers: batching, rate limit retries, price maps, splits and dividends.

None of these tests touch the network; Yahoo Finance is replaced by fakes.
"""

import threading
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pandas as pd
import pytest

import folio.pricingdata as pricingdata
from folio.pricingdata import (
    RateLimitError,
    StaticMarketDataService,
    DividendEvent,
    SplitEvent,
    YFinanceMarketDataService,
    build_historical_price_map,
    call_with_rate_limit_retry,
    closes_from_dataframe,
    fetch_in_batches,
    parse_price_map,
    parse_retry_after,
)
from folio.currency import Currency, FixedExchangeRateManager

NY = ZoneInfo("America/New_York")


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def test_fetch_in_batches_pauses_between_batches():
    """Twelve symbols in batches of five make three batches and two pauses."""
    sleep = SleepRecorder()
    symbols = [f"S{i}" for i in range(12)]

    results, failures = fetch_in_batches(symbols, str.lower, batch_size=5, pause_seconds=0.2, sleep=sleep)

    assert results == {s: s.lower() for s in symbols}
    assert failures == {}
    assert sleep.calls == [0.2, 0.2]


def test_fetch_in_batches_runs_a_batch_concurrently():
    """All items of a batch are in flight at the same time."""
    barrier = threading.Barrier(3, timeout=5)

    def fetch(item):
        barrier.wait()
        return item

    results, failures = fetch_in_batches(["A", "B", "C"], fetch, batch_size=3, sleep=SleepRecorder())
    assert failures == {}
    assert set(results) == {"A", "B", "C"}


def test_fetch_in_batches_isolates_failures():
    """One failing item does not affect the rest of its batch."""
    def fetch(symbol):
        if symbol == "BAD":
            raise ConnectionError("no route")
        return Decimal("1")

    results, failures = fetch_in_batches(["AAPL", "BAD", "MSFT", "AAPL"], fetch, sleep=SleepRecorder())

    assert set(results) == {"AAPL", "MSFT"}
    assert list(failures) == ["BAD"]
    assert isinstance(failures["BAD"], ConnectionError)


def test_fetch_in_batches_reads_environment(monkeypatch):
    monkeypatch.setenv("FOLIO_FETCH_BATCH_SIZE", "2")
    monkeypatch.setenv("FOLIO_FETCH_PAUSE_SECONDS", "1.5")
    sleep = SleepRecorder()

    fetch_in_batches(["A", "B", "C", "D", "E"], str.lower, sleep=sleep)

    assert sleep.calls == [1.5, 1.5]


def test_fetch_in_batches_rejects_bad_environment(monkeypatch):
    monkeypatch.setenv("FOLIO_FETCH_BATCH_SIZE", "lots")
    with pytest.raises(ValueError, match="FOLIO_FETCH_BATCH_SIZE"):
        fetch_in_batches(["A"], str.lower)


class FlakyCall:
    """Raises the given errors in turn, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.count = 0

    def __call__(self, *args, **kwargs):
        self.count += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_retry_waits_for_hint_plus_margin():
    """The provider's cool-down hint is honored with five extra seconds."""
    sleep = SleepRecorder()
    func = FlakyCall(RateLimitError("slow down", 10), RateLimitError("slow down", 10))

    assert call_with_rate_limit_retry(func, sleep=sleep) == "ok"
    assert sleep.calls == [15, 15]
    assert func.count == 3


def test_retry_without_hint_waits_default():
    sleep = SleepRecorder()
    func = FlakyCall(RateLimitError("slow down"))

    assert call_with_rate_limit_retry(func, sleep=sleep) == "ok"
    assert sleep.calls == [60]


def test_retry_gives_up_after_three_retries():
    sleep = SleepRecorder()
    func = FlakyCall(*[RateLimitError("slow down") for _ in range(4)])

    with pytest.raises(RateLimitError):
        call_with_rate_limit_retry(func, sleep=sleep)
    assert func.count == 4
    assert len(sleep.calls) == 3


def test_retry_does_not_catch_other_errors():
    sleep = SleepRecorder()
    func = FlakyCall(KeyError("lastPrice"))

    with pytest.raises(KeyError):
        call_with_rate_limit_retry(func, sleep=sleep)
    assert sleep.calls == []


def test_retry_passes_arguments_through():
    def add(a, b, scale=1):
        return (a + b) * scale

    assert call_with_rate_limit_retry(add, 1, 2, scale=3, sleep=SleepRecorder()) == 9


@pytest.mark.parametrize("message,expected", [
    ("Too Many Requests. Cooling down for 30s", 30.0),
    ("Rate limited. Try after a while.", None),
])
def test_parse_retry_after(message, expected):
    assert parse_retry_after(message) == expected


def test_historical_price_map_summary_keys():
    """Summary keys take the close on or shortly before their anchor date."""
    closes = {
        date(2023, 3, 1): Decimal("50"),
        date(2023, 12, 29): Decimal("90"),
        date(2024, 1, 31): Decimal("100"),
        date(2024, 2, 23): Decimal("110"),
        date(2024, 2, 29): Decimal("120"),
    }

    prices = build_historical_price_map(closes, today=date(2024, 3, 1))

    assert prices["2024-02-29"] == Decimal("120")
    assert prices["1W"] == Decimal("110")
    assert prices["1M"] == Decimal("100")
    assert prices["1Y"] == Decimal("50")
    assert prices["YTD"] == Decimal("90")


def test_parse_price_map_drops_summary_keys():
    prices = {"2024-01-02": Decimal("10"), "1Y": Decimal("8"), "YTD": Decimal("9"), "garbage": Decimal("1")}
    assert parse_price_map(prices) == {date(2024, 1, 2): Decimal("10")}


def test_closes_from_dataframe():
    df = pd.DataFrame({
        "Date": [date(2024, 1, 2), date(2024, 1, 3), "2024-01-04"],
        "Close": [101.123456, float("nan"), 99.5],
    })
    assert closes_from_dataframe(df) == {
        date(2024, 1, 2): Decimal("101.1235"),
        date(2024, 1, 4): Decimal("99.5000"),
    }


def test_static_service_serves_tables():
    service = StaticMarketDataService(
        quotes={"AAPL": Decimal("190")},
        histories={"AAPL": {date(2024, 1, 2): Decimal("185"), date(2024, 1, 5): Decimal("181")}},
        splits={"AAPL": [SplitEvent(datetime(2020, 8, 31, tzinfo=NY), Decimal("4"), Decimal("1"))]},
        exchange_rate_manager=FixedExchangeRateManager({(Currency.CAD, Currency.USD): Decimal("0.74")}),
    )

    assert service.get_price("AAPL").price == Decimal("190")
    assert service.get_price("MSFT") is None
    assert service.get_historical_prices("AAPL", date(2024, 1, 3)) == {"2024-01-05": Decimal("181")}
    assert service.get_exchange_rate(Currency.CAD, Currency.USD) == Decimal("0.74")
    assert service.get_splits("AAPL", datetime(2021, 1, 1, tzinfo=NY)) == []
    assert len(service.get_splits("AAPL", datetime(2019, 1, 1, tzinfo=NY))) == 1
    assert ("get_price", "MSFT") in service.calls


class FakeTicker:
    splits = pd.Series(
        [4.0, 0.1, 0.0],
        index=pd.DatetimeIndex([
            pd.Timestamp("2020-08-31", tz="America/New_York"),
            pd.Timestamp("2022-06-01", tz="America/New_York"),
            pd.Timestamp("2023-01-03", tz="America/New_York"),
        ]),
    )
    dividends = pd.Series(
        [0.205, 0.24, float("nan")],
        index=pd.DatetimeIndex([
            pd.Timestamp("2019-11-07", tz="America/New_York"),
            pd.Timestamp("2024-02-09", tz="America/New_York"),
            pd.Timestamp("2024-05-10", tz="America/New_York"),
        ]),
    )

    def __init__(self, symbol):
        self.symbol = symbol


def test_yfinance_splits_become_ratios(monkeypatch):
    """Split factors from Yahoo Finance become numerator/denominator pairs; zero factors are dropped."""
    monkeypatch.setattr(pricingdata.yf, "Ticker", FakeTicker)

    events = YFinanceMarketDataService(exchange_rate_manager=FixedExchangeRateManager()).get_splits(
        "AAPL", datetime(2020, 1, 1, tzinfo=NY)
    )

    assert [(e.numerator, e.denominator) for e in events] == [
        (Decimal("4"), Decimal("1")),
        (Decimal("1"), Decimal("10")),
    ]
    assert events[0].split_date.date() == date(2020, 8, 31)


def test_yfinance_splits_respect_start(monkeypatch):
    monkeypatch.setattr(pricingdata.yf, "Ticker", FakeTicker)

    events = YFinanceMarketDataService(exchange_rate_manager=FixedExchangeRateManager()).get_splits(
        "AAPL", datetime(2021, 1, 1, tzinfo=NY)
    )

    assert [e.ratio for e in events] == [Decimal("0.1")]


def test_yfinance_dividends_from_start(monkeypatch):
    """Per-share amounts on or after the start come back as events; missing amounts are dropped."""
    monkeypatch.setattr(pricingdata.yf, "Ticker", FakeTicker)

    events = YFinanceMarketDataService(exchange_rate_manager=FixedExchangeRateManager()).get_dividends(
        "AAPL", datetime(2020, 1, 1, tzinfo=NY)
    )

    assert events == [DividendEvent(datetime(2024, 2, 9, tzinfo=NY), Decimal("0.24"))]


def test_static_service_dividends_respect_start():
    service = StaticMarketDataService(dividends={"AAPL": [DividendEvent(datetime(2024, 2, 9, tzinfo=NY), Decimal("0.24"))]})

    assert service.get_dividends("AAPL", datetime(2024, 3, 1, tzinfo=NY)) == []
    assert len(service.get_dividends("AAPL", datetime(2024, 1, 1, tzinfo=NY))) == 1
    assert ("get_dividends", "AAPL") in service.calls
