from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime, date, timedelta
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TypeVar
import os
import re
import sys
import time
import warnings

import yfinance as yf  # type: ignore[import-untyped]
from yfinance.exceptions import YFRateLimitError  # type: ignore[import-untyped]
import pandas as pd

from .activities import local_day
from .currency import Currency, ExchangeRateManager, FixedExchangeRateManager, currency_pair_symbol

T = TypeVar("T")
R = TypeVar("R")

# Track which symbols have been force-refreshed this session
_refreshed_symbols: set[str] = set()

# When True, print status messages during data fetching (e.g. "Fetching AAPL …").
verbose: bool = False

# Keys in a historical price map that are not ISO dates
SUMMARY_KEYS = ("1W", "1M", "6M", "YTD", "1Y", "2Y", "3Y", "5Y", "10Y", "ALL")

DEFAULT_FETCH_BATCH_SIZE = 5
DEFAULT_FETCH_PAUSE_SECONDS = 0.2
DEFAULT_RATE_LIMIT_RETRIES = 3
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60.0
# Added on top of the provider's own cool-down hint
RATE_LIMIT_WAIT_MARGIN_SECONDS = 5.0
DEFAULT_HISTORY_YEARS = 10

_COOLDOWN_PATTERN = re.compile(r"Cooling down for (\d+)s")


def _env_number(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


class RateLimitError(Exception):
    """The market data provider asked us to slow down.

    Attributes:
        retry_after: Seconds the provider asked us to wait, if it said.
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


def parse_retry_after(message: str) -> float | None:
    """Extract the cool-down hint from a provider error message."""
    match = _COOLDOWN_PATTERN.search(message)
    if match:
        return float(match.group(1))
    return None


def call_with_rate_limit_retry(
    func: Callable[..., R],
    *args: Any,
    max_retries: int | None = None,
    default_wait: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> R:
    """
    Call ``func``, waiting and retrying when it raises RateLimitError.

    The wait is the provider's hint plus a five second margin when the error
    carries one, else ``default_wait``. Any other exception propagates
    immediately.

    Args:
        func: The callable to invoke.
        *args: Positional arguments for ``func``.
        max_retries: Retries after the first attempt. Defaults to
            ``FOLIO_RATE_LIMIT_RETRIES`` or 3.
        default_wait: Seconds to wait without a hint. Defaults to
            ``FOLIO_RATE_LIMIT_WAIT_SECONDS`` or 60.
        sleep: Sleep function, replaceable in tests.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        Whatever ``func`` returns.

    Raises:
        RateLimitError: If the last retry is still rate limited.
    """
    if max_retries is None:
        max_retries = int(_env_number("FOLIO_RATE_LIMIT_RETRIES", DEFAULT_RATE_LIMIT_RETRIES))
    if default_wait is None:
        default_wait = _env_number("FOLIO_RATE_LIMIT_WAIT_SECONDS", DEFAULT_RATE_LIMIT_WAIT_SECONDS)

    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except RateLimitError as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            if e.retry_after is not None:
                wait = e.retry_after + RATE_LIMIT_WAIT_MARGIN_SECONDS
            else:
                wait = default_wait
            if verbose:
                print(f"  Rate limited, cooling down for {wait:.0f}s (retry {attempt}/{max_retries}) …", file=sys.stderr, flush=True)
            sleep(wait)


def fetch_in_batches(
    items: Iterable[T],
    fetch: Callable[[T], R],
    batch_size: int | None = None,
    pause_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[dict[T, R], dict[T, Exception]]:
    """
    Run ``fetch`` over items in small concurrent batches.

    Each batch runs on a thread pool; the next batch starts after the whole
    batch finishes and a short pause. A failure for one item is recorded
    and does not affect the others.

    Args:
        items: Items to fetch, typically symbols. Duplicates are fetched once.
        fetch: Called once per item.
        batch_size: Items per batch. Defaults to ``FOLIO_FETCH_BATCH_SIZE`` or 5.
        pause_seconds: Pause between batches. Defaults to
            ``FOLIO_FETCH_PAUSE_SECONDS`` or 0.2.
        sleep: Sleep function, replaceable in tests.

    Returns:
        Tuple of (results by item, exceptions by item).
    """
    if batch_size is None:
        batch_size = int(_env_number("FOLIO_FETCH_BATCH_SIZE", DEFAULT_FETCH_BATCH_SIZE))
    if pause_seconds is None:
        pause_seconds = _env_number("FOLIO_FETCH_PAUSE_SECONDS", DEFAULT_FETCH_PAUSE_SECONDS)
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    unique_items = list(dict.fromkeys(items))
    results: dict[T, R] = {}
    failures: dict[T, Exception] = {}

    for start in range(0, len(unique_items), batch_size):
        batch = unique_items[start:start + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = {item: pool.submit(fetch, item) for item in batch}
            for item, future in futures.items():
                try:
                    results[item] = future.result()
                except Exception as e:
                    failures[item] = e
        if start + batch_size < len(unique_items) and pause_seconds > 0:
            sleep(pause_seconds)

    return results, failures


def get_yfinance_cache_path(symbol: str) -> Path:
    """Get the cache file path for a given symbol.

    Args:
        symbol: The ticker symbol (e.g., "AAPL", "EURUSD=X").

    Returns:
        Path to the CSV cache file under ``.cache/yfinance_prices/``.
    """
    return Path.cwd() / ".cache" / "yfinance_prices" / f"{symbol}.csv"


def fetch_yfinance_data(symbol: str, min_date: date, max_date: date, force_cache_refresh: bool = False) -> pd.DataFrame:
    """
    Fetch yfinance daily data for a symbol, using the disk cache.

    If cached data exists, checks if it covers the requested date range.
    If not, expands the request to include all dates from cache + requested range,
    then updates the cache with the merged data.

    Args:
        symbol: The ticker symbol (e.g., "AAPL", "MSFT").
        min_date: The minimum date needed.
        max_date: The maximum date needed.
        force_cache_refresh: If True, force a fresh fetch from Yahoo Finance
            (only once per symbol per session).

    Returns:
        DataFrame with columns: Date, Open, High, Low, Close, Adj Close, Volume.

    Raises:
        RateLimitError: If Yahoo Finance rate limited the request.
    """
    cache_path = get_yfinance_cache_path(symbol)

    cached_df: pd.DataFrame | None = None
    cached_min: date | None = None
    cached_max: date | None = None

    if cache_path.exists():
        try:
            cached_df = pd.read_csv(cache_path, parse_dates=['Date'])  # type: ignore[call-overload]
            if not cached_df.empty:
                cached_df['Date'] = pd.to_datetime(cached_df['Date']).dt.date
                cached_min = cached_df['Date'].min()
                cached_max = cached_df['Date'].max()
        except (OSError, ValueError, pd.errors.ParserError):
            # Corrupted cache, refetch
            cached_df = None

    fetch_start = min_date
    fetch_end = max_date

    should_force_refresh = force_cache_refresh and symbol not in _refreshed_symbols

    if should_force_refresh:
        need_fetch = True
        if cached_df is not None and not cached_df.empty and cached_min is not None and cached_max is not None:
            fetch_start = min(min_date, cached_min)
            fetch_end = max(max_date, cached_max)
    elif cached_df is None or cached_df.empty or cached_min is None or cached_max is None:
        need_fetch = True
    elif min_date < cached_min or max_date > cached_max:
        need_fetch = True
        fetch_start = min(min_date, cached_min)
        fetch_end = max(max_date, cached_max)
    else:
        need_fetch = False

    if not need_fetch:
        assert cached_df is not None
        return cached_df

    _refreshed_symbols.add(symbol)

    # yfinance end date is exclusive, so add 1 day
    fetch_end_exclusive = fetch_end + timedelta(days=1)

    if verbose:
        print(f"  Fetching {symbol} ({fetch_start} to {fetch_end}) …", flush=True)
    try:
        ticker = yf.Ticker(symbol)
        new_df: pd.DataFrame = ticker.history(  # type: ignore[call-arg]
            start=fetch_start.isoformat(),
            end=fetch_end_exclusive.isoformat(),
            auto_adjust=False
        )
    except YFRateLimitError as e:
        raise RateLimitError(f"Yahoo Finance rate limited {symbol}: {e}", parse_retry_after(str(e))) from e
    except Exception as e:
        # yfinance raises assorted errors for delisted symbols, network issues
        # and dates without trading; fall back to whatever is cached
        print(f"Warning: yfinance request failed for {symbol}: {e}", file=sys.stderr)
        if cached_df is not None and not cached_df.empty:
            return cached_df
        return pd.DataFrame(columns=['Date', 'Open', 'High', 'Low', 'Close', 'Adj Close', 'Volume'])

    if new_df.empty:
        print(f"Warning: yfinance returned no data for {symbol} (possible rate limiting)", file=sys.stderr)
        if cached_df is not None and not cached_df.empty:
            return cached_df
        return pd.DataFrame(columns=['Date', 'Open', 'High', 'Low', 'Close', 'Adj Close', 'Volume'])

    new_df = new_df.reset_index()
    new_df['Date'] = pd.to_datetime(new_df['Date']).dt.date

    columns_to_keep = ['Date', 'Open', 'High', 'Low', 'Close', 'Adj Close', 'Volume']
    available_columns = [c for c in columns_to_keep if c in new_df.columns]
    new_df = new_df[available_columns]

    if cached_df is not None and not cached_df.empty:
        combined_df = pd.concat([cached_df, new_df], ignore_index=True)
        combined_df = combined_df.drop_duplicates(subset=['Date'], keep='last')
        combined_df = combined_df.sort_values('Date').reset_index(drop=True)
    else:
        combined_df = new_df.sort_values('Date').reset_index(drop=True)

    cache_path.parent.mkdir(parents=True, exist_ok=True)
    combined_df.to_csv(cache_path, index=False)

    return combined_df


def _to_price(value: Any) -> Decimal:
    return Decimal(str(float(value))).quantize(Decimal("0.0001"))


def closes_from_dataframe(df: pd.DataFrame) -> dict[date, Decimal]:
    """Map each trading date in a yfinance frame to its close."""
    closes: dict[date, Decimal] = {}
    for _, row in df.iterrows():
        close = row['Close']
        if pd.isna(close):
            continue
        row_date = row['Date']
        if isinstance(row_date, datetime):
            row_date = row_date.date()
        elif isinstance(row_date, str):
            row_date = date.fromisoformat(row_date[:10])
        closes[row_date] = _to_price(close)
    return closes


def _close_on_or_before(closes: Mapping[date, Decimal], target: date, max_lookback_days: int = 7) -> Decimal | None:
    for days_back in range(max_lookback_days + 1):
        price = closes.get(target - timedelta(days=days_back))
        if price is not None:
            return price
    return None


def build_historical_price_map(closes: Mapping[date, Decimal], today: date | None = None) -> dict[str, Decimal]:
    """
    Build the historical price map handed to valuation.

    Keys are ISO dates plus the summary keys ``1W``, ``1M``, ``1Y`` and
    ``YTD``, which hold the close on (or shortly before) that point in time.

    Args:
        closes: Closing prices by trading date.
        today: Reference date for the summary keys. Defaults to today.

    Returns:
        Price map keyed by ISO date and summary key.
    """
    if today is None:
        today = date.today()

    prices: dict[str, Decimal] = {d.isoformat(): price for d, price in sorted(closes.items())}
    anchors = {
        "1W": today - timedelta(weeks=1),
        "1M": today - timedelta(days=30),
        "1Y": today - timedelta(days=365),
        "YTD": date(today.year, 1, 1),
    }
    for key, anchor in anchors.items():
        price = _close_on_or_before(closes, anchor)
        if price is not None:
            prices[key] = price
    return prices


def parse_price_map(prices: Mapping[str, Decimal]) -> dict[date, Decimal]:
    """Convert a historical price map back to dated closes, dropping summary keys."""
    closes: dict[date, Decimal] = {}
    for key, price in prices.items():
        if key in SUMMARY_KEYS:
            continue
        try:
            closes[date.fromisoformat(key[:10])] = price
        except ValueError:
            continue
    return closes


@dataclass
class Quote:
    """Latest market snapshot for an investment."""
    symbol: str
    price: Decimal
    currency: Currency | None = None
    name: str | None = None
    sector: str | None = None
    country: str | None = None
    fifty_two_week_high: Decimal | None = None
    fifty_two_week_low: Decimal | None = None
    dividend_rate: Decimal | None = None
    dividend_yield: Decimal | None = None


@dataclass(frozen=True)
class SplitEvent:
    """A corporate stock split, ``numerator`` new shares for ``denominator`` old."""
    split_date: datetime
    numerator: Decimal
    denominator: Decimal

    @property
    def ratio(self) -> Decimal:
        if self.denominator == 0:
            return Decimal("0")
        return self.numerator / self.denominator


@dataclass(frozen=True)
class DividendEvent:
    """A cash dividend, ``amount`` per share, going ex on ``ex_date``."""
    ex_date: datetime
    amount: Decimal


class MarketDataService(ABC):
    """Abstract base class for market data providers."""

    @abstractmethod
    def get_price(self, symbol: str, force_refresh: bool = False) -> Quote | None:
        """Latest quote for ``symbol``, or None when unavailable."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_historical_prices(self, symbol: str, start: date | None = None) -> dict[str, Decimal]:
        """Closing prices keyed by ISO date plus summary keys (``1W``, ``1M``, ``1Y``, ``YTD``)."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        """Units of ``to_currency`` per unit of ``from_currency``, or None when unknown."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_splits(self, symbol: str, start: datetime) -> list[SplitEvent]:
        """Split events for ``symbol`` on or after ``start``."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_dividends(self, symbol: str, start: datetime) -> list[DividendEvent]:
        """Dividends for ``symbol`` going ex on or after ``start``."""
        raise NotImplementedError("This method should be overridden by subclasses.")


class StaticMarketDataService(MarketDataService):
    """Market data served from in-memory tables.

    Useful for tests and offline runs. Symbols listed in ``failing`` raise
    the given exception from every lookup.
    """

    def __init__(
        self,
        quotes: Mapping[str, Quote | Decimal] | None = None,
        histories: Mapping[str, Mapping[Any, Decimal]] | None = None,
        splits: Mapping[str, list[SplitEvent]] | None = None,
        dividends: Mapping[str, list[DividendEvent]] | None = None,
        exchange_rate_manager: ExchangeRateManager | None = None,
        failing: Mapping[str, Exception] | None = None,
    ):
        self.quotes: dict[str, Quote] = {}
        for symbol, quote in (quotes or {}).items():
            self.quotes[symbol] = quote if isinstance(quote, Quote) else Quote(symbol=symbol, price=quote)
        self.histories: dict[str, dict[str, Decimal]] = {}
        for symbol, history in (histories or {}).items():
            self.histories[symbol] = {
                key.isoformat() if isinstance(key, date) else str(key): Decimal(str(price))
                for key, price in history.items()
            }
        self.splits: dict[str, list[SplitEvent]] = {k: list(v) for k, v in (splits or {}).items()}
        self.dividends: dict[str, list[DividendEvent]] = {k: list(v) for k, v in (dividends or {}).items()}
        self.exchange_rate_manager = exchange_rate_manager or FixedExchangeRateManager(use_defaults=False)
        self.failing: dict[str, Exception] = dict(failing or {})
        self.calls: list[tuple[str, str]] = []

    def _check(self, method: str, symbol: str) -> None:
        self.calls.append((method, symbol))
        if symbol in self.failing:
            raise self.failing[symbol]

    def get_price(self, symbol: str, force_refresh: bool = False) -> Quote | None:
        self._check("get_price", symbol)
        return self.quotes.get(symbol)

    def get_historical_prices(self, symbol: str, start: date | None = None) -> dict[str, Decimal]:
        self._check("get_historical_prices", symbol)
        history = self.histories.get(symbol, {})
        if start is None:
            return dict(history)
        start_key = start.isoformat()
        return {k: v for k, v in history.items() if k in SUMMARY_KEYS or k >= start_key}

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        try:
            return self.exchange_rate_manager.get_exchange_rate(from_currency, to_currency)
        except ValueError:
            return None

    def get_splits(self, symbol: str, start: datetime) -> list[SplitEvent]:
        self._check("get_splits", symbol)
        start_day = local_day(start)
        return [s for s in self.splits.get(symbol, []) if local_day(s.split_date) >= start_day]

    def get_dividends(self, symbol: str, start: datetime) -> list[DividendEvent]:
        self._check("get_dividends", symbol)
        start_day = local_day(start)
        return [d for d in self.dividends.get(symbol, []) if local_day(d.ex_date) >= start_day]


class YFinanceExchangeRateManager(ExchangeRateManager):
    """Exchange rates from Yahoo Finance currency pair tickers.

    Looks up ``{FROM}{TO}=X`` and falls back to the inverse of
    ``{TO}{FROM}=X``. Historical lookups use cached daily closes with a
    seven day look-back; current lookups use the live price.
    """

    def __init__(self, force_cache_refresh: bool = False):
        self.force_cache_refresh = force_cache_refresh
        self._latest: dict[tuple[Currency, Currency], Decimal] = {}

    def _pair_rate(self, from_currency: Currency, to_currency: Currency, on: date | None) -> Decimal | None:
        symbol = currency_pair_symbol(from_currency, to_currency)
        if on is None:
            try:
                last_price = yf.Ticker(symbol).fast_info.get('lastPrice')
            except YFRateLimitError as e:
                raise RateLimitError(f"Yahoo Finance rate limited {symbol}: {e}", parse_retry_after(str(e))) from e
            except (KeyError, ValueError, TypeError, AttributeError):
                last_price = None
            if last_price:
                return Decimal(str(last_price))
            on = date.today()

        df = fetch_yfinance_data(symbol, on - timedelta(days=10), on, self.force_cache_refresh)
        if df.empty:
            return None
        closes = {d: Decimal(str(float(v))) for d, v in zip(df['Date'], df['Close']) if not pd.isna(v)}
        return _close_on_or_before(closes, on)

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime: datetime | None = None) -> Decimal:
        """Get the exchange rate between two currencies.

        Raises:
            ValueError: If neither the pair nor its inverse has a rate.
        """
        if from_currency == to_currency:
            return Decimal("1.0")

        on = datetime.date() if datetime is not None else None
        if on is None and (from_currency, to_currency) in self._latest:
            return self._latest[(from_currency, to_currency)]

        rate = self._pair_rate(from_currency, to_currency, on)
        if rate is None:
            inverse = self._pair_rate(to_currency, from_currency, on)
            if inverse:
                rate = Decimal("1") / inverse
        if rate is None:
            raise ValueError(f"Exchange rate from {from_currency.value} to {to_currency.value} not available.")

        if on is None:
            self._latest[(from_currency, to_currency)] = rate
        return rate


def _optional_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(number):
        return None
    return Decimal(str(number))


def _split_from_ratio(split_date: datetime, ratio: float) -> SplitEvent:
    fraction = Fraction(str(ratio)).limit_denominator(1000)
    return SplitEvent(
        split_date=split_date,
        numerator=Decimal(fraction.numerator),
        denominator=Decimal(fraction.denominator),
    )


class YFinanceMarketDataService(MarketDataService):
    """Market data from Yahoo Finance via yfinance.

    Every network call goes through ``call_with_rate_limit_retry``.
    """

    def __init__(self, force_cache_refresh: bool = False, exchange_rate_manager: ExchangeRateManager | None = None):
        """Initialize the service.

        Args:
            force_cache_refresh: If True, bypass the disk price cache (once
                per symbol per session) and the in-memory quote cache.
            exchange_rate_manager: Source of exchange rates. Defaults to
                YFinanceExchangeRateManager.
        """
        self.force_cache_refresh = force_cache_refresh
        self.exchange_rate_manager = exchange_rate_manager or YFinanceExchangeRateManager(force_cache_refresh)
        self._quotes: dict[str, Quote] = {}

    def _fetch_quote(self, symbol: str) -> Quote | None:
        try:
            ticker = yf.Ticker(symbol)
            fast_info = ticker.fast_info
            last_price = fast_info.get('lastPrice')
            info: dict[str, Any] = ticker.info or {}
        except YFRateLimitError as e:
            raise RateLimitError(f"Yahoo Finance rate limited {symbol}: {e}", parse_retry_after(str(e))) from e

        price = _optional_decimal(last_price) or _optional_decimal(info.get('regularMarketPrice'))
        if price is None:
            return None

        currency: Currency | None = None
        currency_code = info.get('currency') or fast_info.get('currency')
        if currency_code:
            try:
                currency = Currency(str(currency_code).upper())
            except ValueError:
                warnings.warn(f"Unsupported quote currency {currency_code!r} for {symbol}", UserWarning)

        return Quote(
            symbol=symbol,
            price=price,
            currency=currency,
            name=info.get('longName') or info.get('shortName'),
            sector=info.get('sector'),
            country=info.get('country'),
            fifty_two_week_high=_optional_decimal(info.get('fiftyTwoWeekHigh')),
            fifty_two_week_low=_optional_decimal(info.get('fiftyTwoWeekLow')),
            dividend_rate=_optional_decimal(info.get('dividendRate')),
            dividend_yield=_optional_decimal(info.get('dividendYield')),
        )

    def get_price(self, symbol: str, force_refresh: bool = False) -> Quote | None:
        if not (force_refresh or self.force_cache_refresh) and symbol in self._quotes:
            return self._quotes[symbol]
        quote = call_with_rate_limit_retry(self._fetch_quote, symbol)
        if quote is not None:
            self._quotes[symbol] = quote
        return quote

    def get_historical_prices(self, symbol: str, start: date | None = None) -> dict[str, Decimal]:
        today = date.today()
        if start is None:
            start = today - timedelta(days=365 * DEFAULT_HISTORY_YEARS)
        # Reach back far enough for the 1Y summary key
        fetch_start = min(start, today - timedelta(days=372))
        df = call_with_rate_limit_retry(fetch_yfinance_data, symbol, fetch_start, today, self.force_cache_refresh)
        closes = closes_from_dataframe(df)
        prices = build_historical_price_map(closes, today)
        start_key = start.isoformat()
        return {k: v for k, v in prices.items() if k in SUMMARY_KEYS or k >= start_key}

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        try:
            return call_with_rate_limit_retry(self.exchange_rate_manager.get_exchange_rate, from_currency, to_currency)
        except ValueError:
            return None

    def _fetch_splits(self, symbol: str) -> pd.Series:
        try:
            return yf.Ticker(symbol).splits
        except YFRateLimitError as e:
            raise RateLimitError(f"Yahoo Finance rate limited {symbol}: {e}", parse_retry_after(str(e))) from e

    def get_splits(self, symbol: str, start: datetime) -> list[SplitEvent]:
        series = call_with_rate_limit_retry(self._fetch_splits, symbol)
        start_day = local_day(start)
        events: list[SplitEvent] = []
        for timestamp, ratio in series.items():
            split_date: datetime = pd.Timestamp(timestamp).to_pydatetime()  # type: ignore[arg-type]
            if local_day(split_date) < start_day or not ratio or float(ratio) <= 0:
                continue
            events.append(_split_from_ratio(split_date, float(ratio)))
        return events

    def _fetch_dividends(self, symbol: str) -> pd.Series:
        try:
            return yf.Ticker(symbol).dividends
        except YFRateLimitError as e:
            raise RateLimitError(f"Yahoo Finance rate limited {symbol}: {e}", parse_retry_after(str(e))) from e

    def get_dividends(self, symbol: str, start: datetime) -> list[DividendEvent]:
        series = call_with_rate_limit_retry(self._fetch_dividends, symbol)
        start_day = local_day(start)
        events: list[DividendEvent] = []
        for timestamp, amount in series.items():
            ex_date: datetime = pd.Timestamp(timestamp).to_pydatetime()  # type: ignore[arg-type]
            per_share = _optional_decimal(amount)
            if local_day(ex_date) < start_day or per_share is None or per_share <= 0:
                continue
            events.append(DividendEvent(ex_date, per_share))
        return events
