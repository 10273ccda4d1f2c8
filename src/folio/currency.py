from enum import Enum
from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime

class Currency(Enum):
    """Currencies that activities, quotes and reports can be denominated in."""

    USD = "USD"
    CAD = "CAD"
    EUR = "EUR"
    GBP = "GBP"
    INR = "INR"
    JPY = "JPY"
    AUD = "AUD"
    CHF = "CHF"
    SGD = "SGD"
    HKD = "HKD"
    CNY = "CNY"
    TWD = "TWD"
    KRW = "KRW"
    BRL = "BRL"
    MXN = "MXN"
    ZAR = "ZAR"

def currency_pair_symbol(from_currency: Currency, to_currency: Currency) -> str:
    """Return the Yahoo Finance ticker for a currency pair, e.g. ``EURUSD=X``."""
    return f"{from_currency.value}{to_currency.value}=X"

class ExchangeRateManager(ABC):
    """Abstract base class for currency exchange rate providers."""

    @abstractmethod
    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None = None) -> Decimal:
        """Get the exchange rate between two currencies.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: The date for the rate lookup. If None, uses the latest rate.

        Returns:
            The number of ``to_currency`` units one ``from_currency`` unit buys.

        Raises:
            ValueError: If no rate is available for the currency pair.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")

class FixedExchangeRateManager(ExchangeRateManager):
    """Exchange rate manager using fixed rates.

    Rates do not vary by date. User supplied rates take precedence over the
    built-in table, and a missing pair falls back to its inverse and then to
    a conversion through USD.
    """

    global_exchange_rates = {
        (Currency.USD, Currency.CAD): Decimal("1.35"),
        (Currency.USD, Currency.EUR): Decimal("0.92"),
        (Currency.USD, Currency.GBP): Decimal("0.79"),
        (Currency.USD, Currency.INR): Decimal("83.0"),
        (Currency.USD, Currency.JPY): Decimal("150.0"),
        (Currency.USD, Currency.AUD): Decimal("1.52"),
        (Currency.USD, Currency.CHF): Decimal("0.88"),
        (Currency.USD, Currency.SGD): Decimal("1.34"),
        (Currency.USD, Currency.HKD): Decimal("7.80"),
        (Currency.USD, Currency.CNY): Decimal("7.20"),
        (Currency.USD, Currency.TWD): Decimal("31.5"),
        (Currency.USD, Currency.KRW): Decimal("1330.0"),
        (Currency.USD, Currency.BRL): Decimal("5.0"),
        (Currency.USD, Currency.MXN): Decimal("17.0"),
        (Currency.USD, Currency.ZAR): Decimal("18.5"),
    }

    def __init__(self, exchange_rates:dict[tuple[Currency, Currency], Decimal] | None = None, use_defaults: bool = True):
        """Initialize with optional custom exchange rates.

        Args:
            exchange_rates: Custom rates to use.
            use_defaults: If True, pairs missing from ``exchange_rates`` are
                filled from ``global_exchange_rates``.
        """
        self.exchange_rates: dict[tuple[Currency, Currency], Decimal] = dict(exchange_rates or {})
        if use_defaults:
            for pair, rate in self.global_exchange_rates.items():
                self.exchange_rates.setdefault(pair, rate)

    def set_exchange_rate(self, from_currency: Currency, to_currency: Currency, rate: Decimal):
        """Set or override the exchange rate for a currency pair."""
        self.exchange_rates[(from_currency, to_currency)] = rate

    def _lookup(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        if (from_currency, to_currency) in self.exchange_rates:
            return self.exchange_rates[(from_currency, to_currency)]
        inverse = self.exchange_rates.get((to_currency, from_currency))
        if inverse:
            return Decimal("1") / inverse
        return None

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, datetime:datetime|None=None) -> Decimal:
        """Get the fixed exchange rate between two currencies.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            datetime: Ignored; included for interface compatibility.

        Returns:
            The exchange rate as a Decimal.

        Raises:
            ValueError: If no rate is available for the currency pair.
        """
        if from_currency == to_currency:
            return Decimal("1.0")

        rate = self._lookup(from_currency, to_currency)
        if rate is not None:
            return rate

        # If neither currency is USD, try converting via USD
        if from_currency != Currency.USD and to_currency != Currency.USD:
            rate_to_usd = self._lookup(from_currency, Currency.USD)
            rate_from_usd = self._lookup(Currency.USD, to_currency)
            if rate_to_usd is not None and rate_from_usd is not None:
                return rate_to_usd * rate_from_usd

        raise ValueError(f"Exchange rate from {from_currency.value} to {to_currency.value} not available.")
