"""Helpers shared by the folio subcommands."""

import warnings
from datetime import date
from decimal import Decimal

from .. import pricingdata
from ..activities import InMemoryActivityStore, load_activities
from ..currency import Currency
from ..pricingdata import YFinanceMarketDataService


def add_common_arguments(parser) -> None:
    """Arguments every file-based subcommand accepts.

    Args:
        parser: The subcommand's argparse parser.
    """
    parser.add_argument("filename", help="Path to the Excel or JSON activity file")
    parser.add_argument(
        "--currency",
        "-c",
        default="USD",
        help="Currency for reported values (default: USD)",
    )
    parser.add_argument(
        "--ignore-errors",
        action="store_true",
        help="Silence warnings about malformed activities and missing data",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Bypass cache and fetch fresh pricing data",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Print data fetching progress",
    )


def prepare(args) -> tuple[Currency, InMemoryActivityStore, YFinanceMarketDataService]:
    """Apply common flags and load the activity file.

    Args:
        args: Parsed argparse namespace with the common arguments.

    Returns:
        Tuple of (report currency, activity store, market data service).

    Raises:
        ValueError: If the currency is unknown.
    """
    if args.ignore_errors:
        warnings.filterwarnings("ignore", category=UserWarning)
    pricingdata.verbose = args.verbose

    try:
        currency = Currency(args.currency.upper())
    except ValueError:
        raise ValueError(f"Unknown currency '{args.currency}'")

    store = load_activities(args.filename, default_currency=currency)
    market_data = YFinanceMarketDataService(force_cache_refresh=args.no_cache)
    return currency, store, market_data


def parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    return date.fromisoformat(value)


def format_percentage(value: float | Decimal | None, precision: int = 2, fraction: bool = True) -> str:
    """Format a value as a coloured percentage string.

    Args:
        value: 0.05 becomes "+5.00%" when ``fraction`` is True, else 5 does.
        precision: Number of decimal places.
        fraction: Whether ``value`` is a fraction rather than a percentage.

    Returns:
        Rich-markup string, or "N/A" if value is None.
    """
    if value is None:
        return "N/A"
    pct = float(value) * 100 if fraction else float(value)
    if pct >= 0:
        return f"[green]+{pct:.{precision}f}%[/green]"
    return f"[red]{pct:.{precision}f}%[/red]"


def format_currency(value: Decimal | float | None, currency: Currency, precision: int = 2) -> str:
    if value is None:
        return "N/A"
    return f"{float(value):,.{precision}f} {currency.value}"
