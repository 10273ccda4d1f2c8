#!/usr/bin/env python3
"""History subcommand - daily valuation series."""

from dotenv import load_dotenv

load_dotenv()

from ..valuation import PortfolioHistoryBuilder
from .common import add_common_arguments, format_currency, parse_date, prepare
from rich.console import Console
from rich.table import Table

# Longer ranges are printed weekly
DAILY_ROW_LIMIT = 60


def register_subcommand(subparsers):
    """Register the history subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "history",
        help="Display the daily valuation series",
        description="Value the portfolio on every day of a range, with flows and invested capital.",
    )
    add_common_arguments(parser)
    parser.add_argument("--start", help="First day (YYYY-MM-DD, default: first activity)")
    parser.add_argument("--end", help="Last day (YYYY-MM-DD, default: today)")
    parser.add_argument("--account", action="append", dest="accounts", help="Only include this account (repeatable)")
    parser.set_defaults(func=run)


def run(args):
    """Print the valuation series.

    Args:
        args: Parsed argparse namespace.

    Returns:
        int: Exit code (0 for success).
    """
    currency, store, market_data = prepare(args)
    console = Console()

    history = PortfolioHistoryBuilder(store, market_data).build(
        start_date=parse_date(args.start),
        end_date=parse_date(args.end),
        account_ids=args.accounts,
        target_currency=currency,
    )
    if not history.points:
        console.print("No activities to value.")
        return 0

    points = history.points
    if len(points) > DAILY_ROW_LIMIT:
        # Keep the last day so the table ends on the current value
        points = points[::7] + ([points[-1]] if (len(points) - 1) % 7 else [])

    table = Table(title=f"Portfolio Value ({currency.value})")
    table.add_column("Date", style="cyan")
    table.add_column("Market Value", style="green", justify="right")
    table.add_column("Net Flow", justify="right")
    table.add_column("Invested", style="yellow", justify="right")
    for point in points:
        table.add_row(
            point.day.isoformat(),
            format_currency(point.market_value, currency),
            format_currency(point.net_flow, currency),
            format_currency(point.invested, currency),
        )
    console.print(table)

    for symbol, error in history.failed_symbols.items():
        console.print(f"[red]No price history for {symbol}: {error}[/red]")
    return 0
