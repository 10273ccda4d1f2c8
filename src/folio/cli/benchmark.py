#!/usr/bin/env python3
"""Benchmark subcommand - compare the portfolio with an index."""

from dotenv import load_dotenv

load_dotenv()

from ..metrics import BENCHMARK_SP500, BenchmarkComparator
from .common import add_common_arguments, format_currency, format_percentage, parse_date, prepare
from rich.console import Console
from rich.table import Table
from rich.panel import Panel


def register_subcommand(subparsers):
    """Register the benchmark subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "benchmark",
        help="Compare the portfolio with a benchmark",
        description="Invest every contribution in a benchmark on the same day and compare the outcome.",
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--benchmark",
        "-b",
        default=BENCHMARK_SP500,
        help=f"Benchmark ticker (default: {BENCHMARK_SP500})",
    )
    parser.add_argument("--start", help="First day (YYYY-MM-DD, default: first activity)")
    parser.add_argument("--end", help="Last day (YYYY-MM-DD, default: today)")
    parser.add_argument("--account", action="append", dest="accounts", help="Only include this account (repeatable)")
    parser.add_argument("--debug", action="store_true", help="Show how rates and prices were resolved")
    parser.set_defaults(func=run)


def run(args):
    """Print the comparison summary.

    Args:
        args: Parsed argparse namespace.

    Returns:
        int: Exit code (0 for success).
    """
    currency, store, market_data = prepare(args)
    console = Console()

    comparison = BenchmarkComparator(store, market_data).compare(
        benchmark_symbol=args.benchmark,
        start_date=parse_date(args.start),
        end_date=parse_date(args.end),
        target_currency=currency,
        account_ids=args.accounts,
    )

    table = Table(title=f"Portfolio vs {comparison.benchmark_symbol}")
    table.add_column("Metric", style="cyan")
    table.add_column("Portfolio", justify="right")
    table.add_column(comparison.benchmark_symbol, justify="right")
    table.add_row(
        "Value",
        format_currency(comparison.portfolio_value, currency),
        format_currency(comparison.benchmark_value, currency),
    )
    table.add_row("XIRR", format_percentage(comparison.portfolio_xirr), format_percentage(comparison.benchmark_xirr))
    console.print(table)

    console.print(Panel(
        f"Invested: {format_currency(comparison.total_invested, currency)}\n"
        f"Difference: {format_currency(comparison.portfolio_value - comparison.benchmark_value, currency)}",
        title="Summary",
    ))

    if args.debug:
        console.print(Panel("\n".join(comparison.debug) or "(nothing recorded)", title="Debug"))
    return 0
