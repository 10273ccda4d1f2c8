#!/usr/bin/env python3
"""Report subcommand - per-investment returns and portfolio XIRR."""

from datetime import datetime

from dotenv import load_dotenv

load_dotenv()

from ..stats import PortfolioAnalyzer
from .common import add_common_arguments, format_currency, format_percentage, prepare
from rich.console import Console
from rich.table import Table
from rich.panel import Panel


def register_subcommand(subparsers):
    """Register the report subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "report",
        help="Display per-investment returns",
        description="Replay an activity file and show holdings, cost basis, returns and XIRR per investment.",
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--account",
        action="append",
        dest="accounts",
        help="Only include this account (repeatable; use 'Unassigned' for activities without one)",
    )
    parser.set_defaults(func=run)


def run(args):
    """Display the investment table and a portfolio summary.

    Args:
        args: Parsed argparse namespace.

    Returns:
        int: Exit code (0 for success).
    """
    currency, store, market_data = prepare(args)
    console = Console()

    summary = PortfolioAnalyzer(store, market_data).analyze(
        target_currency=currency,
        account_ids=args.accounts,
    )

    local_now = datetime.now().astimezone()
    table = Table(title=f"Investments on {local_now.strftime('%Y-%m-%d %H:%M %Z')}")
    table.add_column("Symbol", style="cyan", justify="left")
    table.add_column("Quantity", style="magenta", justify="right")
    table.add_column("Avg → Market", justify="right")
    table.add_column("Cost Basis", style="yellow", justify="right")
    table.add_column("Market Value", style="green", justify="right")
    table.add_column("Return", justify="right")
    table.add_column("Dividends", justify="right")
    table.add_column("Fees", justify="right")
    table.add_column("XIRR", justify="right")

    for stats in summary.investments:
        if stats.market_price is not None:
            price_str = f"[yellow]{stats.average_price:,.2f}[/yellow] → [green]{stats.market_price:,.2f}[/green]"
        else:
            price_str = f"[yellow]{stats.average_price:,.2f}[/yellow] → N/A"

        table.add_row(
            stats.symbol,
            f"{stats.quantity:,.4f}".rstrip("0").rstrip("."),
            price_str,
            format_currency(stats.total_investment, stats.currency),
            format_currency(stats.current_value, stats.currency),
            format_percentage(stats.percent_return, fraction=False),
            f"{stats.total_dividends:,.2f}",
            f"{stats.total_fees:,.2f}",
            format_percentage(stats.xirr),
        )

    console.print(table)

    lines = [
        f"[bold]Invested:[/bold] {format_currency(summary.total_investment, currency)}",
        f"[bold]Market value:[/bold] {format_currency(summary.total_value, currency)}",
        f"[bold]Return:[/bold] {format_currency(summary.absolute_return, currency)}",
        f"[bold]Portfolio XIRR:[/bold] {format_percentage(summary.xirr)}",
    ]
    best = summary.top_performers(1)
    worst = summary.bottom_performers(1)
    if best:
        lines.append(f"[bold]Best:[/bold] {best[0].symbol} {format_percentage(best[0].percent_return, fraction=False)}")
    if worst:
        lines.append(f"[bold]Worst:[/bold] {worst[0].symbol} {format_percentage(worst[0].percent_return, fraction=False)}")
    for symbol, error in summary.failed_symbols.items():
        lines.append(f"[red]No market data for {symbol}: {error}[/red]")

    console.print(Panel("\n".join(lines), title="Summary"))
    return 0
