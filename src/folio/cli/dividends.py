#!/usr/bin/env python3
"""Dividends subcommand - record cash dividends missing from the activity file."""

from dotenv import load_dotenv

load_dotenv()

from ..activities import save_activities
from ..dividends import DividendScanner
from .common import add_common_arguments, format_currency, prepare
from rich.console import Console
from rich.table import Table


def register_subcommand(subparsers):
    """Register the dividends subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "dividends",
        help="Detect and record missing dividends",
        description="Look up each investment's dividend history and add DIVIDEND activities for accounts that held it.",
    )
    add_common_arguments(parser)
    parser.add_argument("--symbol", help="Only check this investment")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be added without saving")
    parser.add_argument("--reinvest", action="store_true", help="Also buy shares with each dividend at the ex-date close")
    parser.set_defaults(func=run)


def run(args):
    """Scan for dividends and save the file.

    Args:
        args: Parsed argparse namespace.

    Returns:
        int: Exit code (0 for success, 1 if any symbol failed).
    """
    _, store, market_data = prepare(args)
    console = Console()

    result = DividendScanner(store, market_data).scan(symbol=args.symbol, dry_run=args.dry_run, reinvest=args.reinvest)

    if result.created:
        table = Table(title="Would add" if args.dry_run else "Added")
        table.add_column("Symbol", style="cyan")
        table.add_column("Ex-date")
        table.add_column("Shares", justify="right")
        table.add_column("Per share", justify="right")
        table.add_column("Amount", justify="right")
        table.add_column("Account")
        for activity in result.created:
            table.add_row(
                activity.symbol,
                activity.activity_datetime.strftime("%Y-%m-%d"),
                str(activity.quantity),
                str(activity.price),
                format_currency(activity.amount, activity.currency),
                activity.bucket,
            )
        console.print(table)
        for buy in result.reinvested:
            console.print(f"Reinvest: {buy.quantity} {buy.symbol} @ {buy.price} in {buy.bucket}")
        if not args.dry_run:
            save_activities(store, args.filename)
            console.print(f"Saved {result.created_count} dividend(s) to {args.filename}")
    else:
        console.print("No missing dividends found.")

    if result.already_recorded:
        console.print(f"{result.already_recorded} dividend(s) were already recorded.")
    for symbol, error in result.failed_symbols.items():
        console.print(f"[red]Could not check {symbol}: {error}[/red]")

    return 1 if result.failed_symbols else 0
