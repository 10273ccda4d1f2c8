#!/usr/bin/env python3
"""Splits subcommand - record stock splits missing from the activity file."""

from dotenv import load_dotenv

load_dotenv()

from ..activities import save_activities
from ..splits import SplitReconciler
from .common import add_common_arguments, prepare
from rich.console import Console
from rich.table import Table


def register_subcommand(subparsers):
    """Register the splits subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers action to add the command to.
    """
    parser = subparsers.add_parser(
        "splits",
        help="Detect and record missing stock splits",
        description="Look up each investment's split history and add STOCK_SPLIT activities for affected accounts.",
    )
    add_common_arguments(parser)
    parser.add_argument("--symbol", help="Only check this investment")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be added without saving")
    parser.set_defaults(func=run)


def run(args):
    """Reconcile splits and save the file.

    Args:
        args: Parsed argparse namespace.

    Returns:
        int: Exit code (0 for success, 1 if any symbol failed).
    """
    _, store, market_data = prepare(args)
    console = Console()

    result = SplitReconciler(store, market_data).detect_and_apply(symbol=args.symbol, dry_run=args.dry_run)

    if result.created:
        table = Table(title="Would add" if args.dry_run else "Added")
        table.add_column("Symbol", style="cyan")
        table.add_column("Date")
        table.add_column("Ratio", justify="right")
        table.add_column("Account")
        for activity in result.created:
            table.add_row(
                activity.symbol,
                activity.activity_datetime.strftime("%Y-%m-%d"),
                str(activity.quantity),
                activity.bucket,
            )
        console.print(table)
        if not args.dry_run:
            save_activities(store, args.filename)
            console.print(f"Saved {result.created_count} split(s) to {args.filename}")
    else:
        console.print("No missing splits found.")

    if result.already_applied:
        console.print(f"{result.already_applied} split(s) were already recorded.")
    for symbol, error in result.failed_symbols.items():
        console.print(f"[red]Could not check {symbol}: {error}[/red]")

    return 1 if result.failed_symbols else 0
