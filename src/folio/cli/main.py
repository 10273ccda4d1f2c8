#!/usr/bin/env python3
"""Main entry point for the folio CLI."""

import argparse
import sys

INVESTING_WARNING = (
    " \033[33m⚠  Valuations depend on third-party market data and may be\n"
    "    incomplete. Nothing here should be construed as investment advice.\033[0m"
)


def main():
    """Parse CLI arguments and dispatch to the appropriate subcommand.

    Returns:
        int: Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="folio",
        description="folio - replay an investment ledger and value it over time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  folio report activities.xlsx                 Per-investment returns and XIRR
  folio history activities.xlsx --start 2024-01-01
  folio benchmark activities.xlsx -b ^IXIC      Compare with the NASDAQ
  folio splits activities.xlsx --dry-run       Show splits missing from the file
  folio dividends activities.xlsx --reinvest   Record dividends and reinvest them
        """,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    # Import subcommand modules and register them
    from .report import register_subcommand as register_report
    from .history import register_subcommand as register_history
    from .benchmark import register_subcommand as register_benchmark
    from .splits import register_subcommand as register_splits
    from .dividends import register_subcommand as register_dividends
    from .version import register_subcommand as register_version

    register_report(subparsers)
    register_history(subparsers)
    register_benchmark(subparsers)
    register_splits(subparsers)
    register_dividends(subparsers)
    register_version(subparsers)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    if args.command != "version":
        print(INVESTING_WARNING)
        print()

    try:
        return args.func(args)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
