"""Version subcommand for the folio CLI."""

from importlib.metadata import PackageNotFoundError, version


def register_subcommand(subparsers):
    """Register the version subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers object to register with.
    """
    parser = subparsers.add_parser(
        "version",
        help="Display folio version information",
        description="Display the installed folio version.",
    )
    parser.set_defaults(func=run)


def run(args):
    """Display version information.

    Args:
        args: Parsed CLI arguments.

    Returns:
        int: Exit code (0 for success).
    """
    try:
        ver = version("folio-ledger")
    except PackageNotFoundError:
        ver = "unknown"

    print(f" folio version: {ver}")
    return 0
