# main.py

"""Entry point for the poolfeed operator CLI."""

import argparse
import asyncio
import logging
import sys

from poolfeed.config.logging_config import setup_logging
from poolfeed.config.settings import Settings

logger = logging.getLogger("poolfeed.main")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    valid_ids = ", ".join(s["id"] for s in Settings.AVAILABLE_SOURCES)

    parser = argparse.ArgumentParser(
        prog="poolfeed",
        description="Marketplace listing ingestion and media cache.",
        epilog=f"Available marketplaces: {valid_ids}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Echo INFO-level log lines to stderr.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest listings for a query.")
    ingest.add_argument("marketplace", help="Marketplace id.")
    ingest.add_argument("query", help="Search query.")
    ingest.add_argument(
        "-n",
        "--limit",
        type=int,
        default=Settings.DEFAULT_INGEST_LIMIT,
        help=f"Max listings (default: {Settings.DEFAULT_INGEST_LIMIT}).",
    )
    ingest.add_argument(
        "--details",
        action="store_true",
        default=False,
        help="Fetch each listing's detail page.",
    )
    ingest.add_argument(
        "--prefetch-images",
        action="store_true",
        default=False,
        dest="prefetch_images",
        help="Cache listing images during the run.",
    )
    ingest.add_argument(
        "-e",
        "--exclude",
        default=None,
        help="Comma-separated extra keywords to exclude.",
    )
    ingest.add_argument(
        "--every",
        type=float,
        default=None,
        help="Repeat the run every N seconds until interrupted.",
    )
    ingest.add_argument(
        "-f",
        "--format",
        choices=["json", "table"],
        default="table",
        dest="output_format",
        help="Report format (default: table).",
    )

    serve = sub.add_parser("serve", help="Serve the HTTP endpoints.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    mark_bad = sub.add_parser(
        "mark-bad", help="Add image keys or URLs to the known-bad set.",
    )
    mark_bad.add_argument("refs", nargs="+", help="Content keys or URLs.")

    sub.add_parser(
        "renormalize", help="Rebuild stored listings from raw records.",
    )
    return parser


def _run_ingest(args: argparse.Namespace) -> int:
    from poolfeed.cli.runner import cli_ingest

    try:
        return asyncio.run(
            cli_ingest(
                marketplace=args.marketplace,
                query=args.query,
                limit=args.limit,
                with_details=args.details,
                prefetch_images=args.prefetch_images,
                exclude_csv=args.exclude,
                every=args.every,
                output_format=args.output_format,
            )
        )
    except KeyboardInterrupt:
        logger.info("Scheduled ingestion interrupted")
        return 0


def main() -> None:
    """Route to the requested subcommand."""
    args = _build_parser().parse_args()

    log_file = setup_logging(
        args.command, console_level="INFO" if args.verbose else None,
    )
    logger.info("poolfeed %s starting, log file: %s", args.command, log_file)

    if args.command == "ingest":
        exit_code = _run_ingest(args)
    elif args.command == "serve":
        from poolfeed.cli.runner import run_serve

        exit_code = run_serve(args.host, args.port)
    elif args.command == "mark-bad":
        from poolfeed.cli.runner import run_mark_bad

        exit_code = run_mark_bad(args.refs)
    else:
        from poolfeed.cli.runner import run_renormalize

        exit_code = asyncio.run(run_renormalize())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
