#!/usr/bin/env python3
"""CLI entry point for the prospect pipeline.

Runs one streaming discovery search, merges the results into the persisted
lead set and prints a summary.

Usage:
    prospect-pipeline --query plumber --location "Austin, TX"
    prospect-pipeline --query dentist --location 62701 --count 50 --filter has_phone
    prospect-pipeline --query hvac --location Denver --append --output leads.json

Example:
    # Continue a partial search, keeping the leads already found
    prospect-pipeline --query roofer --location Tampa --append --verbose
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import ConfigError, config
from .filters import available_filters
from .logging_utils import setup_logging
from .models import IngestionUpdate, OutcomeKind, SearchContext, SearchMode, SearchOutcome, SearchType
from .pipeline import LeadPipeline


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="prospect-pipeline",
        description="Streaming lead discovery with tiered persistence",
        epilog="""
Examples:
  %(prog)s --query plumber --location "Austin, TX"
  %(prog)s --query salon --location 90210 --count 20 --filter has_email
  %(prog)s --query dentist --location 10001 --append --verbose
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument(
        "--query",
        "-q",
        required=True,
        help="Service or business keyword (e.g., plumber)",
    )

    search = parser.add_argument_group("search options")
    search.add_argument(
        "--location",
        "-l",
        default="",
        help="Location text (e.g., 'Austin, TX' or a zip code)",
    )
    search.add_argument(
        "--count",
        "-n",
        type=int,
        default=config.DEFAULT_RESULT_COUNT,
        help=f"Number of leads to request (default: {config.DEFAULT_RESULT_COUNT})",
    )
    search.add_argument(
        "--type",
        choices=[t.value for t in SearchType],
        default=SearchType.GMB.value,
        help="Search type (default: gmb)",
    )
    search.add_argument(
        "--filter",
        "-f",
        action="append",
        default=[],
        choices=available_filters(),
        help="Client-side filter, may be repeated",
    )
    search.add_argument(
        "--append",
        action="store_true",
        help="Merge into the current lead set instead of replacing it",
    )
    search.add_argument(
        "--account",
        default="default",
        help="Account namespace for the durable store (default: default)",
    )

    output = parser.add_argument_group("output options")
    output.add_argument(
        "--output",
        "-o",
        help="Write the resulting leads to a JSON file",
    )
    output.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress progress output",
    )
    output.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output (INFO level)",
    )
    output.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output (DEBUG level)",
    )

    return parser


def print_progress(update: IngestionUpdate) -> None:
    """Print a one-line progress bar for a search update."""
    bar_length = 30
    filled = int(bar_length * min(update.progress, 100.0) / 100.0)
    bar = "█" * filled + "░" * (bar_length - filled)
    print(
        f"\r[{bar}] {update.progress:5.1f}% - {update.status.value} "
        f"({update.lead_count} leads)",
        end="",
        flush=True,
    )


def print_outcome(outcome: SearchOutcome) -> None:
    print("\n\nSearch Result:")
    print("-" * 40)
    print(f"  Outcome: {outcome.kind.value}")
    print(f"  Leads: {outcome.found_count}/{outcome.requested_count}")
    print(f"  Received from provider: {outcome.received_count}")
    if outcome.error:
        print(f"  Error: {outcome.error}")
    if outcome.can_continue:
        print("  Fewer leads than requested; re-run with --append to fetch more.")
    print("-" * 40)


async def run_search(
    args: argparse.Namespace, logger: logging.Logger
) -> Optional[SearchOutcome]:
    """Restore persisted state, run the search and save the result."""
    context = SearchContext(
        query=args.query,
        location=args.location,
        search_type=args.type,
        filters=set(args.filter),
        requested_count=args.count,
    )
    mode = SearchMode.APPEND if args.append else SearchMode.REPLACE

    pipeline = LeadPipeline.from_config(account_id=args.account)
    try:
        await pipeline.restore(config.AUTH_TOKEN or None)

        outcome: Optional[SearchOutcome] = None
        async for update in pipeline.start_search(context, mode):
            if not args.quiet:
                print_progress(update)
            if update.outcome is not None:
                outcome = update.outcome

        if outcome is not None and outcome.kind != OutcomeKind.FAILED:
            result = await pipeline.save()
            if result.remote_error:
                logger.warning(f"Leads saved locally only: {result.remote_error}")

        if args.output and outcome is not None:
            output_path = Path(args.output)
            with open(output_path, "w") as f:
                json.dump(
                    [lead.model_dump(mode="json") for lead in pipeline.leads],
                    f,
                    indent=2,
                )
            print(f"\nLeads saved to: {output_path}")

        return outcome
    finally:
        await pipeline.close()


def main() -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    parser = create_parser()
    args = parser.parse_args()

    level = "DEBUG" if args.debug else "INFO" if args.verbose else "WARNING"
    logger = setup_logging(level=level)

    if args.count < 1:
        print("Error: --count must be at least 1")
        return 1

    try:
        outcome = asyncio.run(run_search(args, logger))
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nSearch cancelled by user.")
        return 130

    if outcome is None:
        return 1

    print_outcome(outcome)
    return 1 if outcome.is_error else 0


if __name__ == "__main__":
    sys.exit(main())
