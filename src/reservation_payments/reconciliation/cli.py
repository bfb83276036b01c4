#!/usr/bin/env python3
"""Command-line interface for hotel reconciliation.

Usage:
    reservation-reconcile reconcile --hotel H123
    reservation-reconcile reconcile --hotel H123 --tolerance 50 --dry-run --format text
    reservation-reconcile overview --hotel H123
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from ..config import get_settings
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..payouts import PayoutService
from .models import ReconciliationStatus
from .service import ReconciliationService

logger = logging.getLogger(__name__)


def _write_output(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def run_reconciliation_async(
    hotel_id: str,
    tolerance: Optional[int] = None,
    dry_run: bool = False,
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
    actor: str = "cli",
    database_url: Optional[str] = None,
) -> int:
    """Run reconciliation for one hotel.

    Args:
        hotel_id: Hotel to reconcile.
        tolerance: Tolerance override in minor units.
        dry_run: Only compute and print the plan.
        output_file: Optional output file path.
        output_format: Output format ('json', 'csv', 'text', 'detailed_text').
        include_details: Include chosen items in JSON output.
        actor: Recorded as the actor of every audit entry.
        database_url: Database URL; DATABASE_URL when None.

    Returns:
        Exit code (0 for success, 1 when items were skipped, 2 on failure).
    """
    engine = create_async_engine(database_url=database_url or get_database_url())

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)

    try:
        async with session_factory() as session:
            service = ReconciliationService(session, settings=get_settings())
            logger.info(f"Starting reconciliation for hotel {hotel_id}")
            result = await service.reconcile_hotel(
                hotel_id,
                tolerance=tolerance,
                actor=actor,
                dry_run=dry_run,
            )

            output = service.generate_report(
                result,
                format=output_format,
                include_details=include_details,
            )
            _write_output(output, output_file)

            if result.status == ReconciliationStatus.FAILED:
                logger.error(f"Reconciliation failed: {result.error_message}")
                return 2
            if result.skipped:
                logger.warning(
                    f"Reconciliation completed with {len(result.skipped)} skipped reservations"
                )
                return 1
            return 0
    finally:
        await engine.dispose()


async def run_overview_async(
    hotel_id: Optional[str] = None,
    output_file: Optional[str] = None,
    database_url: Optional[str] = None,
) -> int:
    engine = create_async_engine(database_url=database_url or get_database_url())

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)

    try:
        async with session_factory() as session:
            overview = await PayoutService(session).payout_overview(hotel_id)
            _write_output(json.dumps(overview, indent=2), output_file)
            return 0
    finally:
        await engine.dispose()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="reservation-reconcile",
        description="Net hotel commission debts against hotel transfer credits.",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL or local SQLite)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Reconcile one hotel",
    )
    reconcile_parser.add_argument(
        "--hotel",
        required=True,
        help="Hotel ID to reconcile",
    )
    reconcile_parser.add_argument(
        "--tolerance", "-t",
        type=int,
        default=None,
        help="Allowed difference between the two sums in minor units (default: RECONCILE_TOLERANCE)",
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the plan without writing anything",
    )
    reconcile_parser.add_argument(
        "--actor",
        default="cli",
        help="Actor recorded in the audit log (default: cli)",
    )
    reconcile_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    reconcile_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Output format (default: json)",
    )
    reconcile_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include totals, not the chosen reservations",
    )

    overview_parser = subparsers.add_parser(
        "overview",
        help="Show pending and settled payout amounts",
    )
    overview_parser.add_argument("--hotel", default=None, help="Hotel ID (default: all hotels)")
    overview_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "reconcile":
        if parsed_args.tolerance is not None and parsed_args.tolerance < 0:
            logger.error("--tolerance must not be negative")
            return 1
        return asyncio.run(run_reconciliation_async(
            hotel_id=parsed_args.hotel,
            tolerance=parsed_args.tolerance,
            dry_run=parsed_args.dry_run,
            output_file=parsed_args.output,
            output_format=parsed_args.format,
            include_details=not parsed_args.summary_only,
            actor=parsed_args.actor,
            database_url=parsed_args.database_url,
        ))

    if parsed_args.command == "overview":
        return asyncio.run(run_overview_async(
            hotel_id=parsed_args.hotel,
            output_file=parsed_args.output,
            database_url=parsed_args.database_url,
        ))

    return 0


if __name__ == "__main__":
    sys.exit(main())
