"""CLI entry point for running reconciliations against the configured database.

Usage:
    python -m src.cli.reconcile --site 1 --from 2024-01-01 --to 2024-02-01 --save
    python -m src.cli.reconcile --site 1 --period Jan:2024-01-01:2024-02-01 \\
        --period Feb:2024-02-01:2024-03-01

Exit Codes:
    0 - Success (possibly with warnings)
    1 - Failure: run aborted, or every bulk period failed
    2 - Cancelled (Ctrl+C)

Logging:
    Level from LOG_LEVEL; output to both stdout and the configured log file
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from src.config.settings import settings
from src.services.bulk_service import BulkOrchestrator, BulkStatus, ReconciliationPeriod
from src.services.errors import CancellationError, ReconciliationError
from src.services.logging import setup_server_logging
from src.services.options import ReconciliationOptions
from src.services.run_context import CancellationToken, ProgressEvent

logger = logging.getLogger(__name__)


def parse_period(value: str) -> ReconciliationPeriod:
    """Parse ``NAME:YYYY-MM-DD:YYYY-MM-DD`` into a period."""
    try:
        name, start, end = value.rsplit(":", 2)
        return ReconciliationPeriod(name, datetime.fromisoformat(start), datetime.fromisoformat(end))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid period '{value}': {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile a site's meters")
    parser.add_argument("--site", type=int, required=True, help="Site id")
    parser.add_argument("--from", dest="date_from", type=datetime.fromisoformat, help="Range start")
    parser.add_argument("--to", dest="date_to", type=datetime.fromisoformat, help="Range end (exclusive)")
    parser.add_argument(
        "--period",
        action="append",
        type=parse_period,
        default=[],
        help="Bulk period NAME:FROM:TO (repeatable)",
    )
    parser.add_argument("--options", type=Path, help="JSON file with reconciliation options")
    parser.add_argument("--save", action="store_true", help="Persist the run snapshot")
    parser.add_argument("--name", help="Run name when saving")
    return parser


def install_interrupt_handler(token: CancellationToken) -> Callable[[], None]:
    """Cancel ``token`` on Ctrl+C so the current job stops at its next checkpoint.

    Returns a callable that restores the default SIGINT behaviour.
    """
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows); KeyboardInterrupt still applies
        return lambda: None
    return lambda: loop.remove_signal_handler(signal.SIGINT)


def _print_progress(event: ProgressEvent) -> None:
    logger.debug("%s %d/%d %s", event.stage, event.current, event.total, event.detail or "")


async def main(argv: list[str] | None = None) -> int:
    """Run a single reconciliation or a bulk job and print its JSON summary.

    Returns:
        Exit code
    """
    args = build_parser().parse_args(argv)
    if not args.period and (args.date_from is None or args.date_to is None):
        logger.error("Either --from/--to or at least one --period is required")
        return 1

    options = ReconciliationOptions()
    if args.options:
        options = ReconciliationOptions.model_validate_json(args.options.read_text(encoding="utf-8"))

    from src.services import AsyncSessionLocal, init_db
    from src.services.run_repository import RunRepository
    from src.services.run_service import ReconciliationRunService

    await init_db()
    service = ReconciliationRunService.from_session_factory(AsyncSessionLocal, settings)
    repository = RunRepository(AsyncSessionLocal)
    token = CancellationToken()
    remove_handler = install_interrupt_handler(token)

    try:
        if args.period:
            summary = await BulkOrchestrator(service, repository).run_bulk(
                args.site, args.period, options, token, _print_progress
            )
            print(json.dumps(summary.to_dict(), indent=2))
            if summary.status == BulkStatus.CANCELLED:
                return 2
            return 1 if summary.status == BulkStatus.FAILED else 0

        outcome = await service.run_reconciliation(
            args.site, args.date_from, args.date_to, options, token, _print_progress
        )
        body = outcome.to_dict()
        if args.save:
            name = args.name or f"{args.date_from:%Y-%m-%d} - {args.date_to:%Y-%m-%d}"
            run = await repository.save(outcome, name)
            body["run_id"] = run.id
        print(json.dumps(body, indent=2, default=str))
        return 0
    except CancellationError:
        logger.warning("Reconciliation cancelled")
        return 2
    except ReconciliationError as e:
        logger.error("Reconciliation failed: %s (%s)", e.message, e.code)
        return 1
    finally:
        remove_handler()


if __name__ == "__main__":
    setup_server_logging(log_file=settings.log_file, level=settings.log_level)
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.warning("Reconciliation interrupted by user")
        exit_code = 2
    sys.exit(exit_code)
