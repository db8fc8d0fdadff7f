"""Command-line interface for the WAL cleaner."""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from . import __version__
from .cleaner import WALCleaner
from .errors import StorageCleanupError
from .logging import log_with_context, setup_logging
from .registry import StaticInstanceRegistry


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def _env_paths(name: str) -> List[str]:
    return [p for p in os.getenv(name, "").split(os.pathsep) if p]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="walcleaner - Reclaim abandoned write-ahead-log directories",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "path",
        help="WAL root directory holding one storage directory per instance",
    )

    parser.add_argument(
        "--managed",
        action="append",
        default=None,
        metavar="DIR",
        help="Storage directory owned by a running instance (repeatable, "
        "or WALCLEANER_MANAGED separated by os.pathsep)",
    )

    parser.add_argument(
        "--min-age-hours",
        type=float,
        default=float(os.getenv("WALCLEANER_MIN_AGE_HOURS", "12")),
        help="Unowned WALs not written for this many hours are deleted",
    )

    parser.add_argument(
        "--period-minutes",
        type=float,
        default=float(os.getenv("WALCLEANER_PERIOD_MINUTES", "30")),
        help="Minutes between cleanup passes",
    )

    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=int(os.getenv("WALCLEANER_MAX_CONCURRENCY", "10")),
        help="Maximum concurrent WAL inspections and deletions",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=_env_flag("WALCLEANER_DRY_RUN"),
        help="Don't delete anything, just report abandoned WALs",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cleanup pass and exit",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("WALCLEANER_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"walcleaner {__version__}",
    )

    args = parser.parse_args(argv)
    if args.managed is None:
        args.managed = _env_paths("WALCLEANER_MANAGED")
    return args


async def async_main(
    path: str,
    managed: List[str],
    min_age_hours: float,
    period_minutes: float,
    dry_run: bool = False,
    once: bool = False,
    log_level: str = "INFO",
    max_concurrency: int = 10,
    stop_event: Optional[asyncio.Event] = None,
) -> dict:
    """
    Async entry point.

    With ``once`` a single pass runs and its statistics are returned. Otherwise
    the background loop runs until SIGINT/SIGTERM (or ``stop_event`` is set).

    Returns:
        Statistics of the single pass, or a summary of the daemon run
    """
    logger = setup_logging("walcleaner", log_level)
    cleaner = WALCleaner(
        StaticInstanceRegistry.from_paths(managed),
        path,
        min_age=min_age_hours * 3600,
        period=period_minutes * 60,
        dry_run=dry_run,
        logger=logger,
        max_concurrency=max_concurrency,
    )

    if once:
        try:
            return await cleaner.cleanup_storage()
        finally:
            await cleaner.stop()

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # Windows event loops, or not running in the main thread
            pass

    try:
        async with cleaner:
            await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    log_with_context(logger, "info", "WAL cleaner stopped", {"passes": cleaner.passes})
    return {"passes": cleaner.passes}


def main() -> None:
    """Main entry point for the CLI."""
    args = parse_args()

    try:
        asyncio.run(
            async_main(
                path=args.path,
                managed=args.managed,
                min_age_hours=args.min_age_hours,
                period_minutes=args.period_minutes,
                dry_run=args.dry_run,
                once=args.once,
                log_level=args.log_level,
                max_concurrency=args.max_concurrency,
            )
        )
        sys.exit(0)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(130)
    except StorageCleanupError as e:
        print(f"Cleanup incomplete: {e}: {e.__cause__}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
