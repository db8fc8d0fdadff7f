"""Reclaim WAL storage directories that no running instance owns anymore."""

import asyncio
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import psutil

from . import __version__
from .errors import CleanerStoppedError, StorageCleanupError, WALError
from .logging import log_with_context, setup_logging
from .registry import InstanceRegistry, ManagedInstance
from .scanner import list_storage_directories
from .ticker import Ticker
from .wal import last_write_time

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_STOPPED = "stopped"


def get_memory_usage_mb() -> float:
    """Get current memory usage in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024


def get_disk_free_mb(path: Path) -> Optional[float]:
    """Free space on the filesystem holding ``path``, or None if it cannot be read."""
    try:
        return psutil.disk_usage(str(path)).free / 1024 / 1024
    except OSError:
        return None


def _format_time(timestamp: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))


def _normalize(path) -> Path:
    return Path(os.path.realpath(os.fspath(path)))


def _ignore_missing(func, path, exc) -> None:
    # onerror passes sys.exc_info(), onexc passes the exception itself
    if not isinstance(exc, BaseException):
        exc = exc[1]
    if isinstance(exc, FileNotFoundError):
        return
    raise exc


def remove_tree(path: Path) -> bool:
    """
    Recursively delete ``path``.

    Entries disappearing while we walk (another pass or the owning instance
    deleting the same tree) are not errors.

    Returns:
        False if ``path`` was already gone, True otherwise
    """
    if not os.path.lexists(path):
        return False
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_ignore_missing)
    else:
        shutil.rmtree(path, onerror=_ignore_missing)
    return True


@dataclass(frozen=True)
class AbandonedCandidate:
    """An unowned storage directory whose newest segment is older than the minimum age."""

    path: Path
    last_write_time: float
    age: float


class WALCleaner:
    """
    Periodically removes WAL storage directories abandoned by deleted instances.

    A storage directory is abandoned when it is not the storage directory of
    any instance in the registry *and* its newest WAL segment was last written
    more than ``min_age`` seconds ago. Being unowned is not enough on its own:
    an instance that is still starting up may already have written its WAL
    before it shows up in the registry.

    Lifecycle is idle -> running -> stopped. ``stop()`` is terminal and calling
    it again is a no-op. Any reconciliation requested after stop raises
    CleanerStoppedError.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        wal_directory: str | os.PathLike,
        min_age: float,
        period: float,
        *,
        dry_run: bool,
        logger: Optional[logging.Logger] = None,
        log_level: str = "INFO",
        max_concurrency: int = 10,
    ):
        """
        Initialize the cleaner. Nothing runs until ``start()``.

        Args:
            registry: Source of the currently running instances
            wal_directory: Root directory holding one storage directory per instance
            min_age: Seconds since the last segment write before an unowned WAL is abandoned
            period: Seconds between background cleanup passes
            dry_run: If True, only log what would be deleted
            logger: Logger to use (default: JSON logger named "walcleaner")
            log_level: Level for the default logger
            max_concurrency: Maximum concurrent WAL inspections and deletions

        Raises:
            ValueError: If invalid parameters are provided
        """
        if min_age <= 0:
            raise ValueError(f"min_age must be > 0, got {min_age}")
        if period <= 0:
            raise ValueError(f"period must be > 0, got {period}")
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        root = Path(wal_directory)
        if not root.is_absolute():
            root = root.resolve()

        self.registry = registry
        self.wal_directory = root
        self.min_age = min_age
        self.period = period
        self.dry_run = dry_run
        self.max_concurrency = max_concurrency
        self.logger = logger or setup_logging("walcleaner", log_level)

        self.io_semaphore = asyncio.Semaphore(max_concurrency)

        self.state = STATE_IDLE
        self.ticker: Optional[Ticker] = None
        self._task: Optional[asyncio.Task] = None
        self.passes = 0

    @property
    def is_running(self) -> bool:
        return self.state == STATE_RUNNING

    def _ensure_not_stopped(self) -> None:
        if self.state == STATE_STOPPED:
            raise CleanerStoppedError(f"WAL cleaner for {self.wal_directory} has been stopped")

    def _managed_storage(self, instances: Mapping[str, ManagedInstance]) -> Set[Path]:
        return {_normalize(inst.storage_directory()) for inst in instances.values()}

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            "dirs_scanned": 0,
            "dirs_managed": 0,
            "dirs_unmanaged": 0,
            "dirs_skipped": 0,
            "abandoned": 0,
            "readopted": 0,
            "deleted": 0,
            "already_deleted": 0,
            "delete_failures": 0,
        }

    async def _inspect(self, directory: Path, now: float, stats: Dict[str, Any]) -> Optional[AbandonedCandidate]:
        async with self.io_semaphore:
            try:
                mtime = await last_write_time(directory)
            except (WALError, OSError) as e:
                # Not enough information to call it abandoned, leave it alone
                log_with_context(
                    self.logger,
                    "warning",
                    "Unable to find segment mtime of WAL",
                    {"directory": str(directory), "error": str(e), "error_type": type(e).__name__},
                )
                stats["dirs_skipped"] += 1
                return None

        age = now - mtime
        log_with_context(
            self.logger,
            "debug",
            "Unowned WAL",
            {"directory": str(directory), "last_write_time": _format_time(mtime), "age_seconds": round(age, 1)},
        )
        if age > self.min_age:
            return AbandonedCandidate(directory, mtime, age)
        return None

    async def _abandoned_storage(self, now: float, stats: Dict[str, Any]) -> List[AbandonedCandidate]:
        # Registry first: a directory created after this snapshot is unowned
        # here but its fresh segment keeps it below min_age
        managed = self._managed_storage(self.registry.list_instances())
        all_storage = await list_storage_directories(self.wal_directory, self.logger)
        stats["dirs_scanned"] = len(all_storage)

        unmanaged = []
        for directory in sorted(all_storage):
            if _normalize(directory) in managed:
                stats["dirs_managed"] += 1
                self.logger.debug(f"Active WAL: {directory}")
            else:
                unmanaged.append(directory)
        stats["dirs_unmanaged"] = len(unmanaged)

        results = await asyncio.gather(*(self._inspect(d, now, stats) for d in unmanaged))
        return [candidate for candidate in results if candidate is not None]

    async def compute_abandoned(self, now: Optional[float] = None) -> List[AbandonedCandidate]:
        """
        Classify storage directories without touching them.

        Args:
            now: Reference time in epoch seconds (default: current time)

        Returns:
            Abandoned storage directories, in path order

        Raises:
            CleanerStoppedError: If the cleaner has been stopped
            OSError: If the WAL root itself cannot be listed
        """
        self._ensure_not_stopped()
        return await self._abandoned_storage(time.time() if now is None else now, self._new_stats())

    async def _delete(self, candidate: AbandonedCandidate) -> bool:
        async with self.io_semaphore:
            loop = asyncio.get_running_loop()
            existed = await loop.run_in_executor(None, remove_tree, candidate.path)

        if existed:
            log_with_context(
                self.logger,
                "info",
                "Deleted abandoned WAL",
                {
                    "directory": str(candidate.path),
                    "last_write_time": _format_time(candidate.last_write_time),
                    "age_hours": round(candidate.age / 3600, 2),
                },
            )
        else:
            self.logger.debug(f"Abandoned WAL already deleted: {candidate.path}")
        return existed

    async def cleanup_storage(self) -> Dict[str, Any]:
        """
        Run one reconciliation pass and delete (or report) abandoned WALs.

        Every abandoned directory is attempted even if an earlier one fails.
        Safe to call while the background loop is running; passes share no state.

        Returns:
            Dictionary with pass statistics

        Raises:
            StorageCleanupError: If any deletion failed, chained to the first failure
            CleanerStoppedError: If the cleaner has been stopped
            OSError: If the WAL root itself cannot be listed
        """
        self._ensure_not_stopped()
        start_time = time.time()
        stats = self._new_stats()

        log_with_context(
            self.logger,
            "debug",
            "Starting WAL cleanup pass",
            {
                "version": __version__,
                "wal_directory": str(self.wal_directory),
                "min_age_seconds": self.min_age,
                "dry_run": self.dry_run,
            },
        )

        abandoned = await self._abandoned_storage(start_time, stats)
        stats["abandoned"] = len(abandoned)

        first_error: Optional[BaseException] = None
        if abandoned:
            # An instance may have adopted a directory while we were inspecting
            still_managed = self._managed_storage(self.registry.list_instances())
            to_delete = []
            for candidate in abandoned:
                if _normalize(candidate.path) in still_managed:
                    stats["readopted"] += 1
                    self.logger.info(f"Skipping WAL adopted during cleanup pass: {candidate.path}")
                else:
                    to_delete.append(candidate)

            if self.dry_run:
                for candidate in to_delete:
                    log_with_context(
                        self.logger,
                        "info",
                        "Would delete abandoned WAL",
                        {
                            "directory": str(candidate.path),
                            "last_write_time": _format_time(candidate.last_write_time),
                            "age_hours": round(candidate.age / 3600, 2),
                        },
                    )
            else:
                # return_exceptions=True so one failure does not cancel the other deletions
                results = await asyncio.gather(*(self._delete(c) for c in to_delete), return_exceptions=True)
                for candidate, result in zip(to_delete, results):
                    if isinstance(result, Exception):
                        stats["delete_failures"] += 1
                        if first_error is None:
                            first_error = result
                        log_with_context(
                            self.logger,
                            "error",
                            "Failed to delete abandoned WAL",
                            {"directory": str(candidate.path), "error": str(result), "error_type": type(result).__name__},
                        )
                    elif result:
                        stats["deleted"] += 1
                    else:
                        stats["already_deleted"] += 1

        stats["duration_seconds"] = round(time.time() - start_time, 3)
        stats["dry_run"] = self.dry_run
        stats["memory_mb"] = round(get_memory_usage_mb(), 1)
        disk_free_mb = get_disk_free_mb(self.wal_directory)
        if disk_free_mb is not None:
            stats["disk_free_mb"] = round(disk_free_mb, 1)

        log_with_context(self.logger, "info", "WAL cleanup pass completed", stats)

        if first_error is not None:
            failures = stats["delete_failures"]
            raise StorageCleanupError(
                f"failed to delete {failures} abandoned WAL director{'y' if failures == 1 else 'ies'}",
                failures,
                stats,
            ) from first_error

        return stats

    async def _run(self) -> None:
        while True:
            missed_before = self.ticker.missed
            await self.ticker.tick()
            if self.ticker.missed > missed_before:
                self.logger.debug(
                    f"Coalesced {self.ticker.missed - missed_before} cleanup ticks after a slow pass"
                )
            try:
                await self.cleanup_storage()
            except StorageCleanupError as e:
                log_with_context(
                    self.logger,
                    "error",
                    "WAL cleanup failed",
                    {"error": str(e.__cause__ or e), "failures": e.failures},
                )
            except Exception as e:
                log_with_context(
                    self.logger,
                    "error",
                    "WAL cleanup failed",
                    {"error": str(e), "error_type": type(e).__name__},
                )
            self.passes += 1

    def start(self) -> None:
        """
        Start the background cleanup loop. Must be called from a running event loop.

        Raises:
            RuntimeError: If already started, or no event loop is running
            CleanerStoppedError: If the cleaner has been stopped
        """
        self._ensure_not_stopped()
        if self.state == STATE_RUNNING:
            raise RuntimeError("WAL cleaner already started")

        self.ticker = Ticker(self.period)
        self._task = asyncio.create_task(self._run(), name=f"walcleaner:{self.wal_directory}")
        self.state = STATE_RUNNING

        log_with_context(
            self.logger,
            "info",
            f"Started WAL cleaner - {'DRY RUN' if self.dry_run else 'DELETE'} MODE",
            {
                "version": __version__,
                "wal_directory": str(self.wal_directory),
                "min_age_seconds": self.min_age,
                "period_seconds": self.period,
                "dry_run": self.dry_run,
                "max_concurrency": self.max_concurrency,
            },
        )

    async def stop(self) -> None:
        """
        Stop the background loop and wait for its task to finish.

        No pass begins after this returns. Stopping an already stopped cleaner
        does nothing beyond waiting for a teardown still in progress, so every
        caller returns only once the task has terminated.
        """
        if self.state == STATE_STOPPED:
            self.logger.debug("WAL cleaner already stopped")
        else:
            self.logger.debug("Stopping WAL cleaner...")
            self.state = STATE_STOPPED
            if self._task is not None:
                self._task.cancel()

        task = self._task
        if task is not None:
            # asyncio.wait does not raise the task's CancelledError into us
            await asyncio.wait([task])
            self._task = None

    async def __aenter__(self) -> "WALCleaner":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def new_cleaner(
    registry: InstanceRegistry,
    wal_directory: str | os.PathLike,
    min_age: float,
    period: float,
    *,
    dry_run: bool,
    logger: Optional[logging.Logger] = None,
    **kwargs,
) -> WALCleaner:
    """
    Create a WALCleaner and start its background loop.

    Must be called from a running event loop. Pass ``dry_run`` explicitly:
    True only logs abandoned WALs, False deletes them.
    """
    cleaner = WALCleaner(registry, wal_directory, min_age, period, dry_run=dry_run, logger=logger, **kwargs)
    cleaner.start()
    return cleaner
