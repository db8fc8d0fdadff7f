"""One-level scan of the WAL root for instance storage directories."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Set

from .logging import log_with_context

SKIP_NOT_A_DIRECTORY = "not_a_directory"
SKIP_SYMLINK = "symlink"
SKIP_UNREADABLE = "unreadable"


async def async_scandir(path: Path):
    """Async wrapper for os.scandir."""
    loop = asyncio.get_running_loop()

    def _scandir():
        with os.scandir(path) as entries:
            return list(entries)

    return await loop.run_in_executor(None, _scandir)


@dataclass(frozen=True)
class ScanEntry:
    """Outcome for a single child of the WAL root."""

    path: Path
    skip_reason: Optional[str] = None
    error: Optional[OSError] = None

    @property
    def is_storage(self) -> bool:
        return self.skip_reason is None


def _classify(entry) -> ScanEntry:
    path = Path(entry.path)
    try:
        if entry.is_symlink():
            return ScanEntry(path, SKIP_SYMLINK)
        if entry.is_dir(follow_symlinks=False):
            return ScanEntry(path)
        return ScanEntry(path, SKIP_NOT_A_DIRECTORY)
    except OSError as e:
        return ScanEntry(path, SKIP_UNREADABLE, e)


async def iter_storage_directories(root: Path) -> AsyncIterator[ScanEntry]:
    """
    Yield one ScanEntry per immediate child of ``root``.

    Does not descend into the children. Only a failure to list ``root`` itself
    is raised; per-entry failures are reported as ``unreadable`` entries.

    Raises:
        OSError: If ``root`` cannot be listed
    """
    entries = await async_scandir(root)
    for entry in entries:
        yield _classify(entry)


async def list_storage_directories(root: Path, logger: Optional[logging.Logger] = None) -> Set[Path]:
    """
    Return every storage directory directly below ``root``.

    An unreadable entry is logged and left out rather than failing the scan, so
    one bad directory cannot block reclaiming all the others.
    """
    logger = logger or logging.getLogger("walcleaner")
    found: Set[Path] = set()

    async for result in iter_storage_directories(root):
        if result.is_storage:
            found.add(result.path)
        elif result.skip_reason == SKIP_UNREADABLE:
            log_with_context(
                logger,
                "warning",
                "Unable to traverse WAL storage path",
                {"path": str(result.path), "error": str(result.error)},
            )
        else:
            logger.debug(f"Ignoring {result.skip_reason} entry in WAL root: {result.path}")

    return found
