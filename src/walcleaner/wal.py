"""
Read-only inspection of a Prometheus-style WAL directory.

Layout consumed::

    <storage>/wal/00000000
    <storage>/wal/00000001
    <storage>/wal/checkpoint.000001/...

Segment files are named by their index, zero padded to eight digits. Anything
that is not a plain number (checkpoints, temp files) is ignored.
"""

import asyncio
import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

import aiofiles.os

from .errors import NoSegmentsError, WALCorruptionError

WAL_SUBDIRECTORY = "wal"

_OPEN_FLAGS = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)

PathLike = Union[str, os.PathLike]


def wal_subdirectory(storage: PathLike) -> Path:
    """Return the WAL directory inside an instance storage directory."""
    return Path(storage) / WAL_SUBDIRECTORY


def segment_name(wal_dir: PathLike, index: int) -> Path:
    """Return the path of segment ``index`` inside ``wal_dir``."""
    return Path(wal_dir) / f"{index:08d}"


def parse_segment_indices(names) -> List[int]:
    """
    Extract sorted segment indices from directory entry names.

    Raises:
        WALCorruptionError: If the indices have gaps
    """
    indices = sorted(int(name) for name in names if name.isascii() and name.isdigit())
    for prev, cur in zip(indices, indices[1:]):
        if cur != prev + 1:
            raise WALCorruptionError(f"segments are not sequential: {prev} followed by {cur}")
    return indices


def _close_opened(future: asyncio.Future) -> None:
    """Close a descriptor whose opener was cancelled before receiving it."""
    if not future.cancelled() and future.exception() is None:
        os.close(future.result())


class WALReader:
    """
    Read-only handle on a WAL directory.

    Holds a directory file descriptor for its lifetime so listings and stats
    refer to the same directory even if it is renamed underneath us. Nothing is
    ever created or written. Use as an async context manager so the descriptor
    is released on every exit path.
    """

    def __init__(self, wal_dir: PathLike):
        self.wal_dir = Path(wal_dir)
        self._fd: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self._fd is None

    async def open(self) -> "WALReader":
        """
        Open the WAL directory for reading.

        Raises:
            FileNotFoundError: If the WAL directory does not exist
            OSError: For any other failure opening it
        """
        if self._fd is None:
            loop = asyncio.get_running_loop()
            opening = loop.run_in_executor(None, os.open, self.wal_dir, _OPEN_FLAGS)
            try:
                # shield so a cancelled caller still sees the thread's result
                self._fd = await asyncio.shield(opening)
            except asyncio.CancelledError:
                opening.add_done_callback(_close_opened)
                raise
        return self

    def close(self) -> None:
        """Release the directory descriptor. Safe to call repeatedly."""
        fd, self._fd = self._fd, None
        if fd is not None:
            os.close(fd)

    async def __aenter__(self) -> "WALReader":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> int:
        if self._fd is None:
            raise ValueError(f"WAL reader for {self.wal_dir} is not open")
        return self._fd

    async def _list_names(self) -> List[str]:
        fd = self._require_open()
        target = fd if os.scandir in os.supports_fd else self.wal_dir
        loop = asyncio.get_running_loop()

        def _scandir():
            with os.scandir(target) as entries:
                return [entry.name for entry in entries]

        return await loop.run_in_executor(None, _scandir)

    async def segments(self) -> Tuple[int, int]:
        """
        Return the first and last segment index, or ``(-1, -1)`` if there are none.

        Raises:
            WALCorruptionError: If segment indices are not sequential
        """
        indices = parse_segment_indices(await self._list_names())
        if not indices:
            return -1, -1
        return indices[0], indices[-1]

    async def segment_stat(self, index: int) -> os.stat_result:
        """Stat segment ``index`` without following symlinks out of the WAL."""
        fd = self._require_open()
        if os.stat in os.supports_dir_fd:
            return await aiofiles.os.stat(f"{index:08d}", dir_fd=fd, follow_symlinks=False)
        return await aiofiles.os.stat(segment_name(self.wal_dir, index), follow_symlinks=False)


async def last_write_time(storage: PathLike) -> float:
    """
    Return the mtime of the most recent WAL segment in a storage directory.

    Args:
        storage: Instance storage directory (the parent of ``wal/``)

    Returns:
        Modification time of the highest-numbered segment, in epoch seconds

    Raises:
        NoSegmentsError: If the WAL holds no segments
        WALCorruptionError: If segment indices are not sequential
        OSError: If the WAL cannot be opened or the segment cannot be stat'ed
    """
    wal_dir = wal_subdirectory(storage)
    async with WALReader(wal_dir) as reader:
        _, last = await reader.segments()
        if last == -1:
            raise NoSegmentsError(wal_dir)
        stat = await reader.segment_stat(last)
        return stat.st_mtime
