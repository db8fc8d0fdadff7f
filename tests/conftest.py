"""Pytest configuration and shared WAL fixtures."""

import os
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

# Add src directory to Python path to ensure tests use local source code
# instead of installed package
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


@pytest.fixture
def wal_root():
    """Create a temporary WAL root directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_wal(wal_root):
    """
    Factory creating ``<wal_root>/<name>/wal/<segments>``.

    ``age`` backdates every segment's mtime by that many seconds. With
    ``segments=0`` the wal directory exists but is empty.
    """

    def _make(name: str, segments: int = 3, age: float = 0.0, first: int = 0) -> Path:
        storage = wal_root / name
        wal_dir = storage / "wal"
        wal_dir.mkdir(parents=True)
        mtime = time.time() - age
        for index in range(first, first + segments):
            segment = wal_dir / f"{index:08d}"
            segment.write_bytes(b"\x00" * 32)
            os.utime(segment, (mtime, mtime))
        return storage

    return _make


class FakeEntry:
    """Minimal os.DirEntry stand-in whose type checks can fail."""

    def __init__(self, path: Path, error: OSError | None = None):
        self.path = str(path)
        self.name = path.name
        self._error = error

    def is_symlink(self):
        if self._error:
            raise self._error
        return False

    def is_dir(self, follow_symlinks=True):
        if self._error:
            raise self._error
        return True


@pytest.fixture
def fake_entry():
    """The FakeEntry class, for injecting unreadable root entries."""
    return FakeEntry


class OpenGate:
    """Holds os.open calls on selected paths inside their worker thread."""

    def __init__(self):
        self.paths = set()
        self.entered = threading.Event()
        self.release = threading.Event()


@pytest.fixture
def gated_open(monkeypatch):
    """Block os.open on ``gate.paths`` until ``gate.release`` is set."""
    gate = OpenGate()
    real_open = os.open

    def _open(path, flags, *args, **kwargs):
        if isinstance(path, (str, os.PathLike)) and os.fspath(path) in gate.paths:
            gate.entered.set()
            gate.release.wait(5)
        return real_open(path, flags, *args, **kwargs)

    monkeypatch.setattr(os, "open", _open)
    yield gate
    gate.release.set()
