"""Tests for the one-level WAL root scan."""

from unittest.mock import Mock

import pytest

from walcleaner import scanner
from walcleaner.scanner import (
    SKIP_NOT_A_DIRECTORY,
    SKIP_SYMLINK,
    SKIP_UNREADABLE,
    iter_storage_directories,
    list_storage_directories,
)


@pytest.mark.asyncio
async def test_lists_only_immediate_directories(wal_root, make_wal):
    """Test that only first-level directories are returned."""
    make_wal("inst-1")
    make_wal("inst-2")
    (wal_root / "stray.txt").write_text("not a wal")

    found = await list_storage_directories(wal_root)

    # wal/ subdirectories and segment files are never reported
    assert found == {wal_root / "inst-1", wal_root / "inst-2"}


@pytest.mark.asyncio
async def test_skip_reasons(wal_root, make_wal):
    """Test that every root entry yields exactly one result with a skip reason."""
    real = make_wal("inst-1")
    (wal_root / "stray.txt").write_text("x")
    (wal_root / "link").symlink_to(real, target_is_directory=True)

    results = {entry.path.name: entry async for entry in iter_storage_directories(wal_root)}

    assert set(results) == {"inst-1", "stray.txt", "link"}
    assert results["inst-1"].is_storage
    assert results["stray.txt"].skip_reason == SKIP_NOT_A_DIRECTORY
    assert results["link"].skip_reason == SKIP_SYMLINK
    assert results["link"].error is None


@pytest.mark.asyncio
async def test_empty_root(wal_root):
    """Test scanning an empty WAL root."""
    assert await list_storage_directories(wal_root) == set()


@pytest.mark.asyncio
async def test_missing_root_raises(wal_root):
    """Test that an unlistable root fails the whole scan."""
    with pytest.raises(FileNotFoundError):
        await list_storage_directories(wal_root / "does-not-exist")


@pytest.mark.asyncio
async def test_unreadable_entry_is_skipped(wal_root, make_wal, monkeypatch, fake_entry):
    """Test that one unreadable entry does not hide the others."""
    make_wal("inst-1")
    make_wal("inst-2")
    make_wal("inst-3")
    real_scandir = scanner.async_scandir
    broken = fake_entry(wal_root / "broken", PermissionError(13, "Permission denied"))

    async def scandir_with_broken(path):
        return [broken] + await real_scandir(path)

    monkeypatch.setattr(scanner, "async_scandir", scandir_with_broken)

    results = [entry async for entry in iter_storage_directories(wal_root)]
    unreadable = [entry for entry in results if entry.skip_reason == SKIP_UNREADABLE]
    assert len(unreadable) == 1
    assert unreadable[0].path == wal_root / "broken"
    assert isinstance(unreadable[0].error, PermissionError)

    logger = Mock()
    found = await list_storage_directories(wal_root, logger)

    assert found == {wal_root / "inst-1", wal_root / "inst-2", wal_root / "inst-3"}
    logger.warning.assert_called_once()
    message = logger.warning.call_args[0][0]
    context = logger.warning.call_args[1]["extra"]["context"]
    assert message == "Unable to traverse WAL storage path"
    assert context["path"] == str(wal_root / "broken")
