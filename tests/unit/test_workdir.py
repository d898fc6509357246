"""Tests for scratch and request-scoped working directories.

Covers:
- Scratch folder naming per dataset and per cell
- clean_directory tolerates missing paths
- request_directory is unique per call and removed on every exit path
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from lidar_index.core.workdir import (
    cell_scratch_dir,
    clean_directory,
    dataset_scratch_dir,
    remove_quietly,
    request_directory,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestScratchLayout:
    def test_dataset_and_cell_folders(self, tmp_path: Path) -> None:
        dataset_dir = dataset_scratch_dir(tmp_path, "My Survey", "Flight_1")
        assert dataset_dir == tmp_path / "My%20Survey_Flight%5F1"
        cell_dir = cell_scratch_dir(dataset_dir, "30S", "0.0_0.0_1000.0_1000.0")
        assert cell_dir.is_dir()
        assert cell_dir.parent.name == "30S"

    @pytest.mark.asyncio()
    async def test_clean_missing_directory(self, tmp_path: Path) -> None:
        await clean_directory(tmp_path / "never-created")

    @pytest.mark.asyncio()
    async def test_clean_nested(self, tmp_path: Path) -> None:
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        (nested / "f.laz").write_bytes(b"x")
        await clean_directory(tmp_path / "a")
        assert not (tmp_path / "a").exists()

    def test_remove_quietly(self, tmp_path: Path) -> None:
        remove_quietly(None)
        remove_quietly(tmp_path / "missing.laz")
        target = tmp_path / "n0_bd.laz"
        target.write_bytes(b"x")
        remove_quietly(target)
        assert not target.exists()


class TestRequestDirectory:
    @pytest.mark.asyncio()
    async def test_unique_and_removed(self, tmp_path: Path) -> None:
        async with request_directory(tmp_path, "ws", "ds") as first, request_directory(tmp_path, "ws", "ds") as second:
            assert first != second
            assert first.name.startswith("ws_ds_")
            (first / "merged.laz").write_bytes(b"x")
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio()
    async def test_removed_on_error(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            async with request_directory(tmp_path, "ws", "ds") as path:
                (path / "part.laz").write_bytes(b"x")
                msg = "merge failed"
                raise RuntimeError(msg)
        assert list(tmp_path.iterdir()) == []
