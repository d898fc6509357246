"""Shared pytest fixtures for the LiDAR octree index test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from lidar_index.bootstrap import IndexServices, build_index
from lidar_index.core.config import IndexConfig
from lidar_index.storage.memory import memory_stores
from tests.fakes import CELL_ORIGIN, ZONE, FakeEngine, random_points, write_cloud

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def config(tmp_path: Path) -> IndexConfig:
    """Configuration with scratch and merge areas under ``tmp_path``."""
    return IndexConfig(
        scratch_dir=tmp_path / "scratch",
        merge_dir=tmp_path / "merge",
        max_depth=3,
        cell_workers=2,
        sibling_concurrency=3,
        persist_concurrency=4,
    )


@pytest.fixture()
def engine(config: IndexConfig) -> FakeEngine:
    return FakeEngine(config)


@pytest.fixture()
def services(config: IndexConfig, engine: FakeEngine) -> IndexServices:
    """Service bundle over the fake engine and fresh in-memory stores."""
    return build_index(config, engine=engine, stores=memory_stores())


# ---------------------------------------------------------------------------
# Point-cloud upload factory
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_upload(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing a random point cloud into ``tmp_path/uploads``.

    Points are drawn uniformly from ``mins``..``maxs`` (defaults: inside
    the cell at ``CELL_ORIGIN``, 5 m away from its edges).
    """
    counter = iter(range(1_000_000))

    def _make(
        count: int,
        *,
        zone: str = ZONE,
        mins: tuple[float, float, float] | None = None,
        maxs: tuple[float, float, float] | None = None,
        seed: int = 7,
    ) -> Path:
        lo = mins or (CELL_ORIGIN[0] + 5, CELL_ORIGIN[1] + 5, 600.0)
        hi = maxs or (CELL_ORIGIN[0] + 995, CELL_ORIGIN[1] + 995, 700.0)
        path = tmp_path / "uploads" / f"upload_{next(counter)}.json"
        return write_cloud(path, zone, random_points(count, lo, hi, seed=seed))

    return _make
