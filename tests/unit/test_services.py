"""Tests for workspace and dataset services and the composition root.

Covers:
- Workspace creation, validation and duplicates
- Dataset creation requires the workspace; block size validation
- Listing by time window and by area
- Dataset statistics before and after a build
- build_index wiring and directory creation
- Blob backend selection from the environment
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from lidar_index.bootstrap import build_index
from lidar_index.core.exceptions import AlreadyExistsError, NotFoundError
from lidar_index.engine.lastools import LasToolsEngine
from lidar_index.models.geometry import GeorefBox
from lidar_index.models.records import DatasetState, ModelValidationError
from lidar_index.storage.azure_blob import CONNECTION_STRING_ENV, AzureBlobStore
from lidar_index.storage.memory import InMemoryBlobStore
from tests.fakes import ACQUIRED, CELL_ORIGIN, ZONE

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from lidar_index.bootstrap import IndexServices
    from lidar_index.core.config import IndexConfig
    from tests.fakes import FakeEngine


class TestWorkspaceService:
    @pytest.mark.asyncio()
    async def test_create_and_list(self, services: IndexServices) -> None:
        await services.workspaces.create("a", cell_size=1000, description="first")
        await services.workspaces.create("b", cell_size=250)
        assert sorted(w.name for w in await services.workspaces.list()) == ["a", "b"]
        assert (await services.workspaces.get("a")).description == "first"

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("cell_size", [99, 1_000_001])
    async def test_cell_size_range(self, services: IndexServices, cell_size: int) -> None:
        with pytest.raises(ModelValidationError):
            await services.workspaces.create("a", cell_size=cell_size)

    @pytest.mark.asyncio()
    async def test_duplicate(self, services: IndexServices) -> None:
        await services.workspaces.create("a", cell_size=1000)
        with pytest.raises(AlreadyExistsError):
            await services.workspaces.create("a", cell_size=500)


class TestDatasetService:
    @pytest.mark.asyncio()
    async def test_create_defaults(self, services: IndexServices) -> None:
        await services.workspaces.create("ws", cell_size=1000)
        dataset = await services.datasets.create("ws", "ds")
        assert dataset.state is DatasetState.NO_DATA
        assert dataset.data_block_size == 10_000
        assert dataset.format == "LAZ"
        assert dataset.date.tzinfo is not None

    @pytest.mark.asyncio()
    async def test_requires_workspace(self, services: IndexServices) -> None:
        with pytest.raises(NotFoundError):
            await services.datasets.create("missing", "ds")

    @pytest.mark.asyncio()
    async def test_block_size_minimum(self, services: IndexServices) -> None:
        await services.workspaces.create("ws", cell_size=1000)
        with pytest.raises(ModelValidationError):
            await services.datasets.create("ws", "ds", data_block_size=99)

    @pytest.mark.asyncio()
    async def test_list_by_time_window(self, services: IndexServices) -> None:
        await services.workspaces.create("ws", cell_size=1000)
        for day in (2, 0, 1):
            await services.datasets.create("ws", f"d{day}", date=ACQUIRED + timedelta(days=day))

        everything = await services.datasets.list("ws")
        window = await services.datasets.list("ws", start=ACQUIRED + timedelta(hours=1))

        assert [d.name for d in everything] == ["d0", "d1", "d2"]
        assert [d.name for d in window] == ["d1", "d2"]

    @pytest.mark.asyncio()
    async def test_list_unknown_workspace(self, services: IndexServices) -> None:
        with pytest.raises(NotFoundError):
            await services.datasets.list("missing")

    @pytest.mark.asyncio()
    async def test_list_by_area(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await services.workspaces.create("ws", cell_size=1000)
        await services.datasets.create("ws", "built", date=ACQUIRED, data_block_size=1000)
        await services.datasets.create("ws", "empty", date=ACQUIRED)
        await services.builds.add_data("ws", "built", [make_upload(200)])

        inside = GeorefBox.from_bounds(ZONE, (CELL_ORIGIN[0] + 10, CELL_ORIGIN[1] + 10, 0.0), (CELL_ORIGIN[0] + 20, CELL_ORIGIN[1] + 20, 0.0))
        far = GeorefBox.from_bounds(ZONE, (0.0, 0.0, 0.0), (10.0, 10.0, 0.0))

        assert [d.name for d in await services.datasets.list("ws", box=inside)] == ["built"]
        assert await services.datasets.list("ws", box=far) == []

    @pytest.mark.asyncio()
    async def test_stats(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await services.workspaces.create("ws", cell_size=1000)
        await services.datasets.create("ws", "ds", date=ACQUIRED, data_block_size=100)

        empty = await services.datasets.stats("ws", "ds")
        await services.builds.add_data("ws", "ds", [make_upload(1200)])
        built = await services.datasets.stats("ws", "ds")

        assert (empty.node_count, empty.max_depth, empty.cell_count, empty.point_count) == (0, -1, 0, 0)
        assert built.point_count == 1200
        assert built.cell_count == 1
        assert built.max_depth >= 1


class TestBuildIndex:
    def test_creates_directories(
        self, config: IndexConfig, engine: FakeEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv(CONNECTION_STRING_ENV, raising=False)
        services = build_index(config, engine=engine)
        assert config.scratch_dir.is_dir()
        assert config.merge_dir.is_dir()
        assert services.engine is engine
        assert isinstance(services.stores.blobs, InMemoryBlobStore)

    @pytest.mark.asyncio()
    async def test_azure_blob_backend_from_environment(self, config: IndexConfig, engine: FakeEngine) -> None:
        env = {CONNECTION_STRING_ENV: "UseDevelopmentStorage=true"}
        with (
            patch.dict(os.environ, env, clear=False),
            patch("azure.storage.blob.BlobServiceClient.from_connection_string") as factory,
        ):
            services = build_index(config, engine=engine)
            await services.stores.blobs.store("datablocks/ws/ds/30S/c/0.laz", b"LASF")

        assert isinstance(services.stores.blobs, AzureBlobStore)
        factory.assert_called_once_with("UseDevelopmentStorage=true")
        factory.return_value.get_blob_client.assert_called_once_with(
            container=config.blob_container,
            blob="datablocks/ws/ds/30S/c/0.laz",
        )

    def test_defaults_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(CONNECTION_STRING_ENV, raising=False)
        env = {
            "LIDAR_SCRATCH_DIR": str(tmp_path / "s"),
            "LIDAR_MERGE_DIR": str(tmp_path / "m"),
        }
        with patch.dict(os.environ, env, clear=False):
            services = build_index()
        assert isinstance(services.engine, LasToolsEngine)
        assert services.config.scratch_dir == tmp_path / "s"
