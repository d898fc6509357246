"""Tests for the add-data build orchestrator.

Covers:
- End-to-end build over the fake engine: summary, state, stored nodes
- Empty candidate cells are absent from the dataset and the cell registry
- Points on grid lines and octant faces are stored exactly once
- Datasets whose names differ only in case or punctuation stay apart
- Multi-zone uploads
- Preconditions: no files, unknown dataset, dataset already holding data
- Failures move the dataset to ERROR_ON_INSERTION and purge scratch
- Concurrent add-data on one dataset: exactly one build wins
- Per-dataset locks are dropped once nobody holds or waits on them
- Replication into sibling datasets
- Regularized root boxes and the distribution sizing policy
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from lidar_index.bootstrap import build_index
from lidar_index.core.exceptions import (
    AlreadyHasDataError,
    LockedConflictError,
    NotFoundError,
    ValidationError,
)
from lidar_index.core.workdir import dataset_scratch_dir
from lidar_index.engine.base import ToolFailureError
from lidar_index.models.datablock import ROOT_ID
from lidar_index.models.geometry import GeorefBox
from lidar_index.models.records import DatasetState
from lidar_index.orchestrators.build_pipeline import BuildFailureError
from lidar_index.storage.memory import memory_stores
from tests.fakes import ACQUIRED, CELL_ORIGIN, ZONE, FakeEngine, random_points, write_cloud

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from lidar_index.bootstrap import IndexServices
    from lidar_index.core.config import IndexConfig

WORKSPACE = "survey"
DATASET = "flight"


async def _register(services: IndexServices, *, block_size: int = 1000) -> None:
    await services.workspaces.create(WORKSPACE, cell_size=1000)
    await services.datasets.create(WORKSPACE, DATASET, date=ACQUIRED, data_block_size=block_size)


def _cell_box(index_e: int = 0) -> GeorefBox:
    e0 = CELL_ORIGIN[0] + index_e * 1000
    return GeorefBox.from_bounds(ZONE, (e0, CELL_ORIGIN[1], 0.0), (e0 + 1000, CELL_ORIGIN[1] + 1000, 0.0))


def _cluster(index_e: int) -> dict[str, tuple[float, float, float]]:
    e0 = CELL_ORIGIN[0] + index_e * 1000
    return {
        "mins": (e0 + 5, CELL_ORIGIN[1] + 5, 600.0),
        "maxs": (e0 + 995, CELL_ORIGIN[1] + 995, 700.0),
    }


class TestEndToEnd:
    """A single-cell build over the fake engine."""

    @pytest.mark.asyncio()
    async def test_build_summary(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await _register(services)
        upload = make_upload(2500)

        summary = await services.builds.add_data(WORKSPACE, DATASET, [upload])

        assert summary["state"] == "DATA_ASSOCIATED"
        assert summary["files_in"] == 1
        assert summary["zones"] == [ZONE]
        assert summary["cells_total"] == 1
        assert summary["cells_built"] == 1
        assert summary["cells_empty"] == 0
        assert summary["nodes_persisted"] == summary["nodes_emitted"]
        assert summary["replicas"] == []
        assert "duration_s" in summary
        assert not upload.exists()

    @pytest.mark.asyncio()
    async def test_dataset_state_and_cells(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await _register(services)
        await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])

        dataset = await services.datasets.get(WORKSPACE, DATASET)
        assert dataset.state is DatasetState.DATA_ASSOCIATED
        assert [c.identifier for c in dataset.cells_in_zone(ZONE)] == [_cell_box().identifier]
        cell = await services.stores.grid_cells.get(WORKSPACE, _cell_box())
        assert cell.datasets == {DATASET}

    @pytest.mark.asyncio()
    async def test_root_and_point_totals(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await _register(services)
        summary = await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])

        (root,) = await services.query.get_datablocks(WORKSPACE, DATASET, ROOT_ID)
        assert root.point_count == 834
        assert root.depth == 0
        stats = await services.datasets.stats(WORKSPACE, DATASET)
        assert stats.point_count == 2500
        assert stats.node_count == summary["nodes_emitted"]
        assert stats.max_depth == summary["max_depth"] <= services.config.max_depth

    @pytest.mark.asyncio()
    async def test_every_node_has_stored_artifact(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])

        for block in await services.stores.datablocks.list_all(WORKSPACE, DATASET):
            assert block.blob_id.startswith(f"datablocks/{WORKSPACE}/{DATASET}/{ZONE}/")
            payload = json.loads(await services.stores.blobs.retrieve(block.blob_id))
            assert len(payload["points"]) == block.point_count
            for child in block.children:
                assert await services.stores.datablocks.exists(WORKSPACE, DATASET, child, block.cell)

    @pytest.mark.asyncio()
    async def test_scratch_purged(
        self, services: IndexServices, config: IndexConfig, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])
        assert not dataset_scratch_dir(config.scratch_dir, WORKSPACE, DATASET).exists()


class TestCellDiscovery:
    """Grid cells found while building."""

    @pytest.mark.asyncio()
    async def test_empty_cell_is_not_registered(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        uploads = [make_upload(300, **_cluster(0), seed=1), make_upload(300, **_cluster(2), seed=2)]

        summary = await services.builds.add_data(WORKSPACE, DATASET, uploads)

        assert summary["cells_total"] == 3
        assert summary["cells_empty"] == 1
        assert summary["cells_built"] == 2
        dataset = await services.datasets.get(WORKSPACE, DATASET)
        assert sorted(c.identifier for c in dataset.cells_in_zone(ZONE)) == sorted(
            [_cell_box(0).identifier, _cell_box(2).identifier]
        )
        middle = await services.stores.grid_cells.get(WORKSPACE, _cell_box(1))
        assert middle.datasets == frozenset()
        assert len(await services.stores.datablocks.find(WORKSPACE, DATASET, ROOT_ID)) == 2

    @pytest.mark.asyncio()
    async def test_points_on_grid_lines_kept_once(self, services: IndexServices, tmp_path: Path) -> None:
        await _register(services)
        north = CELL_ORIGIN[1] + 500
        points = [
            (CELL_ORIGIN[0], north, 650.0),
            (CELL_ORIGIN[0] + 1000, north, 650.0),
            (CELL_ORIGIN[0] + 2000, north, 650.0),
            (CELL_ORIGIN[0] + 1000, CELL_ORIGIN[1] + 1000, 700.0),
        ]
        upload = write_cloud(tmp_path / "uploads" / "edges.json", ZONE, points)

        summary = await services.builds.add_data(WORKSPACE, DATASET, [upload])

        assert summary["cells_built"] == 4
        merged = b"".join([c async for c in services.query.dataset_merged(WORKSPACE, DATASET)])
        assert sorted(tuple(p) for p in json.loads(merged)["points"]) == sorted(points)
        stats = await services.datasets.stats(WORKSPACE, DATASET)
        assert stats.point_count == len(points)

    @pytest.mark.asyncio()
    async def test_points_on_octant_faces_kept_once(self, services: IndexServices, tmp_path: Path) -> None:
        await _register(services, block_size=100)
        e0, n0 = CELL_ORIGIN[0] + 100, CELL_ORIGIN[1] + 100
        edges = [(e0 + de, n0 + dn, 600.0 + dh) for de in (0, 400, 800) for dn in (0, 400, 800) for dh in (0, 50, 100)]
        points = random_points(400, (e0, n0, 600.0), (e0 + 800, n0 + 800, 700.0), seed=21) + edges
        upload = write_cloud(tmp_path / "uploads" / "faces.json", ZONE, points)

        await services.builds.add_data(WORKSPACE, DATASET, [upload])

        merged = b"".join([c async for c in services.query.dataset_merged(WORKSPACE, DATASET)])
        assert sorted(tuple(p) for p in json.loads(merged)["points"]) == sorted(points)

    @pytest.mark.asyncio()
    async def test_uploads_in_two_zones(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await _register(services)
        uploads = [make_upload(200, seed=1), make_upload(200, zone="31S", seed=2)]

        summary = await services.builds.add_data(WORKSPACE, DATASET, uploads)

        assert summary["zones"] == ["30S", "31S"]
        dataset = await services.datasets.get(WORKSPACE, DATASET)
        assert sorted(dataset.cells) == ["30S", "31S"]
        stats = await services.datasets.stats(WORKSPACE, DATASET)
        assert stats.cell_count == 2
        assert stats.point_count == 400


class TestDatasetIsolation:
    """Datasets whose names encode to similar slugs."""

    @pytest.mark.asyncio()
    async def test_similar_names_keep_their_own_artifacts(
        self, services: IndexServices, config: IndexConfig, tmp_path: Path
    ) -> None:
        await services.workspaces.create(WORKSPACE, cell_size=1000)
        first = (CELL_ORIGIN[0] + 100, CELL_ORIGIN[1] + 100, 650.0)
        second = (CELL_ORIGIN[0] + 900, CELL_ORIGIN[1] + 900, 999.0)
        for name, point in (("Flight_A", first), ("flight-a", second)):
            await services.datasets.create(WORKSPACE, name, date=ACQUIRED, data_block_size=1000)
            upload = write_cloud(tmp_path / "uploads" / f"{name}.json", ZONE, [point])
            await services.builds.add_data(WORKSPACE, name, [upload])

        for name, point in (("Flight_A", first), ("flight-a", second)):
            merged = b"".join([c async for c in services.query.dataset_merged(WORKSPACE, name)])
            assert json.loads(merged)["points"] == [list(point)]
        assert dataset_scratch_dir(config.scratch_dir, WORKSPACE, "Flight_A") != dataset_scratch_dir(
            config.scratch_dir, WORKSPACE, "flight-a"
        )


class TestPreconditions:
    """Requests rejected before any work starts."""

    @pytest.mark.asyncio()
    async def test_no_files(self, services: IndexServices) -> None:
        await _register(services)
        with pytest.raises(ValidationError) as info:
            await services.builds.add_data(WORKSPACE, DATASET, [])
        assert info.value.code == "NO_INPUT_FILES"

    @pytest.mark.asyncio()
    async def test_unknown_dataset(self, services: IndexServices, make_upload: Callable[..., Path]) -> None:
        await _register(services)
        with pytest.raises(NotFoundError):
            await services.builds.add_data(WORKSPACE, "missing", [make_upload(10)])

    @pytest.mark.asyncio()
    async def test_already_has_data_leaves_data_untouched(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])
        before = await services.datasets.stats(WORKSPACE, DATASET)
        second = make_upload(100, seed=99)

        with pytest.raises(AlreadyHasDataError):
            await services.builds.add_data(WORKSPACE, DATASET, [second])

        assert second.exists()
        assert await services.datasets.stats(WORKSPACE, DATASET) == before
        assert (await services.datasets.get(WORKSPACE, DATASET)).state is DatasetState.DATA_ASSOCIATED

    @pytest.mark.asyncio()
    async def test_version_conflict_on_claim(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        with (
            patch.object(services.stores.datasets, "update", side_effect=LockedConflictError("raced")),
            pytest.raises(LockedConflictError),
        ):
            await services.builds.add_data(WORKSPACE, DATASET, [make_upload(10)])
        assert (await services.datasets.get(WORKSPACE, DATASET)).state is DatasetState.NO_DATA

    @pytest.mark.asyncio()
    async def test_concurrent_builds_one_wins(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        results = await asyncio.gather(
            services.builds.add_data(WORKSPACE, DATASET, [make_upload(500, seed=1)]),
            services.builds.add_data(WORKSPACE, DATASET, [make_upload(500, seed=2)]),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyHasDataError)
        assert (await services.datasets.get(WORKSPACE, DATASET)).state is DatasetState.DATA_ASSOCIATED
        assert services.builds._locks == {}

    @pytest.mark.asyncio()
    async def test_dataset_lock_kept_while_waited_on(self, services: IndexServices) -> None:
        orchestrator = services.builds
        entered = asyncio.Event()

        async def waiter() -> None:
            async with orchestrator._dataset_lock(WORKSPACE, DATASET):
                entered.set()

        async with orchestrator._dataset_lock(WORKSPACE, DATASET):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            assert not entered.is_set()
            assert orchestrator._lock_users[(WORKSPACE, DATASET)] == 2
        await task

        assert entered.is_set()
        assert orchestrator._locks == {}
        assert not orchestrator._lock_users


class TestFailures:
    """Builds that fail after they started."""

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("capability", ["merge_files", "extract_region", "reduce", "finalize"])
    async def test_failure_marks_error_on_insertion(
        self,
        services: IndexServices,
        engine: FakeEngine,
        config: IndexConfig,
        make_upload: Callable[..., Path],
        capability: str,
    ) -> None:
        await _register(services)
        engine.fail_on = {capability}

        with pytest.raises(BuildFailureError) as info:
            await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)])

        assert isinstance(info.value.__cause__, ToolFailureError)
        assert info.value.code == "BUILD_FAILED"
        assert (await services.datasets.get(WORKSPACE, DATASET)).state is DatasetState.ERROR_ON_INSERTION
        assert not dataset_scratch_dir(config.scratch_dir, WORKSPACE, DATASET).exists()

    @pytest.mark.asyncio()
    async def test_failed_dataset_cannot_be_rebuilt(
        self, services: IndexServices, engine: FakeEngine, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        engine.fail_on = {"finalize"}
        with pytest.raises(BuildFailureError):
            await services.builds.add_data(WORKSPACE, DATASET, [make_upload(200)])

        engine.fail_on = set()
        with pytest.raises(AlreadyHasDataError):
            await services.builds.add_data(WORKSPACE, DATASET, [make_upload(200, seed=3)])


class TestReplication:
    """Persisting one build into sibling datasets."""

    @pytest.mark.asyncio()
    async def test_replicas_receive_every_node(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)

        summary = await services.builds.add_data(WORKSPACE, DATASET, [make_upload(2500)], replicas=2)

        assert summary["replicas"] == ["flight1", "flight2"]
        assert summary["nodes_persisted"] == 3 * summary["nodes_emitted"]
        source = await services.datasets.stats(WORKSPACE, DATASET)
        for name in ("flight1", "flight2"):
            replica = await services.datasets.get(WORKSPACE, name)
            assert replica.state is DatasetState.DATA_ASSOCIATED
            assert replica.date == ACQUIRED
            assert await services.datasets.stats(WORKSPACE, name) == source
        cell = await services.stores.grid_cells.get(WORKSPACE, _cell_box())
        assert cell.datasets == {"flight", "flight1", "flight2"}

    @pytest.mark.asyncio()
    async def test_replica_with_data_rolls_back_claims(
        self, services: IndexServices, make_upload: Callable[..., Path]
    ) -> None:
        await _register(services)
        await services.datasets.create(WORKSPACE, "flight1", date=ACQUIRED)
        taken = await services.datasets.get(WORKSPACE, "flight1")
        await services.stores.datasets.update(
            taken.with_state(DatasetState.DATA_ASSOCIATED), expected_version=taken.version
        )

        with pytest.raises(AlreadyHasDataError):
            await services.builds.add_data(WORKSPACE, DATASET, [make_upload(100)], replicas=1)

        assert (await services.datasets.get(WORKSPACE, DATASET)).state is DatasetState.NO_DATA

    @pytest.mark.asyncio()
    async def test_replicas_from_config(
        self, config: IndexConfig, make_upload: Callable[..., Path]
    ) -> None:
        replicated = dataclasses.replace(config, replicas=1)
        services = build_index(replicated, engine=FakeEngine(replicated), stores=memory_stores())
        await _register(services)

        summary = await services.builds.add_data(WORKSPACE, DATASET, [make_upload(300)])

        assert summary["replicas"] == ["flight1"]


class TestBuildVariants:
    """Configuration switches that change the tree."""

    @pytest.mark.asyncio()
    async def test_regular_octree_root_is_square(
        self, config: IndexConfig, make_upload: Callable[..., Path]
    ) -> None:
        regular = dataclasses.replace(config, regular_octree=True)
        services = build_index(regular, engine=FakeEngine(regular), stores=memory_stores())
        await _register(services)
        upload = make_upload(
            1500,
            mins=(CELL_ORIGIN[0] + 5, CELL_ORIGIN[1] + 5, 600.0),
            maxs=(CELL_ORIGIN[0] + 505, CELL_ORIGIN[1] + 105, 700.0),
        )

        await services.builds.add_data(WORKSPACE, DATASET, [upload])

        (root,) = await services.query.get_datablocks(WORKSPACE, DATASET, ROOT_ID)
        width = root.box.ne.easting - root.box.sw.easting
        height = root.box.ne.northing - root.box.sw.northing
        assert width == pytest.approx(height)

    @pytest.mark.asyncio()
    async def test_distribution_policy_conserves_points(
        self, config: IndexConfig, make_upload: Callable[..., Path]
    ) -> None:
        distributed = dataclasses.replace(config, sizing_policy="distribution")
        services = build_index(distributed, engine=FakeEngine(distributed), stores=memory_stores())
        await _register(services)

        await services.builds.add_data(WORKSPACE, DATASET, [make_upload(3000)])

        stats = await services.datasets.stats(WORKSPACE, DATASET)
        assert stats.point_count == 3000
        assert stats.node_count > 1
