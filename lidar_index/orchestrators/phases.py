"""Bounded phase helpers for the add-data build orchestrator.

Each phase is a coroutine returning a typed result contract.  The
top-level ``BuildOrchestrator`` in ``build_pipeline.py`` runs them in
sequence and owns the dataset state machine and scratch cleanup.

Phases
------
1. **Zoning** — stage uploads, detect zones, merge per zone.
2. **Cell discovery** — tile each zone, cut root files, drop empty cells.
3. **Build** — one octree per non-empty cell on a bounded worker pool,
   streaming every emitted node into bounded concurrent persistence.

Every phase fails fast: the first error cancels sibling work, waits for
it to unwind, and propagates to the orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypedDict

from lidar_index.activities.discover_cells import candidate_cells, extract_root_file
from lidar_index.activities.persist_datablock import finalize_datablock, persist_datablock
from lidar_index.activities.zone_files import group_by_zone, merge_zone_groups, stage_uploads
from lidar_index.core.workdir import cell_scratch_dir, remove_quietly
from lidar_index.models.datablock import ROOT_ID, Datablock
from lidar_index.octree.builder import OctreeBuilder
from lidar_index.octree.sizing import build_sizing_policy
from lidar_index.utils.tasks import gather_or_cancel

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from lidar_index.core.config import IndexConfig
    from lidar_index.engine.base import PointCloudEngine
    from lidar_index.models.geometry import GeorefBox
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.orchestrators.phases")


# ---------------------------------------------------------------------------
# Phase result contracts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RootCell:
    """A non-empty grid cell ready for an octree build.

    Attributes:
        cell: Grid cell box.
        box: Box of the root node (tight, or regularized).
        root_file: Extracted root artifact.
        point_count: Points in ``root_file``.
    """

    cell: GeorefBox
    box: GeorefBox
    root_file: Path
    point_count: int


class ZoningResult(TypedDict):
    """Output contract for the zoning phase."""

    files_in: int
    zones: list[str]
    merged: dict[str, Path]


class DiscoveryResult(TypedDict):
    """Output contract for the cell discovery phase."""

    roots: list[RootCell]
    cells_total: int
    cells_empty: int


class BuildResult(TypedDict):
    """Output contract for the build phase."""

    cells_built: int
    nodes_emitted: int
    nodes_persisted: int
    max_depth: int


# ---------------------------------------------------------------------------
# Phase 1: Zoning
# ---------------------------------------------------------------------------


async def run_zoning_phase(
    engine: PointCloudEngine,
    files: Sequence[Path],
    dataset_dir: Path,
    *,
    extension: str,
    dataset: str = "",
) -> ZoningResult:
    """Stage uploads → detect zones → merge each zone into one artifact."""
    phase_start = time.monotonic()

    staged = await stage_uploads(files, dataset_dir, extension=extension)
    groups = await group_by_zone(engine, staged)
    merged = await merge_zone_groups(engine, groups, dataset_dir, extension=extension)

    logger.info(
        "phase=zoning completed | dataset=%s | files=%d | zones=%s | duration=%.1fs",
        dataset,
        len(staged),
        ",".join(sorted(merged)),
        time.monotonic() - phase_start,
    )
    return ZoningResult(files_in=len(staged), zones=sorted(merged), merged=merged)


# ---------------------------------------------------------------------------
# Phase 2: Cell discovery
# ---------------------------------------------------------------------------


async def run_cell_discovery_phase(
    engine: PointCloudEngine,
    stores: Stores,
    config: IndexConfig,
    merged: dict[str, Path],
    dataset_dir: Path,
    *,
    workspace: str,
    cell_size: int,
    targets: Sequence[str],
) -> DiscoveryResult:
    """Tile every zone, extract root files and unregister empty cells.

    Each candidate cell is first registered for every target dataset
    (zone → cells mapping and grid cell registry); a candidate whose root
    extraction is empty is then unregistered again.
    """
    phase_start = time.monotonic()
    limit = asyncio.Semaphore(config.cell_workers)

    async def register(cell: GeorefBox) -> None:
        for name in targets:
            await stores.datasets.add_cell(workspace, name, cell)
            await stores.grid_cells.register(workspace, cell, name)

    async def unregister(cell: GeorefBox) -> None:
        for name in targets:
            await stores.datasets.remove_cell(workspace, name, cell)
            await stores.grid_cells.unregister(workspace, cell, name)

    async def discover(zone: str, merged_file: Path, cell: GeorefBox) -> RootCell | None:
        await register(cell)
        async with limit:
            cell_dir = cell_scratch_dir(dataset_dir, zone, cell.identifier)
            result = await extract_root_file(engine, merged_file, cell, cell_dir)
            if result.is_empty or result.path is None:
                await unregister(cell)
                return None
            box = await engine.get_bounding_box(result.path, zone)
        return RootCell(
            cell=cell,
            box=box.regularized() if config.regular_octree else box,
            root_file=result.path,
            point_count=result.point_count,
        )

    jobs = []
    for zone, merged_file in sorted(merged.items()):
        for cell in await candidate_cells(engine, merged_file, zone, cell_size):
            jobs.append(discover(zone, merged_file, cell))
    outcomes: list[RootCell | None] = await gather_or_cancel(*jobs)
    roots = [root for root in outcomes if root is not None]

    for merged_file in merged.values():
        remove_quietly(merged_file)

    logger.info(
        "phase=cell_discovery completed | workspace=%s | cells=%d | non_empty=%d | "
        "empty=%d | duration=%.1fs",
        workspace,
        len(outcomes),
        len(roots),
        len(outcomes) - len(roots),
        time.monotonic() - phase_start,
    )
    return DiscoveryResult(
        roots=roots,
        cells_total=len(outcomes),
        cells_empty=len(outcomes) - len(roots),
    )


# ---------------------------------------------------------------------------
# Phase 3: Build and persist
# ---------------------------------------------------------------------------


async def run_build_phase(
    engine: PointCloudEngine,
    stores: Stores,
    config: IndexConfig,
    roots: Sequence[RootCell],
    *,
    workspace: str,
    targets: Sequence[str],
    data_block_size: int,
) -> BuildResult:
    """Build one octree per root cell and persist every node into *targets*.

    Cells run on a pool of ``config.cell_workers``; node persistence is
    bounded by ``config.persist_concurrency`` across all cells.  There is
    no ordering between the writes of different nodes.
    """
    phase_start = time.monotonic()
    cell_limit = asyncio.Semaphore(config.cell_workers)
    persist_limit = asyncio.Semaphore(config.persist_concurrency)
    counters = {"emitted": 0, "persisted": 0, "max_depth": 0}

    async def persist(node: Datablock) -> None:
        async with persist_limit:
            data = await finalize_datablock(engine, node)
            for name in targets:
                await persist_datablock(
                    stores,
                    node,
                    data,
                    workspace=workspace,
                    dataset=name,
                    extension=config.file_extension,
                )
                counters["persisted"] += 1

    async def build_cell(root: RootCell) -> None:
        async with cell_limit:
            policy = build_sizing_policy(
                config.sizing_policy,
                block_size=data_block_size,
                max_depth=config.max_depth,
                point_count=root.point_count,
            )
            builder = OctreeBuilder(
                engine,
                policy,
                max_depth=config.max_depth,
                sibling_concurrency=config.sibling_concurrency,
            )
            root_block = Datablock(
                node_id=ROOT_ID,
                box=root.box,
                cell=root.cell,
                working_file=root.root_file,
            )
            writes: list[asyncio.Task[None]] = []
            try:
                async with contextlib.aclosing(builder.build(root_block)) as nodes:
                    async for node in nodes:
                        counters["emitted"] += 1
                        counters["max_depth"] = max(counters["max_depth"], node.depth)
                        writes.append(asyncio.create_task(persist(node)))
                        _raise_first_failure(writes)
                await gather_or_cancel(*writes)
            except BaseException:
                for write in writes:
                    write.cancel()
                await asyncio.gather(*writes, return_exceptions=True)
                raise
        logger.info(
            "Cell built | zone=%s | cell=%s | root_points=%d",
            root.cell.zone,
            root.cell.identifier,
            root.point_count,
        )

    await gather_or_cancel(*(build_cell(root) for root in roots))

    logger.info(
        "phase=build completed | workspace=%s | targets=%s | cells=%d | nodes=%d | "
        "writes=%d | duration=%.1fs",
        workspace,
        ",".join(targets),
        len(roots),
        counters["emitted"],
        counters["persisted"],
        time.monotonic() - phase_start,
    )
    return BuildResult(
        cells_built=len(roots),
        nodes_emitted=counters["emitted"],
        nodes_persisted=counters["persisted"],
        max_depth=counters["max_depth"],
    )


def _raise_first_failure(tasks: Sequence[asyncio.Task[None]]) -> None:
    """Re-raise the error of the first finished task that failed."""
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def build_pipeline_summary(
    *,
    workspace: str,
    dataset: str,
    state: str,
    zoning: ZoningResult,
    discovery: DiscoveryResult,
    build: BuildResult,
    replicas: Sequence[str],
    duration_s: float,
) -> dict[str, object]:
    """Build the summary returned by a completed add-data run."""
    return {
        "workspace": workspace,
        "dataset": dataset,
        "state": state,
        "replicas": list(replicas),
        "files_in": zoning["files_in"],
        "zones": zoning["zones"],
        "cells_total": discovery["cells_total"],
        "cells_built": build["cells_built"],
        "cells_empty": discovery["cells_empty"],
        "nodes_emitted": build["nodes_emitted"],
        "nodes_persisted": build["nodes_persisted"],
        "max_depth": build["max_depth"],
        "duration_s": round(duration_s, 3),
    }
