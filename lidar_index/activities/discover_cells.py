"""Cell discovery activity — tile a zone and cut one root file per cell.

Candidate cells are the grid tiles of ``workspace.cell_size`` that cover
the merged zone artifact's own bounding box.  For each candidate the
engine extracts the points inside the cell into the cell's working
folder; an empty extraction marks the candidate a false positive.  Root
files are cut in plan only and exclude the cell's east and north edges,
so neighbouring cells never share a point.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lidar_index.core.constants import TAG_ROOT
from lidar_index.models.datablock import ROOT_ID

if TYPE_CHECKING:
    from pathlib import Path

    from lidar_index.engine.base import ExtractResult, PointCloudEngine
    from lidar_index.models.geometry import GeorefBox

logger = logging.getLogger("lidar_index.activities.discover_cells")


async def candidate_cells(
    engine: PointCloudEngine,
    merged: Path,
    zone: str,
    cell_size: int,
) -> list[GeorefBox]:
    """Return the grid cells covering the bounding box of *merged*."""
    bbox = await engine.get_bounding_box(merged, zone)
    cells = bbox.cells(cell_size)
    logger.info(
        "Candidate cells computed | zone=%s | cell_size=%d | cells=%d | bbox=%s",
        zone,
        cell_size,
        len(cells),
        bbox.identifier,
    )
    return cells


async def extract_root_file(
    engine: PointCloudEngine,
    merged: Path,
    cell: GeorefBox,
    cell_dir: Path,
) -> ExtractResult:
    """Extract the points of *merged* inside *cell* as the cell's root file."""
    result = await engine.extract_region(
        merged,
        cell,
        ROOT_ID,
        planar=True,
        output_dir=cell_dir,
        tag=TAG_ROOT,
    )
    if result.is_empty:
        logger.info("Cell is a false positive | zone=%s | cell=%s", cell.zone, cell.identifier)
    else:
        logger.info(
            "Root file extracted | zone=%s | cell=%s | points=%d",
            cell.zone,
            cell.identifier,
            result.point_count,
        )
    return result
