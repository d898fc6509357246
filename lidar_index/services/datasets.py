"""Dataset operations: registration, filtered listing and octree statistics.

Listing filters by acquisition time window and, optionally, by area: a
dataset matches a box when it is registered in at least one grid cell
overlapping that box.  Datasets without built data have no cells and
therefore never match an area filter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from lidar_index.core.constants import DEFAULT_DATASET_FORMAT
from lidar_index.models.records import Dataset

if TYPE_CHECKING:
    from lidar_index.models.geometry import GeorefBox
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.services.datasets")


@dataclass(frozen=True, slots=True)
class DatasetStats:
    """Size of a dataset's stored octrees.

    Attributes:
        node_count: Datablocks across every cell (octree size).
        max_depth: Deepest stored datablock (-1 when nothing is stored).
        cell_count: Root cells holding data.
        point_count: Points across every datablock.
    """

    node_count: int
    max_depth: int
    cell_count: int
    point_count: int


class DatasetService:
    def __init__(self, stores: Stores) -> None:
        self._stores = stores

    async def create(
        self,
        workspace: str,
        name: str,
        *,
        date: datetime | None = None,
        description: str = "",
        bbox: GeorefBox | None = None,
        data_block_size: int = 10_000,
        format: str = DEFAULT_DATASET_FORMAT,  # noqa: A002
    ) -> Dataset:
        """Register a new, empty dataset in *workspace*.

        Raises:
            NotFoundError: If the workspace does not exist.
            AlreadyExistsError: If the name is taken in the workspace.
            ModelValidationError: If the block size is below 100.
        """
        await self._stores.workspaces.get(workspace)
        dataset = await self._stores.datasets.insert(
            Dataset(
                workspace=workspace,
                name=name,
                date=date or datetime.now(UTC),
                description=description,
                bbox=bbox,
                data_block_size=data_block_size,
                format=format,
            )
        )
        logger.info(
            "Dataset created | workspace=%s | dataset=%s | block_size=%d",
            workspace,
            name,
            data_block_size,
        )
        return dataset

    async def get(self, workspace: str, name: str) -> Dataset:
        return await self._stores.datasets.get(workspace, name)

    async def list(
        self,
        workspace: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        box: GeorefBox | None = None,
    ) -> list[Dataset]:
        """List datasets dated within ``[start, end]``, optionally inside *box*.

        Raises:
            NotFoundError: If the workspace does not exist.
        """
        await self._stores.workspaces.get(workspace)
        datasets = await self._stores.datasets.find_by_time_window(workspace, start, end)
        if box is None:
            return sorted(datasets, key=lambda d: d.date)

        in_area: set[str] = set()
        for cell in await self._stores.grid_cells.find_overlapping(workspace, box):
            in_area.update(cell.datasets)
        return sorted((d for d in datasets if d.name in in_area), key=lambda d: d.date)

    async def stats(self, workspace: str, name: str) -> DatasetStats:
        """Return node count, depth and size of the dataset's octrees."""
        dataset = await self._stores.datasets.get(workspace, name)
        blocks = await self._stores.datablocks.list_all(workspace, name)
        return DatasetStats(
            node_count=len(blocks),
            max_depth=max((b.depth for b in blocks), default=-1),
            cell_count=sum(len(cells) for cells in dataset.cells.values()),
            point_count=sum(b.point_count for b in blocks),
        )
