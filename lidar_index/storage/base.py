"""Persistence contracts consumed by the indexer.

Four metadata stores (workspaces, datasets, grid cells, datablocks) and
one blob store for binary artifacts.  Every method is a coroutine, so a
backend may be a network database without changing its callers.

Unknown keys raise ``NotFoundError``; an empty result is only returned
by range predicates (``list``/``find_*``), never by point lookups.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from lidar_index.models.datablock import Datablock
    from lidar_index.models.geometry import GeorefBox
    from lidar_index.models.records import Dataset, GridCell, Workspace


class WorkspaceStore(abc.ABC):
    """Workspace registry."""

    @abc.abstractmethod
    async def exists(self, name: str) -> bool: ...

    @abc.abstractmethod
    async def get(self, name: str) -> Workspace:
        """Raises ``NotFoundError`` for an unknown name."""

    @abc.abstractmethod
    async def insert(self, workspace: Workspace) -> Workspace:
        """Raises ``AlreadyExistsError`` if the name is taken."""

    @abc.abstractmethod
    async def list_all(self) -> list[Workspace]: ...


class DatasetStore(abc.ABC):
    """Dataset registry with optimistic versioned updates."""

    @abc.abstractmethod
    async def exists(self, workspace: str, name: str) -> bool: ...

    @abc.abstractmethod
    async def get(self, workspace: str, name: str) -> Dataset:
        """Raises ``NotFoundError`` for an unknown dataset."""

    @abc.abstractmethod
    async def insert(self, dataset: Dataset) -> Dataset:
        """Raises ``AlreadyExistsError`` if the name is taken in the workspace."""

    @abc.abstractmethod
    async def list_all(self, workspace: str) -> list[Dataset]: ...

    @abc.abstractmethod
    async def find_by_time_window(
        self,
        workspace: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Dataset]:
        """Return datasets whose date lies in ``[start, end]`` (open ends allowed)."""

    @abc.abstractmethod
    async def update(self, dataset: Dataset, *, expected_version: int) -> Dataset:
        """Replace a dataset if its stored version equals *expected_version*.

        The stored copy gets ``expected_version + 1``, which is returned.

        Raises:
            NotFoundError: If the dataset does not exist.
            LockedConflictError: If another writer updated it first.
        """

    @abc.abstractmethod
    async def add_cell(self, workspace: str, name: str, cell: GeorefBox) -> Dataset:
        """Atomically register *cell* in the dataset's zone → cells mapping."""

    @abc.abstractmethod
    async def remove_cell(self, workspace: str, name: str, cell: GeorefBox) -> Dataset:
        """Atomically drop *cell* from the dataset's zone → cells mapping."""


class GridCellStore(abc.ABC):
    """Grid cells keyed by (workspace, zone, 2D identifier)."""

    @abc.abstractmethod
    async def get(self, workspace: str, box: GeorefBox) -> GridCell:
        """Raises ``NotFoundError`` for an unknown cell."""

    @abc.abstractmethod
    async def register(self, workspace: str, box: GeorefBox, dataset: str) -> GridCell:
        """Add *dataset* to the cell, creating the cell if needed."""

    @abc.abstractmethod
    async def unregister(self, workspace: str, box: GeorefBox, dataset: str) -> GridCell | None:
        """Remove *dataset* from the cell; returns ``None`` if the cell is unknown."""

    @abc.abstractmethod
    async def find_overlapping(self, workspace: str, box: GeorefBox) -> list[GridCell]:
        """Return cells in *box*'s zone whose box overlaps it."""


class DatablockStore(abc.ABC):
    """Octree node metadata keyed by (workspace, dataset, cell, node id)."""

    @abc.abstractmethod
    async def save(self, workspace: str, dataset: str, block: Datablock) -> None:
        """Insert or replace the metadata of *block*."""

    @abc.abstractmethod
    async def exists(self, workspace: str, dataset: str, node_id: int, cell: GeorefBox) -> bool: ...

    @abc.abstractmethod
    async def get(self, workspace: str, dataset: str, node_id: int, cell: GeorefBox) -> Datablock:
        """Raises ``NotFoundError`` for an unknown node."""

    @abc.abstractmethod
    async def find(self, workspace: str, dataset: str, node_id: int) -> list[Datablock]:
        """Return node *node_id* from every cell of the dataset."""

    @abc.abstractmethod
    async def list_all(self, workspace: str, dataset: str) -> list[Datablock]: ...


class BlobStore(abc.ABC):
    """Binary artifact storage addressed by blob id."""

    @abc.abstractmethod
    async def store(self, blob_id: str, data: bytes) -> None:
        """Write *data* under *blob_id*, overwriting any previous content."""

    @abc.abstractmethod
    async def retrieve(self, blob_id: str) -> bytes:
        """Raises ``NotFoundError`` for an unknown blob id."""


@dataclass(frozen=True, slots=True)
class Stores:
    """Every persistence collaborator the services need."""

    workspaces: WorkspaceStore
    datasets: DatasetStore
    grid_cells: GridCellStore
    datablocks: DatablockStore
    blobs: BlobStore
