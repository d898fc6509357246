"""In-process document stores.

Each store keeps pydantic ``model_dump(mode="json")`` documents in a
dict guarded by one ``asyncio.Lock``, which makes every read-modify-write
(versioned dataset updates, cell registration) atomic with respect to
other coroutines.  Returned objects are always rebuilt from the stored
JSON, so callers can never mutate stored state by accident.

Suitable for tests and single-process deployments; a document database
backend implements the same interfaces from ``lidar_index.storage.base``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from lidar_index.core.exceptions import (
    AlreadyExistsError,
    LockedConflictError,
    NotFoundError,
)
from lidar_index.models.documents import (
    DatablockDocument,
    DatasetDocument,
    GridCellDocument,
    WorkspaceDocument,
)
from lidar_index.models.records import GridCell
from lidar_index.storage.base import (
    BlobStore,
    DatablockStore,
    DatasetStore,
    GridCellStore,
    Stores,
    WorkspaceStore,
)

if TYPE_CHECKING:
    from datetime import datetime

    from lidar_index.models.datablock import Datablock
    from lidar_index.models.geometry import GeorefBox
    from lidar_index.models.records import Dataset, Workspace

logger = logging.getLogger("lidar_index.storage.memory")


class InMemoryWorkspaceStore(WorkspaceStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def exists(self, name: str) -> bool:
        return name in self._docs

    async def get(self, name: str) -> Workspace:
        doc = self._docs.get(name)
        if doc is None:
            raise NotFoundError("workspace", name)
        return WorkspaceDocument.model_validate(doc).to_domain()

    async def insert(self, workspace: Workspace) -> Workspace:
        async with self._lock:
            if workspace.name in self._docs:
                raise AlreadyExistsError("workspace", workspace.name)
            self._docs[workspace.name] = WorkspaceDocument.from_domain(workspace).model_dump(mode="json")
        return workspace

    async def list_all(self) -> list[Workspace]:
        return [WorkspaceDocument.model_validate(d).to_domain() for d in self._docs.values()]


class InMemoryDatasetStore(DatasetStore):
    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _load(self, workspace: str, name: str) -> Dataset:
        doc = self._docs.get((workspace, name))
        if doc is None:
            raise NotFoundError("dataset", f"{workspace}/{name}")
        return DatasetDocument.model_validate(doc).to_domain()

    def _dump(self, dataset: Dataset) -> None:
        self._docs[(dataset.workspace, dataset.name)] = DatasetDocument.from_domain(dataset).model_dump(
            mode="json"
        )

    async def exists(self, workspace: str, name: str) -> bool:
        return (workspace, name) in self._docs

    async def get(self, workspace: str, name: str) -> Dataset:
        return self._load(workspace, name)

    async def insert(self, dataset: Dataset) -> Dataset:
        async with self._lock:
            if (dataset.workspace, dataset.name) in self._docs:
                raise AlreadyExistsError("dataset", f"{dataset.workspace}/{dataset.name}")
            self._dump(dataset)
        return dataset

    async def list_all(self, workspace: str) -> list[Dataset]:
        return [
            DatasetDocument.model_validate(doc).to_domain()
            for (ws, _), doc in self._docs.items()
            if ws == workspace
        ]

    async def find_by_time_window(
        self,
        workspace: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Dataset]:
        return [
            ds
            for ds in await self.list_all(workspace)
            if (start is None or ds.date >= start) and (end is None or ds.date <= end)
        ]

    async def update(self, dataset: Dataset, *, expected_version: int) -> Dataset:
        async with self._lock:
            stored = self._load(dataset.workspace, dataset.name)
            if stored.version != expected_version:
                msg = (
                    f"Dataset {dataset.workspace}/{dataset.name} changed concurrently "
                    f"(expected version {expected_version}, found {stored.version})"
                )
                raise LockedConflictError(msg)
            updated = _bump(dataset, expected_version + 1)
            self._dump(updated)
        return updated

    async def add_cell(self, workspace: str, name: str, cell: GeorefBox) -> Dataset:
        async with self._lock:
            stored = self._load(workspace, name)
            updated = _bump(stored.with_cell(cell), stored.version + 1)
            self._dump(updated)
        return updated

    async def remove_cell(self, workspace: str, name: str, cell: GeorefBox) -> Dataset:
        async with self._lock:
            stored = self._load(workspace, name)
            updated = _bump(stored.without_cell(cell), stored.version + 1)
            self._dump(updated)
        return updated


class InMemoryGridCellStore(GridCellStore):
    def __init__(self) -> None:
        self._docs: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(workspace: str, box: GeorefBox) -> tuple[str, str, str]:
        return (workspace, box.zone, box.identifier)

    async def get(self, workspace: str, box: GeorefBox) -> GridCell:
        doc = self._docs.get(self._key(workspace, box))
        if doc is None:
            raise NotFoundError("grid cell", f"{workspace}/{box.zone}/{box.identifier}")
        return GridCellDocument.model_validate(doc).to_domain()

    async def register(self, workspace: str, box: GeorefBox, dataset: str) -> GridCell:
        key = self._key(workspace, box)
        async with self._lock:
            doc = self._docs.get(key)
            cell = GridCellDocument.model_validate(doc).to_domain() if doc else GridCell(workspace, box)
            cell = GridCell(workspace, cell.box, cell.datasets | {dataset})
            self._docs[key] = GridCellDocument.from_domain(cell).model_dump(mode="json")
        return cell

    async def unregister(self, workspace: str, box: GeorefBox, dataset: str) -> GridCell | None:
        key = self._key(workspace, box)
        async with self._lock:
            doc = self._docs.get(key)
            if doc is None:
                return None
            current = GridCellDocument.model_validate(doc).to_domain()
            cell = GridCell(workspace, current.box, current.datasets - {dataset})
            self._docs[key] = GridCellDocument.from_domain(cell).model_dump(mode="json")
        return cell

    async def find_overlapping(self, workspace: str, box: GeorefBox) -> list[GridCell]:
        cells = [
            GridCellDocument.model_validate(doc).to_domain()
            for (ws, zone, _), doc in self._docs.items()
            if ws == workspace and zone == box.zone
        ]
        return [cell for cell in cells if cell.box.overlaps(box)]


class InMemoryDatablockStore(DatablockStore):
    def __init__(self) -> None:
        self._docs: dict[tuple[str, str, str, str, int], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, workspace: str, dataset: str, block: Datablock) -> None:
        key = (workspace, dataset, block.zone, block.cell.identifier, block.node_id)
        doc = DatablockDocument.from_domain(workspace, dataset, block).model_dump(mode="json")
        async with self._lock:
            self._docs[key] = doc

    async def exists(self, workspace: str, dataset: str, node_id: int, cell: GeorefBox) -> bool:
        return (workspace, dataset, cell.zone, cell.identifier, node_id) in self._docs

    async def get(self, workspace: str, dataset: str, node_id: int, cell: GeorefBox) -> Datablock:
        doc = self._docs.get((workspace, dataset, cell.zone, cell.identifier, node_id))
        if doc is None:
            raise NotFoundError("datablock", f"{workspace}/{dataset}/{cell.identifier}/{node_id}")
        return DatablockDocument.model_validate(doc).to_domain()

    async def find(self, workspace: str, dataset: str, node_id: int) -> list[Datablock]:
        return [
            DatablockDocument.model_validate(doc).to_domain()
            for (ws, ds, _, _, node), doc in self._docs.items()
            if ws == workspace and ds == dataset and node == node_id
        ]

    async def list_all(self, workspace: str, dataset: str) -> list[Datablock]:
        return [
            DatablockDocument.model_validate(doc).to_domain()
            for (ws, ds, *_), doc in self._docs.items()
            if ws == workspace and ds == dataset
        ]


class InMemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def store(self, blob_id: str, data: bytes) -> None:
        self._blobs[blob_id] = bytes(data)
        logger.debug("Blob stored | blob=%s | size=%d", blob_id, len(data))

    async def retrieve(self, blob_id: str) -> bytes:
        try:
            return self._blobs[blob_id]
        except KeyError:
            raise NotFoundError("blob", blob_id) from None


def memory_stores(blobs: BlobStore | None = None) -> Stores:
    """Return a fresh set of in-memory stores.

    Args:
        blobs: Blob backend to use instead of ``InMemoryBlobStore``
            (e.g. ``AzureBlobStore`` with in-process metadata).
    """
    return Stores(
        workspaces=InMemoryWorkspaceStore(),
        datasets=InMemoryDatasetStore(),
        grid_cells=InMemoryGridCellStore(),
        datablocks=InMemoryDatablockStore(),
        blobs=blobs or InMemoryBlobStore(),
    )


def _bump(dataset: Dataset, version: int) -> Dataset:
    return replace(dataset, version=version)
