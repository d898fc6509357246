"""Query engine: node lookup, region queries and artifact retrieval.

Region queries walk each overlapping root cell's tree with overlap
pruning.  A child's box is derived from its parent's box and its octant
index (``id - parent * 8 - 1``), so a child that does not overlap the
query is never fetched::

    result(node) = {node} ∪ ⋃ result(child)   for child overlapping the query

Selected roots are always included, whether or not any child overlaps.

Merged retrieval downloads the matching artifacts into a request-scoped
directory, merges them with the engine and streams the merged file in
chunks.  The directory is removed when the stream is exhausted, closed
or fails.  Queries never write to the stores.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from lidar_index.core.exceptions import NotFoundError
from lidar_index.core.workdir import request_directory
from lidar_index.models.datablock import ROOT_ID, Datablock
from lidar_index.utils.tasks import gather_or_cancel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from lidar_index.core.config import IndexConfig
    from lidar_index.engine.base import PointCloudEngine
    from lidar_index.models.geometry import GeorefBox
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.services.query")

#: Bytes per chunk when streaming merged artifacts.
DEFAULT_CHUNK_SIZE = 1024 * 1024


class QueryEngine:
    """Read-side operations over persisted octrees."""

    def __init__(self, config: IndexConfig, engine: PointCloudEngine, stores: Stores) -> None:
        self._config = config
        self._engine = engine
        self._stores = stores

    # ------------------------------------------------------------------
    # Direct lookup
    # ------------------------------------------------------------------

    async def get_datablocks(
        self,
        workspace: str,
        dataset: str,
        node_id: int,
        cell: GeorefBox | None = None,
    ) -> list[Datablock]:
        """Return node *node_id* of one cell, or of every cell if *cell* is ``None``.

        Raises:
            NotFoundError: If the dataset or the node does not exist.
        """
        await self._stores.datasets.get(workspace, dataset)
        if cell is not None:
            return [await self._stores.datablocks.get(workspace, dataset, node_id, cell)]
        blocks = await self._stores.datablocks.find(workspace, dataset, node_id)
        if not blocks:
            raise NotFoundError("datablock", f"{workspace}/{dataset}/{node_id}")
        return sorted(blocks, key=lambda b: (b.zone, b.cell.identifier))

    async def get_datablock_data(
        self,
        workspace: str,
        dataset: str,
        node_id: int,
        cell: GeorefBox,
    ) -> bytes:
        """Return the stored artifact of one node."""
        (block,) = await self.get_datablocks(workspace, dataset, node_id, cell)
        return await self._stores.blobs.retrieve(block.blob_id)

    # ------------------------------------------------------------------
    # Region queries
    # ------------------------------------------------------------------

    async def region(self, workspace: str, dataset: str, box: GeorefBox) -> list[Datablock]:
        """Return every node reachable by overlap-pruned descent.

        Mixed-zone boxes cannot be built (``GeorefBox`` raises
        ``ZoneMismatchError``), so every query box lies in one zone.

        Raises:
            NotFoundError: If the dataset or a selected root is missing.
        """
        ds = await self._stores.datasets.get(workspace, dataset)
        roots = [cell for cell in ds.cells_in_zone(box.zone) if cell.overlaps(box)]

        async def from_root(cell: GeorefBox) -> list[Datablock]:
            root = await self._stores.datablocks.get(workspace, dataset, ROOT_ID, cell)
            return await self._descend(workspace, dataset, root, box)

        per_root: list[list[Datablock]] = await gather_or_cancel(*(from_root(c) for c in roots))
        nodes = [node for nodes in per_root for node in nodes]
        logger.info(
            "Region query | workspace=%s | dataset=%s | box=%s | roots=%d | nodes=%d",
            workspace,
            dataset,
            box.identifier,
            len(roots),
            len(nodes),
        )
        return nodes

    async def _descend(
        self,
        workspace: str,
        dataset: str,
        node: Datablock,
        box: GeorefBox,
    ) -> list[Datablock]:
        overlapping = [
            child
            for child in node.children
            if node.box.octant(child - node.node_id * 8 - 1).overlaps(box)
        ]

        async def visit(child: int) -> list[Datablock]:
            block = await self._stores.datablocks.get(workspace, dataset, child, node.cell)
            return await self._descend(workspace, dataset, block, box)

        below: list[list[Datablock]] = await gather_or_cancel(*(visit(c) for c in overlapping))
        return [node, *(n for nodes in below for n in nodes)]

    async def region_files(
        self,
        workspace: str,
        dataset: str,
        box: GeorefBox,
    ) -> AsyncIterator[tuple[Datablock, bytes]]:
        """Yield ``(node, artifact bytes)`` for every node of a region query."""
        for block in await self.region(workspace, dataset, box):
            yield block, await self._stores.blobs.retrieve(block.blob_id)

    async def region_merged(
        self,
        workspace: str,
        dataset: str,
        box: GeorefBox,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """Stream the merge of every artifact a region query selects.

        Raises:
            NotFoundError: If the region selects no node.
        """
        blocks = await self.region(workspace, dataset, box)
        async for chunk in self._merged(workspace, dataset, blocks, chunk_size):
            yield chunk

    async def dataset_merged(
        self,
        workspace: str,
        dataset: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """Stream the merge of every artifact stored for *dataset*."""
        await self._stores.datasets.get(workspace, dataset)
        blocks = await self._stores.datablocks.list_all(workspace, dataset)
        async for chunk in self._merged(workspace, dataset, blocks, chunk_size):
            yield chunk

    async def _merged(
        self,
        workspace: str,
        dataset: str,
        blocks: Sequence[Datablock],
        chunk_size: int,
    ) -> AsyncIterator[bytes]:
        if not blocks:
            raise NotFoundError("datablock", f"{workspace}/{dataset} (no data to merge)")

        extension = self._config.file_extension
        async with request_directory(self._config.merge_dir, workspace, dataset) as tmp:
            paths = []
            for index, block in enumerate(blocks):
                data = await self._stores.blobs.retrieve(block.blob_id)
                path = tmp / f"{index}_{block.node_id}{extension}"
                await asyncio.to_thread(path.write_bytes, data)
                paths.append(path)

            merged = await self._engine.merge_files(paths, tmp / f"merged{extension}")
            logger.info(
                "Merged artifact ready | workspace=%s | dataset=%s | blocks=%d",
                workspace,
                dataset,
                len(paths),
            )
            handle = await asyncio.to_thread(merged.open, "rb")
            try:
                while chunk := await asyncio.to_thread(handle.read, chunk_size):
                    yield chunk
            finally:
                await asyncio.to_thread(handle.close)
