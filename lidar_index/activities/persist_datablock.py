"""Persist datablock activity — finalize a node and store it.

Each emitted octree node is finalized once by the engine and the bytes
are then written to every target dataset: the artifact to the blob
store under a deterministic path, and the node metadata (with the blob
reference) to the datablock store.  Writes use overwrite semantics, so
persisting the same node twice leaves one copy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from lidar_index.core.exceptions import PipelineError
from lidar_index.core.workdir import remove_quietly
from lidar_index.utils.blob_paths import build_datablock_blob_path

if TYPE_CHECKING:
    from lidar_index.engine.base import PointCloudEngine
    from lidar_index.models.datablock import Datablock
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.activities.persist_datablock")


class DatablockWriteError(PipelineError):
    """Raised when a datablock artifact cannot be read or written."""

    default_stage = "persist_datablock"
    default_code = "DATABLOCK_WRITE_FAILED"


async def finalize_datablock(engine: PointCloudEngine, block: Datablock) -> bytes:
    """Finalize *block*'s artifact and return the storage-ready bytes.

    Working files of the block are deleted afterwards.

    Raises:
        DatablockWriteError: If the block has no artifact or it cannot be read.
        ToolFailureError: If the engine fails to finalize.
    """
    if block.artifact_file is None:
        msg = f"Datablock {block.node_id} of cell {block.cell.identifier} has no artifact"
        raise DatablockWriteError(msg)

    optimized = await engine.finalize(block.artifact_file, node_id=block.node_id)
    try:
        return await asyncio.to_thread(optimized.read_bytes)
    except OSError as exc:
        msg = f"Cannot read finalized artifact {optimized}: {exc}"
        raise DatablockWriteError(msg) from exc
    finally:
        remove_quietly(optimized)
        remove_quietly(block.artifact_file)


async def persist_datablock(
    stores: Stores,
    block: Datablock,
    data: bytes,
    *,
    workspace: str,
    dataset: str,
    extension: str,
) -> Datablock:
    """Write *data* to the blob store and record *block* against *dataset*.

    Returns:
        The stored datablock, carrying its ``blob_id``.
    """
    blob_id = build_datablock_blob_path(
        workspace,
        dataset,
        block.zone,
        block.cell.identifier,
        block.node_id,
        extension=extension,
    )
    await stores.blobs.store(blob_id, data)

    stored = replace(
        block,
        children=list(block.children),
        blob_id=blob_id,
        working_file=None,
        artifact_file=None,
    )
    await stores.datablocks.save(workspace, dataset, stored)
    logger.debug(
        "Datablock persisted | dataset=%s | cell=%s | node=%d | blob=%s | size=%d",
        dataset,
        block.cell.identifier,
        block.node_id,
        blob_id,
        len(data),
    )
    return stored
