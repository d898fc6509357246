"""Scratch and request-scoped working directories.

Every build owns one scratch folder per dataset and every merged query
owns one request folder.  Both are exclusively owned by their operation
and must be removed on every exit path, so the helpers here are the
only place directories are created or purged.

Layout::

    {scratch_dir}/{workspace}_{dataset}/                  build scratch
    {scratch_dir}/{workspace}_{dataset}/{zone}/{cell-id}  per-cell tree files
    {merge_dir}/{workspace}_{dataset}_{uuid}/             one merged query
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import uuid
from typing import TYPE_CHECKING

from lidar_index.utils.blob_paths import dataset_folder_name

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger("lidar_index.core.workdir")


def dataset_scratch_dir(scratch_root: Path, workspace: str, dataset: str) -> Path:
    """Return the scratch folder owned by one dataset build."""
    return scratch_root / dataset_folder_name(workspace, dataset)


def cell_scratch_dir(dataset_dir: Path, zone: str, cell_identifier: str) -> Path:
    """Create (if needed) and return the working folder for one grid cell.

    Each cell gets its own folder so node file names, which are derived
    from node ids alone, never collide between trees.
    """
    path = dataset_dir / zone / cell_identifier
    path.mkdir(parents=True, exist_ok=True)
    return path


async def clean_directory(path: Path) -> None:
    """Recursively delete *path*; a missing directory is not an error."""
    if not path.exists():
        return
    await asyncio.to_thread(shutil.rmtree, path)
    logger.debug("Directory purged | path=%s", path)


def remove_quietly(path: Path | None) -> None:
    """Delete a single working file if it is still present."""
    if path is not None:
        path.unlink(missing_ok=True)


@contextlib.asynccontextmanager
async def request_directory(merge_root: Path, workspace: str, dataset: str) -> AsyncIterator[Path]:
    """Yield a fresh directory for one merge request and always remove it.

    Args:
        merge_root: Configured ``merge_dir``.
        workspace: Workspace name (used for the folder prefix).
        dataset: Dataset name (used for the folder prefix).

    Yields:
        Path of an empty, newly created directory.
    """
    path = merge_root / f"{dataset_folder_name(workspace, dataset)}_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        await clean_directory(path)
