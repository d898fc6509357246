"""Zone files activity — group uploaded point clouds by UTM zone.

Uploaded files are moved into the dataset's scratch folder, their zone
is detected by the engine, and each zone's files are merged into one
artifact.  The per-file copies are deleted once merged, so after this
step the scratch folder holds exactly one ``{zone}_merged`` file per zone.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections import defaultdict
from typing import TYPE_CHECKING

from lidar_index.core.constants import TAG_BASE, TAG_MERGED
from lidar_index.core.exceptions import PipelineError
from lidar_index.core.workdir import remove_quietly
from lidar_index.utils.tasks import gather_or_cancel

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from lidar_index.engine.base import PointCloudEngine

logger = logging.getLogger("lidar_index.activities.zone_files")


class ZoningError(PipelineError):
    """Raised when uploaded files cannot be staged."""

    default_stage = "zone_files"
    default_code = "ZONING_FAILED"


async def stage_uploads(files: Sequence[Path], dataset_dir: Path, *, extension: str) -> list[Path]:
    """Move uploaded files into *dataset_dir* as ``u{i}_base{ext}``.

    The pipeline owns the files from here on; the originals are gone.

    Raises:
        ZoningError: If a file is missing or cannot be moved.
    """
    dataset_dir.mkdir(parents=True, exist_ok=True)
    staged: list[Path] = []
    for index, source in enumerate(files):
        target = dataset_dir / f"u{index}_{TAG_BASE}{extension}"
        try:
            await asyncio.to_thread(shutil.move, source, target)
        except OSError as exc:
            msg = f"Cannot stage uploaded file {source}: {exc}"
            raise ZoningError(msg) from exc
        staged.append(target)
    return staged


async def group_by_zone(engine: PointCloudEngine, files: Sequence[Path]) -> dict[str, list[Path]]:
    """Detect the zone of every file concurrently and group by zone code."""
    zones: list[str] = await gather_or_cancel(*(engine.detect_zone(f) for f in files))
    groups: dict[str, list[Path]] = defaultdict(list)
    for path, zone in zip(files, zones, strict=True):
        groups[zone].append(path)
    logger.info(
        "Files grouped by zone | files=%d | zones=%s",
        len(files),
        ",".join(sorted(groups)),
    )
    return dict(groups)


async def merge_zone_groups(
    engine: PointCloudEngine,
    groups: dict[str, list[Path]],
    dataset_dir: Path,
    *,
    extension: str,
) -> dict[str, Path]:
    """Merge every zone group into ``{zone}_merged{ext}`` and delete the inputs."""

    async def merge(zone: str, paths: list[Path]) -> Path:
        merged = await engine.merge_files(paths, dataset_dir / f"{zone}_{TAG_MERGED}{extension}")
        for path in paths:
            remove_quietly(path)
        return merged

    zones = sorted(groups)
    merged_files: list[Path] = await gather_or_cancel(*(merge(z, groups[z]) for z in zones))
    return dict(zip(zones, merged_files, strict=True))
