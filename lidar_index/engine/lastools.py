"""LAStools engine adapter.

Runs the LAStools command-line programs as asynchronous subprocesses:

- ``las2las``      — copy, thin (``-keep_every_nth``/``-drop_every_nth``)
                     and clip (``-keep_xy``/``-keep_xyz``).
- ``lasmerge``     — merge several files into one.
- ``lasoptimize``  — final storage optimization of a block.
- ``lasinfo``      — textual report, used as a zone-detection fallback.

Header reads (point count, bounds, CRS) go through ``laspy`` instead of
spawning ``lasinfo``, and ``pyproj`` turns the CRS plus the file's
centre into a zone code with a latitude band letter (``"30S"``).

Tools are resolved from ``IndexConfig.lastools_bin_dir`` (or ``PATH``)
and optionally prefixed with ``IndexConfig.lastools_launcher``, which
allows the Windows builds to run under ``wine``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import laspy
import numpy as np
from laspy.errors import LaspyException
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError

from lidar_index.core.constants import (
    TAG_BASE,
    TAG_BLOCK_READY,
    TAG_OPTIMIZED,
    TAG_PARTITION_READY,
)
from lidar_index.engine.base import (
    ExtractResult,
    PointCloudEngine,
    ReduceResult,
    ToolFailureError,
)
from lidar_index.models.geometry import GeorefBox

if TYPE_CHECKING:
    from collections.abc import Sequence

    from lidar_index.core.config import IndexConfig

logger = logging.getLogger("lidar_index.engine.lastools")

#: Latitude band letters from 80°S northwards, 8° each (X spans 72-84°N).
_LATITUDE_BANDS = "CDEFGHJKLMNPQRSTUVWXX"

# ``lasinfo`` reports e.g. "PCS_WGS84_UTM_zone_30N" or "UTM zone 30 (south)".
_REPORT_ZONE_RE = re.compile(r"UTM[_ ]zone[_ ]?(\d{1,2})\s*([NS])?", re.IGNORECASE)
_REPORT_SOUTH_RE = re.compile(r"south", re.IGNORECASE)

#: EPSG code bases of the WGS 84 / UTM zone CRSs (zone number is added).
_WGS84_UTM_NORTH = 32600
_WGS84_UTM_SOUTH = 32700

# ``-keep_xy``/``-keep_xyz`` keep [min, max); closed max faces are pushed
# out by this many metres so points lying on them are kept.  Callers only
# close a face that no point of the input lies beyond.
_CLOSED_MARGIN = 1.0


@dataclass(frozen=True, slots=True)
class _HeaderInfo:
    point_count: int
    mins: tuple[float, float, float]
    maxs: tuple[float, float, float]
    crs: CRS | None

    @property
    def centre(self) -> tuple[float, float]:
        return ((self.mins[0] + self.maxs[0]) / 2, (self.mins[1] + self.maxs[1]) / 2)


def _read_header(file: Path) -> _HeaderInfo:
    """Read the LAS/LAZ header of *file* (blocking)."""
    with laspy.open(file) as reader:
        header = reader.header
        try:
            crs = header.parse_crs()
        except (CRSError, ValueError) as exc:
            logger.debug("Unparseable CRS in header | file=%s | error=%s", file, exc)
            crs = None
        return _HeaderInfo(
            point_count=int(header.point_count),
            mins=tuple(np.asarray(header.mins, dtype=np.float64).tolist()),  # type: ignore[arg-type]
            maxs=tuple(np.asarray(header.maxs, dtype=np.float64).tolist()),  # type: ignore[arg-type]
            crs=crs,
        )


def latitude_band(latitude: float) -> str:
    """Return the UTM latitude band letter for *latitude* in degrees."""
    index = int((min(max(latitude, -80.0), 84.0) + 80.0) // 8)
    return _LATITUDE_BANDS[min(index, len(_LATITUDE_BANDS) - 1)]


def zone_from_report(report: str) -> CRS | None:
    """Build a UTM CRS from a ``lasinfo`` report, or ``None`` if absent."""
    for line in report.splitlines():
        if "UTM" not in line.upper():
            continue
        match = _REPORT_ZONE_RE.search(line)
        if match is None or not 1 <= int(match.group(1)) <= 60:
            continue
        south = match.group(2).upper() == "S" if match.group(2) else bool(_REPORT_SOUTH_RE.search(line))
        return CRS.from_epsg((_WGS84_UTM_SOUTH if south else _WGS84_UTM_NORTH) + int(match.group(1)))
    return None


def zone_code(crs: CRS, centre: tuple[float, float]) -> str | None:
    """Return the ``NNL`` zone code of a projected UTM *crs* at *centre*."""
    utm = crs.utm_zone
    if not utm:
        return None
    number = int(utm[:-1])
    to_geographic = Transformer.from_crs(crs, "EPSG:4326", always_xy=True)
    _, latitude = to_geographic.transform(*centre)
    return f"{number:02d}{latitude_band(latitude)}"


class LasToolsEngine(PointCloudEngine):
    """``PointCloudEngine`` backed by the LAStools command-line programs."""

    def __init__(self, config: IndexConfig) -> None:
        super().__init__(config)
        self._launcher = shlex.split(config.lastools_launcher)
        self._bin_dir = Path(config.lastools_bin_dir) if config.lastools_bin_dir else None

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _command(self, tool: str, *args: str) -> list[str]:
        executable = str(self._bin_dir / tool) if self._bin_dir else tool
        return [*self._launcher, executable, *args]

    async def _run(self, tool: str, *args: str) -> str:
        """Run *tool* and return its combined output.

        Raises:
            ToolFailureError: On spawn errors or a non-zero exit code.
        """
        command = self._command(tool, *args)
        logger.debug("Running tool | cmd=%s", shlex.join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as exc:
            msg = f"Could not run {tool}: {exc}"
            raise ToolFailureError(tool, msg) from exc

        err_text = stderr.decode(errors="replace")
        if process.returncode != 0:
            logger.error(
                "Tool failed | tool=%s | exit_code=%s | stderr=%s",
                tool,
                process.returncode,
                err_text.strip()[-500:],
            )
            msg = f"{tool} exited with code {process.returncode}"
            raise ToolFailureError(tool, msg, exit_code=process.returncode, stderr=err_text)
        return stdout.decode(errors="replace") + err_text

    async def _header(self, file: Path) -> _HeaderInfo:
        try:
            return await asyncio.to_thread(_read_header, file)
        except (OSError, LaspyException) as exc:
            msg = f"Cannot read point-cloud header of {file}: {exc}"
            raise ToolFailureError("laspy", msg) from exc

    def _output(self, directory: Path, node_id: int, tag: str) -> Path:
        return directory / self.file_name(node_id, tag)

    # ------------------------------------------------------------------
    # PointCloudEngine
    # ------------------------------------------------------------------

    async def detect_zone(self, file: Path) -> str:
        header = await self._header(file)
        crs = header.crs
        if crs is None or not crs.utm_zone:
            report = await self._run("lasinfo", "-i", str(file), "-nc")
            crs = zone_from_report(report)
        code = zone_code(crs, header.centre) if crs is not None else None
        if code is None:
            msg = f"No UTM zone found in {file.name}"
            raise ToolFailureError("lasinfo", msg, code="NO_UTM_ZONE")
        return code

    async def get_bounding_box(self, file: Path, zone: str | None = None) -> GeorefBox:
        header = await self._header(file)
        return GeorefBox.from_bounds(zone or await self.detect_zone(file), header.mins, header.maxs)

    async def get_point_count(self, file: Path) -> int:
        return (await self._header(file)).point_count

    async def reduce(self, file: Path, target: int, *, node_id: int) -> ReduceResult:
        total = await self.get_point_count(file)
        step = max(1, math.ceil(total / max(target, 1)))
        reduced = self._output(file.parent, node_id, TAG_BLOCK_READY)

        if step == 1:
            await self._run("las2las", "-i", str(file), "-o", str(reduced))
            return ReduceResult(reduced=reduced, remainder=None, point_count=total)

        remainder = self._output(file.parent, node_id, TAG_PARTITION_READY)
        await self._run("las2las", "-i", str(file), "-keep_every_nth", str(step), "-o", str(reduced))
        await self._run("las2las", "-i", str(file), "-drop_every_nth", str(step), "-o", str(remainder))
        kept = await self.get_point_count(reduced)
        logger.debug(
            "Reduced working file | node=%d | total=%d | step=%d | kept=%d",
            node_id,
            total,
            step,
            kept,
        )
        return ReduceResult(reduced=reduced, remainder=remainder, point_count=kept)

    async def extract_region(
        self,
        file: Path,
        box: GeorefBox,
        node_id: int,
        *,
        closed: tuple[bool, bool, bool] = (False, False, False),
        planar: bool = False,
        output_dir: Path | None = None,
        tag: str = TAG_BASE,
    ) -> ExtractResult:
        output = self._output(output_dir or file.parent, node_id, tag)
        maxs = [hi + _CLOSED_MARGIN if shut else hi for hi, shut in zip(box.maxs, closed, strict=True)]
        if planar:
            bounds = [f"{v:.6f}" for v in (*box.mins[:2], *maxs[:2])]
            await self._run("las2las", "-i", str(file), "-keep_xy", *bounds, "-o", str(output))
        else:
            bounds = [f"{v:.6f}" for v in (*box.mins, *maxs)]
            await self._run("las2las", "-i", str(file), "-keep_xyz", *bounds, "-o", str(output))

        if not output.exists():
            return ExtractResult.empty()
        count = await self.get_point_count(output)
        if count == 0:
            output.unlink(missing_ok=True)
            return ExtractResult.empty()
        return ExtractResult.of(output, count)

    async def merge_files(self, files: Sequence[Path], output: Path) -> Path:
        if not files:
            msg = "Nothing to merge"
            raise ToolFailureError("lasmerge", msg)
        await self._run("lasmerge", "-i", *(str(f) for f in files), "-o", str(output))
        if not output.exists():
            msg = f"lasmerge produced no output at {output}"
            raise ToolFailureError("lasmerge", msg)
        return output

    async def convert_to_block(self, file: Path, *, node_id: int) -> Path:
        output = self._output(file.parent, node_id, TAG_BLOCK_READY)
        await self._run("las2las", "-i", str(file), "-o", str(output))
        return output

    async def finalize(self, file: Path, *, node_id: int) -> Path:
        output = self._output(file.parent, node_id, TAG_OPTIMIZED)
        await self._run("lasoptimize", "-i", str(file), "-o", str(output))
        return output
