"""PointCloudEngine abstract base class.

Defines every point-cloud transformation the indexer needs.  The
builder, the orchestrator and the query engine only talk to this
interface; the binary LAS/LAZ format stays opaque to them.

Capabilities:
    ``detect_zone``        — UTM zone code of a file.
    ``get_bounding_box``   — tight 3D box of a file's points.
    ``get_point_count``    — number of points in a file.
    ``reduce``             — split a file into a reduced part and a remainder.
    ``extract_region``     — points of a file inside a box, or explicitly empty.
    ``merge_files``        — concatenate several files into one.
    ``convert_to_block``   — copy a working file into block format as-is.
    ``finalize``           — optimize a block for storage and retrieval.

Every capability is a coroutine and fails with ``ToolFailureError``.
An extraction that ran cleanly but selected no points is *not* a
failure: it returns an empty ``ExtractResult``.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lidar_index.core.constants import TAG_BASE
from lidar_index.core.exceptions import PermanentError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from lidar_index.core.config import IndexConfig
    from lidar_index.models.geometry import GeorefBox


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReduceResult:
    """Outcome of ``reduce``.

    Attributes:
        reduced: Artifact with the points kept for the node.
        remainder: Artifact with every other point, or ``None`` when all
            points fit into the node.
        point_count: Points in ``reduced``.
    """

    reduced: Path
    remainder: Path | None
    point_count: int


@dataclass(frozen=True, slots=True)
class ExtractResult:
    """Outcome of ``extract_region``.

    ``path is None`` means the tool succeeded and the region is empty.
    """

    path: Path | None = None
    point_count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.path is None

    @classmethod
    def empty(cls) -> ExtractResult:
        return cls()

    @classmethod
    def of(cls, path: Path, point_count: int) -> ExtractResult:
        return cls(path=path, point_count=point_count)


# ---------------------------------------------------------------------------
# Engine contract
# ---------------------------------------------------------------------------


class PointCloudEngine(abc.ABC):
    """Abstract base class for point-cloud engines.

    The constructor receives the ``IndexConfig`` which carries tool
    locations and the artifact extension.  Output files are written next
    to their input (or into ``output_dir``) and named from the node id,
    so concurrent siblings never write the same path.

    Example usage::

        engine = get_engine("lastools", config)
        zone = await engine.detect_zone(path)
        result = await engine.extract_region(merged, cell_box, 0, output_dir=cell_dir)
    """

    def __init__(self, config: IndexConfig) -> None:
        self._config = config

    @property
    def config(self) -> IndexConfig:
        """Return the engine configuration (read-only)."""
        return self._config

    def file_name(self, node_id: int, tag: str) -> str:
        """Return the working file name for *node_id* with file *tag*."""
        return f"n{node_id}_{tag}{self._config.file_extension}"

    # ------------------------------------------------------------------
    # Abstract methods — every engine must implement these
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def detect_zone(self, file: Path) -> str:
        """Return the UTM zone code (e.g. ``"30S"``) of *file*.

        Raises:
            ToolFailureError: If the file cannot be read or carries no
                UTM reference (code ``NO_UTM_ZONE``).
        """

    @abc.abstractmethod
    async def get_bounding_box(self, file: Path, zone: str | None = None) -> GeorefBox:
        """Return the tight bounding box of *file*.

        Args:
            file: Point-cloud file.
            zone: Zone of the file if already known; detected otherwise.
        """

    @abc.abstractmethod
    async def get_point_count(self, file: Path) -> int:
        """Return the number of points stored in *file*."""

    @abc.abstractmethod
    async def reduce(self, file: Path, target: int, *, node_id: int) -> ReduceResult:
        """Keep at most *target* points of *file* for node *node_id*.

        Args:
            file: Working artifact of the node.
            target: Maximum points the reduced artifact may hold.
            node_id: Node the outputs are named after.

        Returns:
            ``ReduceResult`` with the reduced artifact and the remainder
            (``None`` when every point fits).
        """

    @abc.abstractmethod
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
        """Extract the points of *file* lying inside *box*.

        Each axis is taken as ``[min, max)`` so that boxes sharing a face
        split the points between them; an axis flagged in *closed*
        (easting, northing, height) is ``[min, max]`` instead.  Callers
        only close a face that no point of *file* lies beyond.  With
        *planar* the heights are ignored, which is how grid-cell root
        files are cut.

        Returns:
            ``ExtractResult.of(path, count)`` when points were found and
            ``ExtractResult.empty()`` when the region holds none.

        Raises:
            ToolFailureError: If the tool itself failed.  Emptiness is
                never inferred from a failure.
        """

    @abc.abstractmethod
    async def merge_files(self, files: Sequence[Path], output: Path) -> Path:
        """Merge *files* into *output* and return it."""

    @abc.abstractmethod
    async def convert_to_block(self, file: Path, *, node_id: int) -> Path:
        """Copy *file* unreduced into the block artifact of *node_id*."""

    @abc.abstractmethod
    async def finalize(self, file: Path, *, node_id: int) -> Path:
        """Produce the storage-ready (optimized) artifact of a block."""


# ---------------------------------------------------------------------------
# Engine exceptions
# ---------------------------------------------------------------------------


class ToolFailureError(PermanentError):
    """A point-cloud tool exited non-zero or hit an I/O error.

    Attributes:
        tool: Name of the tool or capability that failed.
        exit_code: Process exit code, if a process ran.
        stderr: Captured diagnostic output (truncated).
    """

    default_stage = "engine"
    default_code = "TOOL_FAILURE"

    def __init__(
        self,
        tool: str,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "",
    ) -> None:
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr[-2000:]
        super().__init__(message, code=code)

    def __str__(self) -> str:
        return f"[{self.tool}] {self.message}"
