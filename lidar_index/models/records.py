"""Registry records: workspaces, datasets and grid cells.

- ``Workspace``: a named namespace with a fixed grid cell size.
- ``Dataset``: one acquisition within a workspace, with its lifecycle
  ``DatasetState`` and the zone → root cell mapping filled in by builds.
- ``GridCell``: one fixed-size tile of a zone and the datasets with
  points in it.

Design notes:
- All records are frozen dataclasses; mutations go through
  ``dataclasses.replace`` helpers so a stored record is never changed
  behind a store's back.
- Datasets carry an integer ``version`` bumped on every update, which
  the stores use for optimistic (compare-and-set) state transitions.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from lidar_index.core.constants import (
    DEFAULT_DATASET_FORMAT,
    MAX_CELL_SIZE,
    MIN_CELL_SIZE,
    MIN_DATA_BLOCK_SIZE,
)
from lidar_index.core.exceptions import PipelineError

if TYPE_CHECKING:
    from datetime import datetime

    from lidar_index.models.geometry import GeorefBox


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ModelValidationError(ValueError, PipelineError):
    """Raised when a record is constructed with invalid field values.

    Attributes:
        model: Name of the model class that failed validation.
        field_name: The field that violated the invariant.
        value: The invalid value.
    """

    default_stage = "model_validation"
    default_code = "MODEL_VALIDATION_FAILED"

    def __init__(self, model: str, field_name: str, value: object, message: str) -> None:
        self.model = model
        self.field_name = field_name
        self.value = value
        formatted = f"{model}.{field_name}={value!r}: {message}"
        PipelineError.__init__(self, formatted)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DatasetState(enum.Enum):
    """Lifecycle state of a dataset.

    Values:
        NO_DATA:            Created, nothing indexed yet.
        BUILDING:           An add-data build is running.
        DATA_ASSOCIATED:    The build completed and every node is stored.
        ERROR_ON_INSERTION: The build failed; the dataset keeps whatever
                            was written before the failure.
    """

    NO_DATA = "NO_DATA"
    BUILDING = "BUILDING"
    DATA_ASSOCIATED = "DATA_ASSOCIATED"
    ERROR_ON_INSERTION = "ERROR_ON_INSERTION"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Workspace:
    """A namespace for datasets sharing one grid cell size.

    Attributes:
        name: Unique workspace name.
        description: Free text.
        cell_size: Edge length of every grid cell, in metres.
    """

    name: str
    description: str = ""
    cell_size: int = 1000

    def __post_init__(self) -> None:
        _check_non_empty("Workspace", "name", self.name)
        _check_range("Workspace", "cell_size", self.cell_size, MIN_CELL_SIZE, MAX_CELL_SIZE)


@dataclass(frozen=True, slots=True)
class Dataset:
    """One point-cloud acquisition registered in a workspace.

    Attributes:
        workspace: Owning workspace name.
        name: Dataset name, unique within the workspace.
        date: Acquisition timestamp.
        description: Free text.
        bbox: Declared overall bounding box, if known.
        data_block_size: Target points per datablock.
        format: Output format tag (``"LAZ"`` by default).
        cells: UTM zone → root grid-cell boxes holding points.
        state: Lifecycle state.
        version: Optimistic concurrency counter.
    """

    workspace: str
    name: str
    date: datetime
    description: str = ""
    bbox: GeorefBox | None = None
    data_block_size: int = 10_000
    format: str = DEFAULT_DATASET_FORMAT
    cells: dict[str, tuple[GeorefBox, ...]] = field(default_factory=dict)
    state: DatasetState = DatasetState.NO_DATA
    version: int = 0

    def __post_init__(self) -> None:
        _check_non_empty("Dataset", "workspace", self.workspace)
        _check_non_empty("Dataset", "name", self.name)
        _check_min("Dataset", "data_block_size", self.data_block_size, MIN_DATA_BLOCK_SIZE)
        _check_non_empty("Dataset", "format", self.format)

    def cells_in_zone(self, zone: str) -> tuple[GeorefBox, ...]:
        return self.cells.get(zone, ())

    def with_state(self, state: DatasetState) -> Dataset:
        return replace(self, state=state)

    def with_cell(self, cell: GeorefBox) -> Dataset:
        """Return a copy with *cell* registered under its zone (idempotent)."""
        current = self.cells_in_zone(cell.zone)
        if any(c.identifier == cell.identifier for c in current):
            return self
        cells = dict(self.cells)
        cells[cell.zone] = (*current, cell)
        return replace(self, cells=cells)

    def without_cell(self, cell: GeorefBox) -> Dataset:
        """Return a copy with *cell* removed; empty zones are dropped."""
        remaining = tuple(c for c in self.cells_in_zone(cell.zone) if c.identifier != cell.identifier)
        cells = dict(self.cells)
        if remaining:
            cells[cell.zone] = remaining
        else:
            cells.pop(cell.zone, None)
        return replace(self, cells=cells)

    def clone_as(self, name: str) -> Dataset:
        """Return a fresh ``NO_DATA`` sibling with the same spatial metadata."""
        return replace(self, name=name, cells={}, state=DatasetState.NO_DATA, version=0)


@dataclass(frozen=True, slots=True)
class GridCell:
    """One grid tile of a zone and the datasets with points in it.

    Attributes:
        workspace: Owning workspace name.
        box: Cell box; its zone and 2D identifier form the key.
        datasets: Names of datasets registered in this cell.
    """

    workspace: str
    box: GeorefBox
    datasets: frozenset[str] = frozenset()

    @property
    def zone(self) -> str:
        return self.box.zone

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.workspace, self.box.zone, self.box.identifier)


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _check_range(model: str, field_name: str, value: float, lo: float, hi: float) -> None:
    """Raise `ModelValidationError` if *value* falls outside [lo, hi]."""
    if value < lo or value > hi:
        raise ModelValidationError(model, field_name, value, f"must be between {lo} and {hi}")


def _check_min(model: str, field_name: str, value: float | int, lo: float | int) -> None:
    """Raise `ModelValidationError` if *value* is below *lo*."""
    if value < lo:
        raise ModelValidationError(model, field_name, value, f"must be >= {lo}")


def _check_non_empty(model: str, field_name: str, value: str) -> None:
    """Raise `ModelValidationError` if *value* is empty or blank."""
    if not value or not value.strip():
        raise ModelValidationError(model, field_name, value, "must not be empty")
