"""Pydantic document shapes persisted by the metadata stores.

Each registry record and datablock has a matching document model.  The
stores only ever hold ``model_dump(mode="json")`` output and rebuild
domain objects through ``to_domain()``, so what a store keeps is exactly
what a document database would keep: plain JSON, never a live object
shared with a caller.

The datablock document mirrors the fields every node needs for region
queries and artifact retrieval: dataset, node id, cell, box, point
count, children, blob reference and depth.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from lidar_index.models.datablock import Datablock
from lidar_index.models.geometry import GeorefBox, UTMCoord
from lidar_index.models.records import Dataset, DatasetState, GridCell, Workspace

# Schema version for forward compatibility
SCHEMA_VERSION = "lidar-index-v1"


class CoordDocument(BaseModel):
    """A ``UTMCoord`` as stored."""

    easting: float
    northing: float
    zone: str
    height: float = 0.0

    @classmethod
    def from_domain(cls, coord: UTMCoord) -> CoordDocument:
        return cls(
            easting=coord.easting,
            northing=coord.northing,
            zone=coord.zone,
            height=coord.height,
        )

    def to_domain(self) -> UTMCoord:
        return UTMCoord(self.easting, self.northing, self.zone, self.height)


class BoxDocument(BaseModel):
    """A ``GeorefBox`` as stored."""

    sw: CoordDocument
    ne: CoordDocument

    @classmethod
    def from_domain(cls, box: GeorefBox) -> BoxDocument:
        return cls(sw=CoordDocument.from_domain(box.sw), ne=CoordDocument.from_domain(box.ne))

    def to_domain(self) -> GeorefBox:
        return GeorefBox(self.sw.to_domain(), self.ne.to_domain())


class WorkspaceDocument(BaseModel):
    """Stored workspace."""

    schema_version: str = Field(default=SCHEMA_VERSION, alias="$schema")
    name: str
    description: str = ""
    cell_size: int

    model_config = {"populate_by_name": True}

    @classmethod
    def from_domain(cls, workspace: Workspace) -> WorkspaceDocument:
        return cls(
            name=workspace.name,
            description=workspace.description,
            cell_size=workspace.cell_size,
        )

    def to_domain(self) -> Workspace:
        return Workspace(name=self.name, description=self.description, cell_size=self.cell_size)


class DatasetDocument(BaseModel):
    """Stored dataset, including its zone → root cells mapping."""

    schema_version: str = Field(default=SCHEMA_VERSION, alias="$schema")
    workspace: str
    name: str
    description: str = ""
    date: datetime
    bbox: BoxDocument | None = None
    data_block_size: int
    format: str
    cells: dict[str, list[BoxDocument]] = Field(default_factory=dict)
    state: DatasetState = DatasetState.NO_DATA
    version: int = 0

    model_config = {"populate_by_name": True}

    @classmethod
    def from_domain(cls, dataset: Dataset) -> DatasetDocument:
        return cls(
            workspace=dataset.workspace,
            name=dataset.name,
            description=dataset.description,
            date=dataset.date,
            bbox=BoxDocument.from_domain(dataset.bbox) if dataset.bbox else None,
            data_block_size=dataset.data_block_size,
            format=dataset.format,
            cells={
                zone: [BoxDocument.from_domain(box) for box in boxes]
                for zone, boxes in dataset.cells.items()
            },
            state=dataset.state,
            version=dataset.version,
        )

    def to_domain(self) -> Dataset:
        return Dataset(
            workspace=self.workspace,
            name=self.name,
            description=self.description,
            date=self.date,
            bbox=self.bbox.to_domain() if self.bbox else None,
            data_block_size=self.data_block_size,
            format=self.format,
            cells={zone: tuple(b.to_domain() for b in boxes) for zone, boxes in self.cells.items()},
            state=self.state,
            version=self.version,
        )


class GridCellDocument(BaseModel):
    """Stored grid cell with its registered dataset names."""

    workspace: str
    zone: str
    identifier: str
    box: BoxDocument
    datasets: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, cell: GridCell) -> GridCellDocument:
        return cls(
            workspace=cell.workspace,
            zone=cell.zone,
            identifier=cell.box.identifier,
            box=BoxDocument.from_domain(cell.box),
            datasets=sorted(cell.datasets),
        )

    def to_domain(self) -> GridCell:
        return GridCell(
            workspace=self.workspace,
            box=self.box.to_domain(),
            datasets=frozenset(self.datasets),
        )


class DatablockDocument(BaseModel):
    """Stored octree node metadata."""

    workspace: str
    dataset: str
    node: int
    zone: str
    cell: BoxDocument
    bbox: BoxDocument
    number_of_points: int
    children: list[int] = Field(default_factory=list)
    blob_id: str
    depth: int

    @classmethod
    def from_domain(cls, workspace: str, dataset: str, block: Datablock) -> DatablockDocument:
        return cls(
            workspace=workspace,
            dataset=dataset,
            node=block.node_id,
            zone=block.zone,
            cell=BoxDocument.from_domain(block.cell),
            bbox=BoxDocument.from_domain(block.box),
            number_of_points=block.point_count,
            children=list(block.children),
            blob_id=block.blob_id,
            depth=block.depth,
        )

    def to_domain(self) -> Datablock:
        return Datablock(
            node_id=self.node,
            box=self.bbox.to_domain(),
            cell=self.cell.to_domain(),
            point_count=self.number_of_points,
            children=list(self.children),
            depth=self.depth,
            blob_id=self.blob_id,
        )
