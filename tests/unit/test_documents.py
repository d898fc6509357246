"""Tests for the stored document shapes.

Covers:
- ``$schema`` alias on workspace and dataset documents
- Dataset cells mapping survives a JSON dump
- Grid-cell documents carry the key fields and sorted dataset names
- Datablock documents use the stored field names
"""

from __future__ import annotations

from lidar_index.models.datablock import Datablock
from lidar_index.models.documents import (
    SCHEMA_VERSION,
    DatablockDocument,
    DatasetDocument,
    GridCellDocument,
    WorkspaceDocument,
)
from lidar_index.models.geometry import GeorefBox
from lidar_index.models.records import Dataset, DatasetState, GridCell, Workspace
from tests.fakes import ACQUIRED

CELL = GeorefBox.from_bounds("30S", (430000.0, 4470000.0, 600.0), (431000.0, 4471000.0, 700.0))


class TestWorkspaceDocument:
    def test_schema_alias(self) -> None:
        doc = WorkspaceDocument.from_domain(Workspace("survey", cell_size=500)).model_dump(
            mode="json", by_alias=True
        )
        assert doc["$schema"] == SCHEMA_VERSION
        assert doc["cell_size"] == 500


class TestDatasetDocument:
    def test_cells_and_state_survive_json(self) -> None:
        dataset = Dataset("survey", "flight-1", ACQUIRED, state=DatasetState.BUILDING, version=3).with_cell(CELL)
        dumped = DatasetDocument.from_domain(dataset).model_dump(mode="json")
        assert dumped["state"] == "BUILDING"
        restored = DatasetDocument.model_validate(dumped).to_domain()
        assert restored.cells_in_zone("30S") == (CELL,)
        assert restored.version == 3
        assert restored.date == ACQUIRED


class TestGridCellDocument:
    def test_key_fields(self) -> None:
        doc = GridCellDocument.from_domain(GridCell("survey", CELL, frozenset({"b", "a"})))
        assert doc.zone == "30S"
        assert doc.identifier == CELL.identifier
        assert doc.datasets == ["a", "b"]


class TestDatablockDocument:
    def test_stored_field_names(self) -> None:
        block = Datablock(node_id=9, box=CELL.octant(0), cell=CELL, point_count=12, children=[73], depth=2, blob_id="b")
        dumped = DatablockDocument.from_domain("survey", "flight-1", block).model_dump(mode="json")
        assert dumped["node"] == 9
        assert dumped["number_of_points"] == 12
        assert dumped["zone"] == "30S"
        assert DatablockDocument.model_validate(dumped).to_domain().children == [73]
