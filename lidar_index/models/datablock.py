"""Octree nodes (datablocks) and their id arithmetic.

Parent/child linkage is purely arithmetic: the root of every per-cell
tree is node ``0`` and child ``i`` (0-7) of node ``p`` is
``p * 8 + i + 1``.  No node stores a parent reference; the parent is
recomputed as ``(id - 1) // 8`` when needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from lidar_index.core.constants import OCTANT_COUNT
from lidar_index.models.geometry import GeorefBox

if TYPE_CHECKING:
    from pathlib import Path

#: Id of the root node of every per-cell tree.
ROOT_ID = 0


def child_id(parent: int, octant: int) -> int:
    """Return the id of child *octant* (0-7) of node *parent*."""
    if parent < 0:
        msg = f"Node ids are non-negative, got {parent}"
        raise ValueError(msg)
    if not 0 <= octant < OCTANT_COUNT:
        msg = f"Octant index must be in 0..7, got {octant}"
        raise ValueError(msg)
    return parent * OCTANT_COUNT + octant + 1


def parent_id(node: int) -> int | None:
    """Return the parent id of *node*, or ``None`` for the root."""
    if node < 0:
        msg = f"Node ids are non-negative, got {node}"
        raise ValueError(msg)
    if node == ROOT_ID:
        return None
    return (node - 1) // OCTANT_COUNT


def closed_faces(node: int) -> tuple[bool, bool, bool]:
    """Return which max faces (easting, northing, height) of *node* are closed.

    Sibling octants share their inner faces, which are half-open.  A face
    is closed only where the node's box reaches the root box's max face,
    i.e. when every octant on the path from the root took the upper half
    of that axis.  The root box is closed on all three axes.
    """
    if node < 0:
        msg = f"Node ids are non-negative, got {node}"
        raise ValueError(msg)
    east = north = up = True
    while node != ROOT_ID:
        octant = (node - 1) % OCTANT_COUNT
        east = east and bool(octant & 1)
        north = north and bool(octant & 2)
        up = up and bool(octant & 4)
        node = (node - 1) // OCTANT_COUNT
    return (east, north, up)


@dataclass(slots=True)
class Datablock:
    """One octree node.

    ``children`` grows while the builder extracts octants, which is why
    this model is mutable.  ``working_file`` and ``artifact_file`` only
    exist during a build and are never serialised.

    Attributes:
        node_id: Arithmetic id within the cell's tree.
        box: Spatial extent this node subdivides.
        cell: Box of the owning grid cell.
        point_count: Points stored in this node's artifact.
        children: Ids of non-empty child octants, in octant order.
        depth: Distance from the root (root is 0).
        blob_id: Blob store reference of the stored artifact.
        working_file: Artifact the builder is currently processing.
        artifact_file: Reduced artifact to finalize and store.
    """

    node_id: int
    box: GeorefBox
    cell: GeorefBox
    point_count: int = 0
    children: list[int] = field(default_factory=list)
    depth: int = 0
    blob_id: str = ""
    working_file: Path | None = None
    artifact_file: Path | None = None

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def zone(self) -> str:
        return self.cell.zone

    def child(self, octant: int, box: GeorefBox, working_file: Path) -> Datablock:
        """Create the node for child *octant* of this one."""
        return Datablock(
            node_id=child_id(self.node_id, octant),
            box=box,
            cell=self.cell,
            depth=self.depth + 1,
            working_file=working_file,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the persistent fields (working files are dropped)."""
        return {
            "node_id": self.node_id,
            "box": self.box.to_dict(),
            "cell": self.cell.to_dict(),
            "point_count": self.point_count,
            "children": list(self.children),
            "depth": self.depth,
            "blob_id": self.blob_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Datablock:
        return cls(
            node_id=int(data["node_id"]),
            box=GeorefBox.from_dict(data["box"]),
            cell=GeorefBox.from_dict(data["cell"]),
            point_count=int(data.get("point_count", 0)),
            children=[int(c) for c in data.get("children", [])],
            depth=int(data.get("depth", 0)),
            blob_id=str(data.get("blob_id", "")),
        )
