"""Recursive per-cell octree builder.

For one grid cell the builder walks the tree depth-first from the root
node, whose working file is the cell's root artifact:

- At ``max_depth`` a node is terminal: its working file is converted
  into its block artifact unreduced, and it is emitted as a leaf.
- Above ``max_depth`` the sizing policy splits the working file into the
  node's own reduced artifact and a remainder.  The remainder is clipped
  to each of the eight octant boxes; octants that come back empty are
  dropped without an id, the rest become children (id ``p * 8 + i + 1``)
  and are visited recursively.  A node whose points all fit has no
  remainder and becomes a leaf.
- Octant clips are half-open on the faces siblings share and closed on
  the faces a node shares with the root box (``closed_faces``), so each
  remainder point lands in exactly one child.

Every visited node is yielded, internal nodes as soon as their children
list is known.  Engine failures abort the subtree and propagate; the
remainder of a node is deleted once all of its octant recursions have
settled, whatever their outcome.

Siblings run concurrently.  A semaphore shared by the whole tree bounds
the number of engine processes in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from lidar_index.core.workdir import remove_quietly
from lidar_index.models.datablock import child_id, closed_faces
from lidar_index.utils.tasks import gather_or_cancel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

    from lidar_index.engine.base import ExtractResult, PointCloudEngine
    from lidar_index.models.datablock import Datablock
    from lidar_index.octree.sizing import SizingPolicy

logger = logging.getLogger("lidar_index.octree.builder")

_DONE = object()


class OctreeBuilder:
    """Build the octree of one grid cell.

    Args:
        engine: Point-cloud engine performing every file operation.
        policy: Sizing policy selected for this build.
        max_depth: Deepest level; nodes there are always leaves.
        sibling_concurrency: Engine calls in flight at once for this tree.
    """

    def __init__(
        self,
        engine: PointCloudEngine,
        policy: SizingPolicy,
        *,
        max_depth: int,
        sibling_concurrency: int = 4,
    ) -> None:
        if max_depth < 0:
            msg = f"max_depth must be >= 0, got {max_depth}"
            raise ValueError(msg)
        self._engine = engine
        self._policy = policy
        self._max_depth = max_depth
        self._limit = asyncio.Semaphore(sibling_concurrency)

    async def build(self, root: Datablock) -> AsyncIterator[Datablock]:
        """Yield every node of the tree rooted at *root*.

        *root* must carry its ``working_file``.  If the walk fails the
        error is raised from the iterator after the nodes emitted so far;
        closing the iterator early cancels the walk.
        """
        if root.working_file is None:
            msg = f"Root node {root.node_id} has no working file"
            raise ValueError(msg)

        queue: asyncio.Queue[object] = asyncio.Queue()

        async def walk() -> None:
            try:
                await self._visit(root, queue.put_nowait)
            finally:
                queue.put_nowait(_DONE)

        task = asyncio.create_task(walk())
        try:
            while (item := await queue.get()) is not _DONE:
                yield item  # type: ignore[misc]
            await task
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Recursion
    # ------------------------------------------------------------------

    async def _visit(self, node: Datablock, emit: Callable[[Datablock], None]) -> None:
        working = node.working_file
        if working is None:
            msg = f"Node {node.node_id} reached the builder without a working file"
            raise ValueError(msg)

        if node.depth >= self._max_depth:
            async with self._limit:
                node.artifact_file = await self._engine.convert_to_block(working, node_id=node.node_id)
                node.point_count = await self._engine.get_point_count(node.artifact_file)
            remove_quietly(working)
            node.working_file = None
            self._emit(node, emit)
            return

        async with self._limit:
            reduced = await self._engine.reduce(
                working,
                self._policy.target_for(node.depth),
                node_id=node.node_id,
            )
        node.artifact_file = reduced.reduced
        node.point_count = reduced.point_count
        remove_quietly(working)
        node.working_file = None

        remainder = reduced.remainder
        try:
            children = await self._extract_children(node, remainder) if remainder else []
            self._emit(node, emit)
            await gather_or_cancel(*(self._visit(child, emit) for child in children))
        finally:
            remove_quietly(remainder)

    async def _extract_children(self, node: Datablock, remainder: Path) -> list[Datablock]:
        boxes = node.box.octants()

        async def extract(octant: int) -> ExtractResult:
            node_id = child_id(node.node_id, octant)
            async with self._limit:
                return await self._engine.extract_region(
                    remainder,
                    boxes[octant],
                    node_id,
                    closed=closed_faces(node_id),
                )

        results: list[ExtractResult] = await gather_or_cancel(*(extract(i) for i in range(len(boxes))))

        children: list[Datablock] = []
        for octant, result in enumerate(results):
            if result.is_empty or result.path is None:
                continue
            child = node.child(octant, boxes[octant], result.path)
            node.children.append(child.node_id)
            children.append(child)
        return children

    def _emit(self, node: Datablock, emit: Callable[[Datablock], None]) -> None:
        logger.debug(
            "Octree node emitted | cell=%s | node=%d | depth=%d | points=%d | children=%d",
            node.cell.identifier,
            node.node_id,
            node.depth,
            node.point_count,
            len(node.children),
        )
        emit(node)
