"""Sizing policies: how many points each octree node keeps.

A policy answers one question, ``target_for(depth)``: the maximum number
of points a node at *depth* keeps before the rest is pushed down to its
octants.  The policy is chosen once from configuration and injected
into the builder.

- ``FixedBlockSize``: the dataset's block size at every depth.
- ``DepthDistribution``: targets precomputed from the cell's total point
  count.  Level *d* receives the share ``(d + 1) / sum(k + 1)`` of all
  points, spread evenly over its up to ``8**d`` nodes, so shallow levels
  stay small and the deepest level carries the bulk.
"""

from __future__ import annotations

import abc
import math
from dataclasses import dataclass

from lidar_index.core.constants import OCTANT_COUNT

FIXED = "fixed"
DISTRIBUTION = "distribution"


class SizingPolicy(abc.ABC):
    """Maximum points kept per node, by depth."""

    @abc.abstractmethod
    def target_for(self, depth: int) -> int:
        """Return the target point count for a node at *depth* (>= 1)."""


@dataclass(frozen=True, slots=True)
class FixedBlockSize(SizingPolicy):
    block_size: int

    def __post_init__(self) -> None:
        if self.block_size < 1:
            msg = f"block_size must be >= 1, got {self.block_size}"
            raise ValueError(msg)

    def target_for(self, depth: int) -> int:  # noqa: ARG002
        return self.block_size


@dataclass(frozen=True, slots=True)
class DepthDistribution(SizingPolicy):
    """Per-depth targets; depths past the list reuse the last entry."""

    targets: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.targets or min(self.targets) < 1:
            msg = f"targets must be a non-empty list of positive counts, got {self.targets}"
            raise ValueError(msg)

    def target_for(self, depth: int) -> int:
        return self.targets[min(depth, len(self.targets) - 1)]

    @classmethod
    def from_point_count(cls, total: int, max_depth: int) -> DepthDistribution:
        """Spread *total* points over levels ``0..max_depth`` with linear weights."""
        weight_sum = sum(k + 1 for k in range(max_depth + 1))
        targets = tuple(
            max(1, math.ceil(total * (depth + 1) / weight_sum / OCTANT_COUNT**depth))
            for depth in range(max_depth + 1)
        )
        return cls(targets)


def build_sizing_policy(
    kind: str,
    *,
    block_size: int,
    max_depth: int,
    point_count: int,
) -> SizingPolicy:
    """Create the configured policy for one cell build.

    Args:
        kind: ``"fixed"`` or ``"distribution"`` (``IndexConfig.sizing_policy``).
        block_size: Dataset block size, used by the fixed policy.
        max_depth: Deepest octree level.
        point_count: Points in the cell's root artifact.

    Raises:
        ValueError: If *kind* is unknown.
    """
    if kind == FIXED:
        return FixedBlockSize(block_size)
    if kind == DISTRIBUTION:
        return DepthDistribution.from_point_count(point_count, max_depth)
    msg = f"Unknown sizing policy: {kind!r}"
    raise ValueError(msg)
