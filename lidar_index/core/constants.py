"""Shared indexing constants — single source of truth.

Centralises the file tags used to name point-cloud working artifacts,
the blob container default and the few numeric limits that more than
one module checks.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Working-file tags
# ---------------------------------------------------------------------------

TAG_BASE: str = "base"
"""Uploaded raw file copied into the scratch area."""

TAG_BLOCK_READY: str = "bd"
"""Reduced artifact holding the points assigned to one datablock."""

TAG_MERGED: str = "merged"
"""Per-zone artifact produced by merging every uploaded file of that zone."""

TAG_PARTITION_READY: str = "pready"
"""Remainder artifact that is partitioned into the eight octants."""

TAG_ROOT: str = "root"
"""Per-cell root artifact extracted from a merged zone artifact."""

TAG_OPTIMIZED: str = "optimized"
"""Finalized artifact ready for the blob store."""

# ---------------------------------------------------------------------------
# Formats and storage
# ---------------------------------------------------------------------------

DEFAULT_FILE_EXTENSION: str = ".laz"
SUPPORTED_FILE_EXTENSIONS: frozenset[str] = frozenset({".laz", ".las"})

DEFAULT_DATASET_FORMAT: str = "LAZ"
"""Output format tag recorded on datasets when none is given."""

DEFAULT_BLOB_CONTAINER: str = "lidar-datablocks"

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MIN_CELL_SIZE: int = 100
MAX_CELL_SIZE: int = 1_000_000
MIN_DATA_BLOCK_SIZE: int = 100
MAX_OCTREE_DEPTH: int = 20

OCTANT_COUNT: int = 8
"""Children per octree node."""
