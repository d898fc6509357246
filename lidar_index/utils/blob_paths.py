"""Deterministic blob and folder naming for datablock artifacts.

Generates blob paths of the form::

    datablocks/{workspace}/{dataset}/{zone}/{cell-id}/{node-id}{ext}

Workspace and dataset components are percent-encoded with
``encode_segment``.  The encoding is injective, so two names that differ
only in case or punctuation (``Flight_A`` and ``flight-a``) never share
an artifact or a scratch folder.  The cell identifier is the canonical
2D box identifier and is used verbatim.

The same inputs always produce the same path, so re-persisting a node
overwrites its previous artifact rather than leaking a new one.
"""

from __future__ import annotations

from urllib.parse import quote

# ---------------------------------------------------------------------------
# Path prefixes
# ---------------------------------------------------------------------------

DATABLOCK_PREFIX = "datablocks"


def encode_segment(value: str) -> str:
    """Encode a name as a single path-safe segment.

    Everything outside ``A-Z``, ``a-z``, ``0-9``, ``-`` and ``~`` is
    percent-encoded, ``.`` and ``_`` included.  The result can never be
    a relative component (``..``) and never contains ``_``, which keeps
    ``_`` free as a separator in folder names.

    Args:
        value: Raw workspace or dataset name.

    Returns:
        The encoded segment; distinct inputs give distinct segments.
    """
    return quote(value, safe="").replace(".", "%2E").replace("_", "%5F")


def dataset_folder_name(workspace: str, dataset: str) -> str:
    """Return the folder name shared by a dataset's scratch and merge areas."""
    return f"{encode_segment(workspace)}_{encode_segment(dataset)}"


def build_datablock_blob_path(
    workspace: str,
    dataset: str,
    zone: str,
    cell_identifier: str,
    node_id: int,
    *,
    extension: str = ".laz",
) -> str:
    """Build the blob path for one datablock artifact.

    Format: ``datablocks/{workspace}/{dataset}/{zone}/{cell-id}/{node-id}{ext}``

    Args:
        workspace: Workspace name (will be encoded).
        dataset: Dataset name (will be encoded).
        zone: UTM zone code (e.g. ``"30S"``).
        cell_identifier: Canonical 2D identifier of the grid cell.
        node_id: Datablock id within the cell's tree.
        extension: Artifact extension including the dot.

    Returns:
        Deterministic blob path string.
    """
    return (
        f"{DATABLOCK_PREFIX}/{encode_segment(workspace)}/{encode_segment(dataset)}"
        f"/{zone.upper()}/{cell_identifier}/{node_id}{extension}"
    )
