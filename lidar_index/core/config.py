"""Index configuration loaded from environment variables.

All values have working defaults for a single-host deployment with the
LAStools binaries on ``PATH``.  Process-wide constants such as tool
locations and the artifact extension are carried here and handed to
component constructors; nothing reads the environment after start-up.

Fail-fast validation:
    ``from_env()`` raises ``ConfigValidationError`` if any value is
    out of its valid range, so bad settings surface at start-up rather
    than half-way through a build.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from lidar_index.core.constants import (
    DEFAULT_BLOB_CONTAINER,
    DEFAULT_FILE_EXTENSION,
    MAX_OCTREE_DEPTH,
    SUPPORTED_FILE_EXTENSIONS,
)
from lidar_index.core.exceptions import PipelineError

#: Accepted values for ``LIDAR_SIZING_POLICY``.
SIZING_POLICIES = frozenset({"fixed", "distribution"})

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _default_root() -> Path:
    return Path(tempfile.gettempdir()) / "lidar-index"


class ConfigValidationError(PipelineError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
        reason: Human-readable description of the valid range.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        self.reason = message
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")


@dataclass(frozen=True, slots=True)
class IndexConfig:
    """Immutable indexing configuration.

    Loaded once at start-up and passed into the engine, the build
    orchestrator and the query engine.

    Attributes:
        scratch_dir: Root directory for per-build working files.
        merge_dir: Root directory for per-query merge directories.
        max_depth: Deepest octree level; nodes at this depth are leaves.
        sizing_policy: ``"fixed"`` or ``"distribution"``.
        engine: Registered point-cloud engine name.
        lastools_bin_dir: Directory holding the LAStools binaries
            (empty means resolve through ``PATH``).
        lastools_launcher: Optional launcher prefixed to every tool call
            (e.g. ``"wine"`` for the Windows builds).
        file_extension: Extension of every artifact the engine writes.
        cell_workers: Grid cells built concurrently.
        sibling_concurrency: Engine calls in flight within one octree.
        persist_concurrency: Datablock writes in flight per build.
        replicas: Sibling datasets each build is also persisted into.
        regular_octree: Use a cubic root box instead of the tight one.
        blob_container: Blob container for datablock artifacts.
    """

    scratch_dir: Path = field(default_factory=lambda: _default_root() / "scratch")
    merge_dir: Path = field(default_factory=lambda: _default_root() / "merge")
    max_depth: int = 5
    sizing_policy: str = "fixed"
    engine: str = "lastools"
    lastools_bin_dir: str = ""
    lastools_launcher: str = ""
    file_extension: str = DEFAULT_FILE_EXTENSION
    cell_workers: int = 4
    sibling_concurrency: int = 4
    persist_concurrency: int = 8
    replicas: int = 0
    regular_octree: bool = False
    blob_container: str = DEFAULT_BLOB_CONTAINER

    @classmethod
    def from_env(cls) -> IndexConfig:
        """Load and validate configuration from environment variables.

        Raises:
            ConfigValidationError: If a value is out of range or a
                required string value is empty.
            ValueError: If a numeric environment variable cannot be
                parsed (e.g. ``LIDAR_MAX_DEPTH=deep``).
        """
        root = _default_root()
        config = cls(
            scratch_dir=Path(os.getenv("LIDAR_SCRATCH_DIR", str(root / "scratch"))),
            merge_dir=Path(os.getenv("LIDAR_MERGE_DIR", str(root / "merge"))),
            max_depth=int(os.getenv("LIDAR_MAX_DEPTH", "5")),
            sizing_policy=os.getenv("LIDAR_SIZING_POLICY", "fixed").strip().lower(),
            engine=os.getenv("LIDAR_ENGINE", "lastools"),
            lastools_bin_dir=os.getenv("LASTOOLS_BIN_DIR", ""),
            lastools_launcher=os.getenv("LASTOOLS_LAUNCHER", ""),
            file_extension=os.getenv("LIDAR_FILE_EXTENSION", DEFAULT_FILE_EXTENSION).lower(),
            cell_workers=int(os.getenv("LIDAR_CELL_WORKERS", "4")),
            sibling_concurrency=int(os.getenv("LIDAR_SIBLING_CONCURRENCY", "4")),
            persist_concurrency=int(os.getenv("LIDAR_PERSIST_CONCURRENCY", "8")),
            replicas=int(os.getenv("LIDAR_REPLICAS", "0")),
            regular_octree=os.getenv("LIDAR_REGULAR_OCTREE", "false").strip().lower() in _TRUTHY,
            blob_container=os.getenv("LIDAR_BLOB_CONTAINER", DEFAULT_BLOB_CONTAINER),
        )
        _validate(config)
        return config


def _validate(config: IndexConfig) -> None:
    """Validate configuration ranges.  Raises ``ConfigValidationError``."""
    if not 0 <= config.max_depth <= MAX_OCTREE_DEPTH:
        raise ConfigValidationError(
            "LIDAR_MAX_DEPTH",
            config.max_depth,
            f"must be between 0 and {MAX_OCTREE_DEPTH}",
        )

    if config.sizing_policy not in SIZING_POLICIES:
        raise ConfigValidationError(
            "LIDAR_SIZING_POLICY",
            config.sizing_policy,
            f"must be one of {sorted(SIZING_POLICIES)}",
        )

    if config.file_extension not in SUPPORTED_FILE_EXTENSIONS:
        raise ConfigValidationError(
            "LIDAR_FILE_EXTENSION",
            config.file_extension,
            f"must be one of {sorted(SUPPORTED_FILE_EXTENSIONS)}",
        )

    for key, value in (
        ("LIDAR_CELL_WORKERS", config.cell_workers),
        ("LIDAR_SIBLING_CONCURRENCY", config.sibling_concurrency),
        ("LIDAR_PERSIST_CONCURRENCY", config.persist_concurrency),
    ):
        if value < 1:
            raise ConfigValidationError(key, value, "must be >= 1")

    if config.replicas < 0:
        raise ConfigValidationError("LIDAR_REPLICAS", config.replicas, "must be >= 0")

    if not config.engine:
        raise ConfigValidationError("LIDAR_ENGINE", config.engine, "must not be empty")

    if not config.blob_container:
        raise ConfigValidationError(
            "LIDAR_BLOB_CONTAINER",
            config.blob_container,
            "must not be empty",
        )

    if config.scratch_dir == config.merge_dir:
        raise ConfigValidationError(
            "LIDAR_MERGE_DIR",
            str(config.merge_dir),
            "must differ from LIDAR_SCRATCH_DIR",
        )
