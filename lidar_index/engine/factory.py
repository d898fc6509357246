"""Engine factory — selects the point-cloud engine by name.

The factory keeps a registry of known engines.  Entries are lazy-import
thunks so that heavyweight dependencies (``laspy``, ``pyproj``) are only
loaded when that engine is selected.

Usage::

    from lidar_index.engine.factory import get_engine

    engine = get_engine(config.engine, config)
    zone = await engine.detect_zone(path)

The engine name comes from ``IndexConfig.engine`` (``LIDAR_ENGINE``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lidar_index.engine.base import PointCloudEngine, ToolFailureError

if TYPE_CHECKING:
    from collections.abc import Callable

    from lidar_index.core.config import IndexConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine name constants
# ---------------------------------------------------------------------------

LASTOOLS = "lastools"

# ---------------------------------------------------------------------------
# Lazy-import engine registry
# ---------------------------------------------------------------------------

_ENGINE_REGISTRY: dict[str, Callable[[], type[PointCloudEngine]]] = {}


def _register_builtin_engines() -> None:
    """Register the built-in engines (called once, on first use)."""

    def _lastools() -> type[PointCloudEngine]:
        from lidar_index.engine.lastools import LasToolsEngine

        return LasToolsEngine

    _ENGINE_REGISTRY[LASTOOLS] = _lastools


def _ensure_registry() -> None:
    """Initialise the engine registry once (idempotent)."""
    if not _ENGINE_REGISTRY:
        _register_builtin_engines()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def register_engine(
    name: str,
    loader: Callable[[], type[PointCloudEngine]],
) -> None:
    """Register a custom engine.

    Args:
        name: Engine name (e.g. ``"pdal"``).
        loader: A zero-argument callable that returns the engine class.

    Raises:
        ValueError: If the name is empty.
    """
    if not name:
        msg = "Engine name must be non-empty"
        raise ValueError(msg)
    _ensure_registry()
    _ENGINE_REGISTRY[name] = loader
    logger.debug("Registered point-cloud engine: %s", name)


def get_engine(name: str, config: IndexConfig) -> PointCloudEngine:
    """Create and return a point-cloud engine instance.

    Raises:
        ToolFailureError: If the named engine is not registered
            (code ``UNKNOWN_ENGINE``).
    """
    _ensure_registry()

    loader = _ENGINE_REGISTRY.get(name)
    if loader is None:
        available = ", ".join(sorted(_ENGINE_REGISTRY))
        msg = f"Unknown point-cloud engine: {name!r}. Available: {available}"
        raise ToolFailureError(name, msg, code="UNKNOWN_ENGINE")

    logger.info("Creating point-cloud engine: %s", name)
    return loader()(config)


def list_engines() -> list[str]:
    """Return the names of all registered engines."""
    _ensure_registry()
    return sorted(_ENGINE_REGISTRY)
