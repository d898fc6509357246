"""Composition root: wire configuration, engine, stores and services.

The transport layer calls ``build_index`` once at start-up and keeps the
returned ``IndexServices`` for the lifetime of the process.  Tests pass
their own engine and stores.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from lidar_index.core.config import IndexConfig
from lidar_index.engine.base import PointCloudEngine
from lidar_index.engine.factory import get_engine
from lidar_index.orchestrators.build_pipeline import BuildOrchestrator
from lidar_index.services.datasets import DatasetService
from lidar_index.services.query import QueryEngine
from lidar_index.services.workspaces import WorkspaceService
from lidar_index.storage.azure_blob import CONNECTION_STRING_ENV, AzureBlobStore
from lidar_index.storage.base import Stores
from lidar_index.storage.memory import memory_stores

logger = logging.getLogger("lidar_index.bootstrap")


@dataclass(frozen=True, slots=True)
class IndexServices:
    """Every operation the indexer exposes, sharing one engine and store set."""

    config: IndexConfig
    engine: PointCloudEngine
    stores: Stores
    workspaces: WorkspaceService
    datasets: DatasetService
    builds: BuildOrchestrator
    query: QueryEngine


def default_stores(config: IndexConfig) -> Stores:
    """Return in-process metadata stores and the configured blob backend.

    Artifacts go to Azure Blob Storage (container ``config.blob_container``)
    when ``AZURE_STORAGE_CONNECTION_STRING`` is set, and stay in memory
    otherwise.
    """
    if os.environ.get(CONNECTION_STRING_ENV):
        logger.info("Blob backend selected | backend=azure | container=%s", config.blob_container)
        return memory_stores(blobs=AzureBlobStore.from_env(config.blob_container))
    logger.info("Blob backend selected | backend=memory")
    return memory_stores()


def build_index(
    config: IndexConfig | None = None,
    *,
    engine: PointCloudEngine | None = None,
    stores: Stores | None = None,
) -> IndexServices:
    """Create the service bundle.

    Args:
        config: Configuration; loaded with ``IndexConfig.from_env()`` if omitted.
        engine: Engine instance; created from ``config.engine`` if omitted.
        stores: Persistence backends; see ``default_stores`` if omitted.
    """
    config = config or IndexConfig.from_env()
    engine = engine or get_engine(config.engine, config)
    stores = stores or default_stores(config)

    config.scratch_dir.mkdir(parents=True, exist_ok=True)
    config.merge_dir.mkdir(parents=True, exist_ok=True)
    logger.info(
        "Index services ready | engine=%s | max_depth=%d | sizing=%s | scratch=%s",
        config.engine,
        config.max_depth,
        config.sizing_policy,
        config.scratch_dir,
    )
    return IndexServices(
        config=config,
        engine=engine,
        stores=stores,
        workspaces=WorkspaceService(stores),
        datasets=DatasetService(stores),
        builds=BuildOrchestrator(config, engine, stores),
        query=QueryEngine(config, engine, stores),
    )
