"""Add-data build orchestrator.

Drives one dataset from ``NO_DATA`` to ``DATA_ASSOCIATED`` (or
``ERROR_ON_INSERTION``):

1. Precondition and exclusion — the dataset must exist and be in
   ``NO_DATA``.  The move to ``BUILDING`` is a versioned update, so two
   add-data calls racing on one dataset cannot both win; in-process
   callers are additionally serialized by a per-dataset lock.
2. Zoning, cell discovery and build phases (``phases.py``).
3. Completion — every target dataset moves to ``DATA_ASSOCIATED``; on
   any failure they move to ``ERROR_ON_INSERTION`` and the failure is
   raised as ``BuildFailureError``.  The scratch folder is purged on
   every exit path.

Replication: with ``replicas=N`` the same nodes are also persisted into
N sibling datasets named ``{dataset}1`` … ``{dataset}N`` (created on
demand from the source dataset), without building the trees again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import Counter
from typing import TYPE_CHECKING

from lidar_index.core.exceptions import (
    AlreadyHasDataError,
    PermanentError,
    ValidationError,
)
from lidar_index.core.workdir import clean_directory, dataset_scratch_dir
from lidar_index.models.records import DatasetState
from lidar_index.orchestrators.phases import (
    build_pipeline_summary,
    run_build_phase,
    run_cell_discovery_phase,
    run_zoning_phase,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

    from lidar_index.core.config import IndexConfig
    from lidar_index.engine.base import PointCloudEngine
    from lidar_index.models.records import Dataset
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.orchestrators.build_pipeline")


class BuildFailureError(PermanentError):
    """An add-data build failed after it started.

    The original error is chained as ``__cause__``.  Every target
    dataset has been moved to ``ERROR_ON_INSERTION``.
    """

    default_stage = "build_orchestrator"
    default_code = "BUILD_FAILED"


class BuildOrchestrator:
    """Runs add-data builds against one engine and one set of stores."""

    def __init__(self, config: IndexConfig, engine: PointCloudEngine, stores: Stores) -> None:
        self._config = config
        self._engine = engine
        self._stores = stores
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Counter[tuple[str, str]] = Counter()

    async def add_data(
        self,
        workspace: str,
        dataset: str,
        files: Sequence[Path],
        *,
        replicas: int | None = None,
    ) -> dict[str, object]:
        """Index *files* into *dataset*.

        The pipeline takes ownership of *files*: they are moved into the
        scratch folder and deleted once merged.

        Args:
            workspace: Workspace name.
            dataset: Dataset name (must be in ``NO_DATA``).
            files: Uploaded point-cloud files.
            replicas: Sibling datasets to persist into as well;
                defaults to ``IndexConfig.replicas``.

        Returns:
            Build summary dict (see ``build_pipeline_summary``).

        Raises:
            ValidationError: If no files are given.
            NotFoundError: If the workspace or dataset does not exist.
            AlreadyHasDataError: If a target dataset is not in ``NO_DATA``.
            LockedConflictError: If a concurrent build claimed a dataset first.
            BuildFailureError: If the build failed after it started.
        """
        if not files:
            msg = f"No files given for dataset {workspace}/{dataset}"
            raise ValidationError(msg, stage="build_orchestrator", code="NO_INPUT_FILES")

        ws = await self._stores.workspaces.get(workspace)
        source = await self._stores.datasets.get(workspace, dataset)
        replica_count = self._config.replicas if replicas is None else replicas
        replica_names = [f"{dataset}{i}" for i in range(1, replica_count + 1)]

        targets = [await self._claim(workspace, dataset)]
        try:
            for name in replica_names:
                if not await self._stores.datasets.exists(workspace, name):
                    await self._stores.datasets.insert(source.clone_as(name))
                targets.append(await self._claim(workspace, name))
        except BaseException:
            await self._finish(targets, DatasetState.NO_DATA)
            raise
        names = [t.name for t in targets]

        dataset_dir = dataset_scratch_dir(self._config.scratch_dir, workspace, dataset)
        started = time.monotonic()
        logger.info(
            "Build started | workspace=%s | dataset=%s | files=%d | replicas=%d",
            workspace,
            dataset,
            len(files),
            len(replica_names),
        )

        try:
            zoning = await run_zoning_phase(
                self._engine,
                files,
                dataset_dir,
                extension=self._config.file_extension,
                dataset=dataset,
            )
            discovery = await run_cell_discovery_phase(
                self._engine,
                self._stores,
                self._config,
                zoning["merged"],
                dataset_dir,
                workspace=workspace,
                cell_size=ws.cell_size,
                targets=names,
            )
            build = await run_build_phase(
                self._engine,
                self._stores,
                self._config,
                discovery["roots"],
                workspace=workspace,
                targets=names,
                data_block_size=source.data_block_size,
            )
        except Exception as exc:
            logger.exception(
                "Build failed | workspace=%s | dataset=%s | error=%s",
                workspace,
                dataset,
                exc,
            )
            await self._finish(targets, DatasetState.ERROR_ON_INSERTION)
            msg = f"Building the octrees of {workspace}/{dataset} failed: {exc}"
            raise BuildFailureError(msg) from exc
        except BaseException:
            await self._finish(targets, DatasetState.ERROR_ON_INSERTION)
            raise
        finally:
            await clean_directory(dataset_dir)

        await self._finish(targets, DatasetState.DATA_ASSOCIATED)
        duration = time.monotonic() - started
        logger.info(
            "Build completed | workspace=%s | dataset=%s | nodes=%d | duration=%.1fs",
            workspace,
            dataset,
            build["nodes_emitted"],
            duration,
        )
        return build_pipeline_summary(
            workspace=workspace,
            dataset=dataset,
            state=DatasetState.DATA_ASSOCIATED.value,
            zoning=zoning,
            discovery=discovery,
            build=build,
            replicas=replica_names,
            duration_s=duration,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _dataset_lock(self, workspace: str, name: str) -> AsyncIterator[None]:
        """Hold the in-process lock of one dataset.

        The lock is dropped once its last holder or waiter leaves, so the
        table only ever holds datasets with a transition in progress.
        """
        key = (workspace, name)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _claim(self, workspace: str, name: str) -> Dataset:
        """Move *name* from ``NO_DATA`` to ``BUILDING`` or fail."""
        async with self._dataset_lock(workspace, name):
            current = await self._stores.datasets.get(workspace, name)
            if current.state is not DatasetState.NO_DATA:
                raise AlreadyHasDataError(name, current.state.value)
            claimed = await self._stores.datasets.update(
                current.with_state(DatasetState.BUILDING),
                expected_version=current.version,
            )
        logger.info("Dataset claimed | workspace=%s | dataset=%s", workspace, name)
        return claimed

    async def _finish(self, targets: Sequence[Dataset], state: DatasetState) -> None:
        """Move every target to *state*, re-reading each for its current version."""
        for target in targets:
            async with self._dataset_lock(target.workspace, target.name):
                current = await self._stores.datasets.get(target.workspace, target.name)
                await self._stores.datasets.update(
                    current.with_state(state),
                    expected_version=current.version,
                )
            logger.info(
                "Dataset state changed | workspace=%s | dataset=%s | state=%s",
                target.workspace,
                target.name,
                state.value,
            )
