"""Workspace operations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from lidar_index.models.records import Workspace

if TYPE_CHECKING:
    from lidar_index.storage.base import Stores

logger = logging.getLogger("lidar_index.services.workspaces")


class WorkspaceService:
    def __init__(self, stores: Stores) -> None:
        self._stores = stores

    async def create(self, name: str, *, cell_size: int, description: str = "") -> Workspace:
        """Register a new workspace.

        Raises:
            ModelValidationError: If the name is blank or the cell size
                is outside 100..1,000,000.
            AlreadyExistsError: If the name is taken.
        """
        workspace = await self._stores.workspaces.insert(
            Workspace(name=name, description=description, cell_size=cell_size)
        )
        logger.info("Workspace created | workspace=%s | cell_size=%d", name, cell_size)
        return workspace

    async def get(self, name: str) -> Workspace:
        return await self._stores.workspaces.get(name)

    async def list(self) -> list[Workspace]:
        return await self._stores.workspaces.list_all()
