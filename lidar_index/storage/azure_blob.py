"""Blob store backed by Azure Blob Storage.

Datablock artifacts are written with ``overwrite=True`` so that
re-persisting a node is idempotent.  The ``azure-storage-blob`` client
is synchronous; each call is pushed onto a worker thread with
``asyncio.to_thread`` so builds and queries never block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError, ResourceNotFoundError

from lidar_index.core.exceptions import ContractError, NotFoundError, TransientError
from lidar_index.storage.base import BlobStore

if TYPE_CHECKING:
    from azure.storage.blob import BlobServiceClient

logger = logging.getLogger("lidar_index.storage.azure_blob")

#: Environment variable holding the storage account connection string.
CONNECTION_STRING_ENV = "AZURE_STORAGE_CONNECTION_STRING"


class BlobStoreError(TransientError):
    """Raised when a blob upload or download fails."""

    default_stage = "blob_store"
    default_code = "BLOB_IO_FAILED"


class AzureBlobStore(BlobStore):
    """``BlobStore`` writing into one Azure Blob Storage container.

    Args:
        service_client: An ``azure.storage.blob.BlobServiceClient``.
        container: Target container name.
    """

    def __init__(self, service_client: BlobServiceClient, container: str) -> None:
        self._service = service_client
        self._container = container

    @classmethod
    def from_env(cls, container: str) -> AzureBlobStore:
        """Create a store from ``AZURE_STORAGE_CONNECTION_STRING``.

        Raises:
            ContractError: If the environment variable is not set.
        """
        from azure.storage.blob import BlobServiceClient

        connection_string = os.environ.get(CONNECTION_STRING_ENV, "")
        if not connection_string:
            msg = f"{CONNECTION_STRING_ENV} environment variable is not set"
            raise ContractError(msg, stage="blob_store", code="MISSING_CONNECTION_STRING")
        return cls(BlobServiceClient.from_connection_string(connection_string), container)

    def _upload(self, blob_id: str, data: bytes) -> None:
        blob_client = self._service.get_blob_client(container=self._container, blob=blob_id)
        blob_client.upload_blob(data, overwrite=True)

    def _download(self, blob_id: str) -> bytes:
        blob_client = self._service.get_blob_client(container=self._container, blob=blob_id)
        return blob_client.download_blob().readall()

    async def store(self, blob_id: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._upload, blob_id, data)
        except AzureError as exc:
            msg = f"Failed to upload blob {blob_id} to {self._container}: {exc}"
            raise BlobStoreError(msg) from exc
        logger.debug(
            "Blob uploaded | container=%s | blob=%s | size=%d",
            self._container,
            blob_id,
            len(data),
        )

    async def retrieve(self, blob_id: str) -> bytes:
        try:
            return await asyncio.to_thread(self._download, blob_id)
        except ResourceNotFoundError:
            raise NotFoundError("blob", blob_id) from None
        except AzureError as exc:
            msg = f"Failed to download blob {blob_id} from {self._container}: {exc}"
            raise BlobStoreError(msg) from exc
