"""
Durable blob storage for the story cache.

The StoryCache persists entries as small JSON blobs:

    stories/<key>.json        payload
    stories/<key>.meta.json   sidecar (inserted_at, sequence, tier)
    branches/<key>.json
    branches/<key>.meta.json

Backends:
- AzureBlobStore: Azure Blob Storage container (azure-storage-blob)
- LocalFileBlobStore: directory on the local filesystem
- InMemoryBlobStore: process-local dict (tests, ephemeral deployments)

All backends raise DurableStorageError on failure and return None for
missing blobs.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, List, Dict, Protocol

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from codeweaver.services.errors import DurableStorageError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def get(self, path: str) -> Optional[bytes]:
        ...

    async def put(self, path: str, data: bytes) -> None:
        ...

    async def delete(self, path: str) -> bool:
        ...

    async def list_keys(self, prefix: str = "") -> List[str]:
        ...


class InMemoryBlobStore:
    """Dict-backed store"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.writes = 0

    async def get(self, path: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(path)

    async def put(self, path: str, data: bytes) -> None:
        with self._lock:
            self._blobs[path] = data
            self.writes += 1

    async def delete(self, path: str) -> bool:
        with self._lock:
            return self._blobs.pop(path, None) is not None

    async def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))


class LocalFileBlobStore:
    """Filesystem-backed store rooted at a directory"""

    def __init__(self, root: str):
        self.root = Path(root)
        self._executor = ThreadPoolExecutor(max_workers=2)

    async def _run_async(self, func, *args):
        """Run a sync function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args))

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if self.root.resolve() not in resolved.parents:
            raise DurableStorageError(f"Blob path escapes store root: {path}")
        return resolved

    def _get_sync(self, path: str) -> Optional[bytes]:
        file_path = self._resolve(path)
        if not file_path.exists():
            return None
        return file_path.read_bytes()

    def _put_sync(self, path: str, data: bytes) -> None:
        file_path = self._resolve(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a partial blob
        tmp_path = file_path.with_name(file_path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(file_path)

    def _delete_sync(self, path: str) -> bool:
        file_path = self._resolve(path)
        if not file_path.exists():
            return False
        file_path.unlink()
        return True

    def _list_sync(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for file_path in self.root.rglob("*"):
            if file_path.is_file() and not file_path.name.endswith(".tmp"):
                key = file_path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    async def get(self, path: str) -> Optional[bytes]:
        try:
            return await self._run_async(self._get_sync, path)
        except OSError as e:
            raise DurableStorageError(f"Failed to read {path}: {e}") from e

    async def put(self, path: str, data: bytes) -> None:
        try:
            await self._run_async(self._put_sync, path, data)
        except OSError as e:
            raise DurableStorageError(f"Failed to write {path}: {e}") from e

    async def delete(self, path: str) -> bool:
        try:
            return await self._run_async(self._delete_sync, path)
        except OSError as e:
            raise DurableStorageError(f"Failed to delete {path}: {e}") from e

    async def list_keys(self, prefix: str = "") -> List[str]:
        try:
            return await self._run_async(self._list_sync, prefix)
        except OSError as e:
            raise DurableStorageError(f"Failed to list {prefix!r}: {e}") from e


class AzureBlobStore:
    """Azure Blob Storage container store."""

    def __init__(self, connection_string: str, container_name: str = "codeweaver-cache"):
        """
        Initialize blob storage service.

        Args:
            connection_string: Azure Storage connection string
            container_name: Name of the blob container
        """
        self.connection_string = connection_string
        self.container_name = container_name
        self._executor = ThreadPoolExecutor(max_workers=3)
        self._initialized = False
        self._init_lock = threading.Lock()

    def initialize(self):
        """Initialize the blob storage client."""
        with self._init_lock:
            if self._initialized:
                return

            self.client = BlobServiceClient.from_connection_string(self.connection_string)
            self.container = self.client.get_container_client(self.container_name)

            if not self.container.exists():
                logger.info(f"Creating blob container: {self.container_name}")
                self.container.create_container()

            self._initialized = True
            logger.info(f"Azure Blob Storage initialized: {self.container_name}")

    async def _run_async(self, func, *args):
        """Run a sync function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args))

    def _get_sync(self, path: str) -> Optional[bytes]:
        self.initialize()
        try:
            return self.container.get_blob_client(path).download_blob().readall()
        except ResourceNotFoundError:
            return None

    def _put_sync(self, path: str, data: bytes) -> None:
        self.initialize()
        self.container.get_blob_client(path).upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type="application/json"),
        )

    def _delete_sync(self, path: str) -> bool:
        self.initialize()
        try:
            self.container.get_blob_client(path).delete_blob()
            return True
        except ResourceNotFoundError:
            return False

    def _list_sync(self, prefix: str) -> List[str]:
        self.initialize()
        return sorted(blob.name for blob in self.container.list_blobs(name_starts_with=prefix or None))

    async def get(self, path: str) -> Optional[bytes]:
        try:
            return await self._run_async(self._get_sync, path)
        except AzureError as e:
            raise DurableStorageError(f"Azure read failed for {path}: {e}") from e

    async def put(self, path: str, data: bytes) -> None:
        try:
            await self._run_async(self._put_sync, path, data)
        except AzureError as e:
            raise DurableStorageError(f"Azure write failed for {path}: {e}") from e

    async def delete(self, path: str) -> bool:
        try:
            return await self._run_async(self._delete_sync, path)
        except AzureError as e:
            raise DurableStorageError(f"Azure delete failed for {path}: {e}") from e

    async def list_keys(self, prefix: str = "") -> List[str]:
        try:
            return await self._run_async(self._list_sync, prefix)
        except AzureError as e:
            raise DurableStorageError(f"Azure list failed for {prefix!r}: {e}") from e


def create_blob_store(settings) -> BlobStore:
    """Build the durable backend named by settings.blob_backend"""
    backend = (settings.blob_backend or "local").lower()
    if backend == "azure":
        if not settings.azure_blob_connection_string:
            raise ValueError("blob_backend=azure requires AZURE_BLOB_CONNECTION_STRING")
        return AzureBlobStore(settings.azure_blob_connection_string, settings.azure_blob_container)
    if backend == "memory":
        return InMemoryBlobStore()
    if backend == "local":
        return LocalFileBlobStore(settings.blob_local_dir)
    raise ValueError(f"Unknown blob backend: {settings.blob_backend}")
