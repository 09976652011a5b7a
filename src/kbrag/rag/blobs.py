"""Blob storage for raw document bytes."""

import asyncio
import logging
from pathlib import Path

from .base import BaseBlobStore
from .exceptions import StorageError

logger = logging.getLogger(__name__)


class MemoryBlobStore(BaseBlobStore):
    """In-memory blob storage for testing."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def put(self, locator: str, data: bytes) -> str:
        self._blobs[locator] = bytes(data)
        return locator

    async def get(self, locator: str) -> bytes:
        if locator not in self._blobs:
            raise FileNotFoundError(locator)
        return self._blobs[locator]

    async def delete(self, locator: str) -> bool:
        return self._blobs.pop(locator, None) is not None

    def __contains__(self, locator: str) -> bool:
        return locator in self._blobs


class LocalBlobStore(BaseBlobStore):
    """Blob storage in a local directory.

    Locators are relative paths below ``root``; locators escaping the root
    are rejected with :class:`StorageError`.
    """

    def __init__(self, root: str | Path = "kbrag_files"):
        """Initialize the local blob store.

        Args:
            root: Directory holding the blobs (created on first write)
        """
        self.root = Path(root)

    def _resolve(self, locator: str) -> Path:
        root = self.root.resolve()
        path = (root / locator).resolve()
        if path == root or root not in path.parents:
            raise StorageError(f"Invalid storage locator: {locator}")
        return path

    async def put(self, locator: str, data: bytes) -> str:
        path = self._resolve(locator)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._put_sync, path, data)
        logger.debug(f"Stored {len(data)} bytes at {locator}")
        return locator

    @staticmethod
    def _put_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def get(self, locator: str) -> bytes:
        path = self._resolve(locator)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, path.read_bytes)

    async def delete(self, locator: str) -> bool:
        path = self._resolve(locator)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._delete_sync, path)

    @staticmethod
    def _delete_sync(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
