"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for durable blob operations used by every
pipeline stage. LocalStorage backs development and tests; a cloud bucket
only needs another IStorage implementation registered in StorageFactory.
"""

import os
import uuid
import shutil
import asyncio
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import StorageError
from photo_pipeline.core.logging import get_logger

logger = get_logger(__name__)

# on_progress(bytes_written, total_bytes)
ProgressCallback = Callable[[int, int], None]


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Write an object and return its URL.

        Args:
            path: Object path, e.g. "users/u1/jobs/j1/original.jpg"
            data: Raw bytes of the object
            content_type: MIME type of the object
            on_progress: Called with (bytes_written, total_bytes) while writing

        Returns:
            URL that can be handed to clients or providers

        The object only becomes visible to readers once fully written.
        """
        pass

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Read an object. Raises StorageError if it does not exist."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """
        Delete one object. Idempotent.

        Returns:
            True if something was deleted, False if it was already gone
        """
        pass

    @abstractmethod
    async def delete_tree(self, prefix: str) -> int:
        """Delete every object under a prefix. Idempotent; returns the count removed."""
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[str]:
        """List object paths under a prefix."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if an object exists in storage."""
        pass

    @abstractmethod
    def get_url(self, path: str) -> str:
        """URL for an object path."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    TEMP_SUFFIX = ".part"

    def __init__(
        self,
        base_path: str = "./data/storage",
        public_url: str = "/static/storage",
        chunk_size: int = 256 * 1024
    ):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")
        self.chunk_size = chunk_size

    def _resolve(self, path: str) -> Path:
        """Map an object path onto the base directory, refusing escapes."""
        relative = PurePosixPath(path.strip("/"))
        if not relative.parts or ".." in relative.parts:
            raise StorageError(f"Invalid storage path: {path!r}", path=path)
        return self.base_path.joinpath(*relative.parts)

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None
    ) -> str:
        target = self._resolve(path)
        temp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}{self.TEMP_SUFFIX}")
        total = len(data)
        written = 0

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                for offset in range(0, total, self.chunk_size):
                    chunk = data[offset:offset + self.chunk_size]
                    f.write(chunk)
                    written += len(chunk)
                    if on_progress:
                        on_progress(written, total)
                    # Let sibling jobs run between chunks
                    await asyncio.sleep(0)
            os.replace(temp_path, target)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {path}: {e}", path=path)

        logger.debug("storage_put", path=path, size=total, content_type=content_type)
        return self.get_url(path)

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            with open(target, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}", path=path)
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}", path=path)

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            if not target.exists():
                return False
            target.unlink()
            return True
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}", path=path)

    async def delete_tree(self, prefix: str) -> int:
        root = self._resolve(prefix)
        if not root.exists():
            return 0

        try:
            if root.is_file():
                root.unlink()
                return 1
            count = sum(1 for p in root.rglob("*") if p.is_file())
            shutil.rmtree(root)
        except OSError as e:
            raise StorageError(f"Failed to delete tree {prefix}: {e}", path=prefix)

        logger.debug("storage_delete_tree", prefix=prefix, deleted=count)
        return count

    async def list(self, prefix: str) -> List[str]:
        root = self._resolve(prefix)
        if not root.exists():
            return []
        if root.is_file():
            return [prefix.strip("/")]

        return sorted(
            p.relative_to(self.base_path).as_posix()
            for p in root.rglob("*")
            if p.is_file() and not p.name.endswith(self.TEMP_SUFFIX)
        )

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def get_url(self, path: str) -> str:
        """For local storage, return a relative path that can be served."""
        return f"{self.public_url}/{path.strip('/')}"


class StorageFactory:
    """
    Factory for creating storage instances.

    A cloud backend plugs in here without touching the pipeline.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on environment."""
        if cls._instance is None:
            cls._instance = LocalStorage(
                base_path=settings.LOCAL_STORAGE_PATH,
                public_url=settings.STORAGE_PUBLIC_URL,
                chunk_size=settings.STORAGE_CHUNK_SIZE
            )
        return cls._instance


def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
