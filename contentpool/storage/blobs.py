"""Blob store interface and a filesystem implementation.

Keys are slash-separated relative paths such as ``shared/<hash>/original.md``
or ``users/<user>/private/<entry>.md``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Protocol

from contentpool.errors import NotFoundError, TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_BLOB_DIR = "data/blobs"


class BlobStore(Protocol):
    """Protocol for the object store the pool writes into."""

    async def get(self, key: str) -> bytes:
        """Return the object's bytes. Raises NotFoundError if absent."""
        ...

    async def put(self, key: str, data: bytes) -> None:
        ...

    async def delete(self, key: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def list(self, prefix: str = "") -> List[str]:
        ...


class LocalBlobStore:
    """Store blobs as files under ``base_dir``. Writes are atomic (tmp + rename).

    Usage:
        blobs = LocalBlobStore("data/blobs")
        await blobs.put("shared/abc/original.md", b"# Title")
    """

    def __init__(self, base_dir: str = DEFAULT_BLOB_DIR):
        self.base_dir = Path(base_dir)

    def _path(self, key: str) -> Path:
        key = key.strip("/")
        if not key or ".." in Path(key).parts:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.base_dir / key

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except FileNotFoundError as e:
            raise NotFoundError(f"Blob not found: {e.filename}") from e
        except OSError as e:
            raise TransientIOError(f"Blob store I/O failed: {e}") from e

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        return await self._run(path.read_bytes)

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        await self._run(_write)
        logger.debug("Blob written: %s (%d bytes)", key, len(data))

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _delete() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        return await self._run(_delete)

    async def exists(self, key: str) -> bool:
        path = self._path(key)
        return await self._run(path.is_file)

    async def list(self, prefix: str = "") -> List[str]:
        base = self.base_dir

        def _list() -> List[str]:
            if not base.exists():
                return []
            keys = []
            for p in base.rglob("*"):
                if p.is_file() and not p.name.startswith(".tmp-"):
                    key = p.relative_to(base).as_posix()
                    if key.startswith(prefix):
                        keys.append(key)
            return sorted(keys)

        return await self._run(_list)
