"""Filesystem blob store with atomic writes."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Mapping, Optional, Union

from upletworker.utils.errors import BlobNotFoundError, BlobSizeMismatchError, BlobStoreError

from .base import BlobStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class LocalBlobStore(BlobStore):
    """Blobs stored as files under ``data_dir``, one file per key."""

    name = "local"

    def __init__(self, data_dir: Union[str, Path]):
        self.root = Path(data_dir).resolve()
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, key: str) -> Path:
        if not key or key.startswith("/"):
            raise ValueError(f"invalid blob key: {key!r}")
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"blob key escapes the store root: {key!r}")
        return path

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _write(self, key: str, reader: BinaryIO, size: int) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            written = 0
            with os.fdopen(fd, "wb") as tmp:
                while written < size:
                    chunk = reader.read(min(CHUNK_SIZE, size - written))
                    if not chunk:
                        break
                    tmp.write(chunk)
                    written += len(chunk)
                if written != size:
                    raise BlobSizeMismatchError(key, size, written)
                if reader.read(1):
                    raise BlobSizeMismatchError(key, size, size + 1)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def put(
        self,
        key: str,
        reader: BinaryIO,
        size: int,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        try:
            await self._run(self._write, key, reader, size)
        except OSError as e:
            raise BlobStoreError(f"put {key}: {e}") from e
        logger.debug(f"Stored blob {key} ({size} bytes)")

    def _open(self, key: str) -> BinaryIO:
        try:
            return open(self.path_for(key), "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise BlobNotFoundError(key) from e

    async def get(self, key: str) -> BinaryIO:
        try:
            return await self._run(self._open, key)
        except BlobNotFoundError:
            raise
        except OSError as e:
            raise BlobStoreError(f"get {key}: {e}") from e

    def _unlink(self, key: str) -> None:
        try:
            os.unlink(self.path_for(key))
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e

    async def delete(self, key: str) -> None:
        try:
            await self._run(self._unlink, key)
        except BlobNotFoundError:
            raise
        except OSError as e:
            raise BlobStoreError(f"delete {key}: {e}") from e
