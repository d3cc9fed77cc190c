"""Blob store interface."""

from __future__ import annotations

import io
import logging
import os
from abc import ABC, abstractmethod
from typing import BinaryIO, Mapping, Optional

logger = logging.getLogger(__name__)


def blob_size(reader: BinaryIO) -> int:
    """Remaining bytes in a seekable reader."""
    try:
        return os.fstat(reader.fileno()).st_size - reader.tell()
    except (AttributeError, OSError, io.UnsupportedOperation):
        position = reader.tell()
        end = reader.seek(0, io.SEEK_END)
        reader.seek(position)
        return end - position


class BlobStore(ABC):
    """Key-addressed binary objects.

    Keys are ``<kind>/<uuid>`` strings. ``put`` consumes exactly ``size`` bytes
    or fails without leaving an object behind; ``get`` raises
    :class:`BlobNotFoundError` for a missing key and :class:`BlobStoreError`
    for I/O failures.
    """

    name: str = "base"

    @abstractmethod
    async def put(
        self,
        key: str,
        reader: BinaryIO,
        size: int,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> BinaryIO:
        """Return a reader positioned at the start of the blob; the caller closes it."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def read(self, key: str) -> bytes:
        reader = await self.get(key)
        try:
            return reader.read()
        finally:
            reader.close()

    async def rename(self, old_key: str, new_key: str) -> None:
        """Copy ``old_key`` to ``new_key`` then delete the source.

        If the delete fails both keys remain and the error propagates.
        """
        reader = await self.get(old_key)
        try:
            await self.put(new_key, reader, blob_size(reader))
        finally:
            reader.close()
        await self.delete(old_key)
        logger.debug(f"Renamed blob {old_key} -> {new_key}")

    async def close(self) -> None:
        return None
