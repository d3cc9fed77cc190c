"""In-memory blob store for tests and local runs."""

from __future__ import annotations

import io
from typing import BinaryIO, Dict, Mapping, Optional, Set

from upletworker.utils.errors import BlobNotFoundError, BlobSizeMismatchError, BlobStoreError

from .base import BlobStore


class InMemoryBlobStore(BlobStore):
    name = "memory"

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self.metadata: Dict[str, Dict[str, str]] = {}
        self._failures: Dict[str, Set[str]] = {}

    def inject_failure(self, key: str, *operations: str) -> None:
        """Make ``operations`` (put, get, delete; all when omitted) on ``key`` raise BlobStoreError."""
        self._failures.setdefault(key, set()).update(operations or ("put", "get", "delete"))

    def clear_failures(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, key: str, operation: str) -> None:
        if operation in self._failures.get(key, ()):
            raise BlobStoreError(f"{operation} {key}: injected failure")

    async def put(
        self,
        key: str,
        reader: BinaryIO,
        size: int,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._maybe_fail(key, "put")
        data = reader.read(size)
        if len(data) != size:
            raise BlobSizeMismatchError(key, size, len(data))
        if reader.read(1):
            raise BlobSizeMismatchError(key, size, size + 1)
        self._blobs[key] = bytes(data)
        self.metadata[key] = dict(metadata or {})

    async def get(self, key: str) -> BinaryIO:
        self._maybe_fail(key, "get")
        if key not in self._blobs:
            raise BlobNotFoundError(key)
        return io.BytesIO(self._blobs[key])

    async def delete(self, key: str) -> None:
        self._maybe_fail(key, "delete")
        if key not in self._blobs:
            raise BlobNotFoundError(key)
        del self._blobs[key]
        self.metadata.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._blobs

    def keys(self):
        return sorted(self._blobs)
