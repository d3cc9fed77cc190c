"""Blob store registry and lookup helpers."""

from __future__ import annotations

import uuid
from typing import Dict, Type

from upletworker.config import Settings
from upletworker.core import Registry

from .base import BlobStore
from .http import StorageBlobStore, StorageClient
from .local import LocalBlobStore
from .memory import InMemoryBlobStore

_BLOBSTORE_REGISTRY = Registry(kind="blobstore")
_BLOBSTORE_REGISTRY.register("memory", InMemoryBlobStore)
_BLOBSTORE_REGISTRY.register("local", LocalBlobStore)
_BLOBSTORE_REGISTRY.register("storage", StorageBlobStore)


def get_blobstore(name: str, **kwargs) -> BlobStore:
    return _BLOBSTORE_REGISTRY.create(name or "local", **kwargs)


def register_blobstore(name: str, store_cls: Type[BlobStore]) -> None:
    _BLOBSTORE_REGISTRY.register(name, store_cls)


def list_blobstores() -> Dict[str, Type[BlobStore]]:
    return _BLOBSTORE_REGISTRY.items()


def blobstore_from_settings(settings: Settings) -> BlobStore:
    name = settings.blobstore_backend.strip().lower()
    if name == "storage":
        client = StorageClient(
            settings.storage_url,
            settings.storage_user,
            settings.storage_password,
            timeout=settings.http_timeout,
        )
        return get_blobstore(name, client=client, owner=uuid.UUID(settings.worker_id))
    if name == "local":
        return get_blobstore(name, data_dir=settings.blobstore_data_dir)
    return get_blobstore(name)
