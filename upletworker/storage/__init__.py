"""Blob stores: in-memory, local filesystem and the HTTP storage service."""

from .base import BlobStore
from .http import StorageBlobStore, StorageClient
from .local import LocalBlobStore
from .memory import InMemoryBlobStore
from .registry import blobstore_from_settings, get_blobstore, list_blobstores, register_blobstore

__all__ = [
    "BlobStore",
    "StorageBlobStore",
    "StorageClient",
    "LocalBlobStore",
    "InMemoryBlobStore",
    "blobstore_from_settings",
    "get_blobstore",
    "list_blobstores",
    "register_blobstore",
]
