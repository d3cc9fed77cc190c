"""Client for the HTTP storage service and a BlobStore adapter on top of it."""

from __future__ import annotations

import dataclasses
import io
import json
import logging
import time
import uuid
from typing import BinaryIO, Mapping, Optional, Tuple

import aiohttp

from upletworker.common import ResourceKind
from upletworker.core.http_client import BasicAuthClient
from upletworker.schema import RESOURCE_TYPES, RESOURCE_UPDATE_TYPES, Model, Resource
from upletworker.schema.serialization import parse_uuid
from upletworker.utils.errors import (
    BlobNotFoundError,
    BlobSizeMismatchError,
    ProtocolError,
    ValidationError,
)

from .base import BlobStore

logger = logging.getLogger(__name__)

BLOB_SUFFIX = "blob"


class StorageClient(BasicAuthClient):
    """Routes: ``GET /<kind>/<id>``, ``GET /<kind>/<id>/blob``, ``POST /<kind>``, ``DELETE /<kind>/<id>``."""

    async def get_blob(self, kind: ResourceKind, resource_id: uuid.UUID) -> bytes:
        url = self.url(ResourceKind(kind).value, resource_id, BLOB_SUFFIX)
        status, body = await self.request("GET", url)
        if status == 404:
            raise BlobNotFoundError(f"{ResourceKind(kind).value}/{resource_id}")
        if status != 200:
            raise ProtocolError(
                f"unexpected status fetching blob: {self.error_message(body)}", status, url, body
            )
        return body

    async def get_resource(self, kind: ResourceKind, resource_id: uuid.UUID) -> Resource:
        kind = ResourceKind(kind)
        url = self.url(kind.value, resource_id)
        status, body = await self.request("GET", url)
        if status == 404:
            raise BlobNotFoundError(f"{kind.value}/{resource_id}")
        if status != 200:
            raise ProtocolError(
                f"unexpected status fetching {kind.value}: {self.error_message(body)}", status, url, body
            )
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"{kind.value} metadata is not JSON", status, url, body) from e
        return RESOURCE_TYPES[kind].from_dict(payload)

    async def post_resource(self, resource: Resource, reader: BinaryIO, size: int) -> None:
        """Upload metadata and content as multipart; the blob part comes last."""
        url = self.url(resource.kind.value)
        form = aiohttp.FormData()
        for name, value in resource.form_fields().items():
            form.add_field(name, value)
        form.add_field("size", str(size))
        form.add_field(
            BLOB_SUFFIX,
            reader,
            filename=str(resource.id),
            content_type="application/octet-stream",
        )
        status, body = await self.request("POST", url, data=form)
        if status != 201:
            raise ProtocolError(
                f"storage refused {resource.kind.value} {resource.id}: {self.error_message(body)}",
                status,
                url,
                body,
            )
        logger.info(f"Uploaded {resource.kind.value} {resource.id} ({size} bytes)")

    async def post_model(self, model: Model, reader: BinaryIO, size: int) -> None:
        # The storage service only accepts models of algos it knows.
        await self.get_resource(ResourceKind.ALGO, model.algo)
        await self.post_resource(model, reader, size)

    async def delete_resource(self, kind: ResourceKind, resource_id: uuid.UUID) -> None:
        url = self.url(ResourceKind(kind).value, resource_id)
        status, body = await self.request("DELETE", url)
        if status == 404:
            raise BlobNotFoundError(f"{ResourceKind(kind).value}/{resource_id}")
        if status not in (200, 204):
            raise ProtocolError(f"unexpected status deleting blob: {self.error_message(body)}", status, url, body)


def split_key(key: str) -> Tuple[ResourceKind, uuid.UUID]:
    """Split a ``<kind>/<uuid>`` blob key."""
    parts = key.split("/")
    if len(parts) != 2:
        raise ValidationError(f"blob key {key!r} is not of the form <kind>/<uuid>")
    try:
        kind = ResourceKind(parts[0])
    except ValueError as e:
        raise ValidationError(f"blob key {key!r} has unknown kind {parts[0]!r}") from e
    return kind, parse_uuid(parts[1], kind.value)


class StorageBlobStore(BlobStore):
    """BlobStore backed by the storage service; ``metadata`` fills the resource record."""

    name = "storage"

    def __init__(self, client: StorageClient, owner: uuid.UUID):
        self.client = client
        self.owner = owner

    async def put(
        self,
        key: str,
        reader: BinaryIO,
        size: int,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        kind, resource_id = split_key(key)
        data = reader.read(size)
        if len(data) != size:
            raise BlobSizeMismatchError(key, size, len(data))
        if reader.read(1):
            raise BlobSizeMismatchError(key, size, size + 1)
        resource = RESOURCE_TYPES[kind].new(id=resource_id, owner=self.owner)
        if metadata:
            resource = resource.apply(RESOURCE_UPDATE_TYPES[kind].from_form(metadata))
        await self._post(resource, data)

    async def _post(self, resource: Resource, data: bytes) -> None:
        resource.check()
        if isinstance(resource, Model):
            await self.client.post_model(resource, io.BytesIO(data), len(data))
        else:
            await self.client.post_resource(resource, io.BytesIO(data), len(data))

    async def get(self, key: str) -> BinaryIO:
        kind, resource_id = split_key(key)
        return io.BytesIO(await self.client.get_blob(kind, resource_id))

    async def delete(self, key: str) -> None:
        kind, resource_id = split_key(key)
        await self.client.delete_resource(kind, resource_id)

    async def rename(self, old_key: str, new_key: str) -> None:
        """Re-upload the source record and content under the new id, then delete the source.

        The storage service keeps metadata per resource, so the copy carries the
        source record (name, algo, ...) rather than a bare blob.
        """
        kind, old_id = split_key(old_key)
        new_kind, new_id = split_key(new_key)
        if new_kind != kind:
            raise ValidationError(f"cannot rename {old_key} to {new_key}: kinds differ")
        source = await self.client.get_resource(kind, old_id)
        data = await self.client.get_blob(kind, old_id)
        copy = dataclasses.replace(
            source,
            id=new_id,
            owner=source.owner or self.owner,
            timestamp_upload=int(time.time()),
        )
        await self._post(copy, data)
        await self.delete(old_key)
        logger.debug(f"Renamed blob {old_key} -> {new_key}")

    async def close(self) -> None:
        await self.client.close()
