"""Per-task scratch directories and blob materialization."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, Optional, Union

from upletworker.common import ResourceKind
from upletworker.storage import BlobStore
from upletworker.utils.archive import extract_targz, targz_directory

logger = logging.getLogger(__name__)


def blob_key(kind: Union[ResourceKind, str], resource_id: uuid.UUID) -> str:
    return f"{ResourceKind(kind).value}/{resource_id}"


class TaskWorkspace:
    """Temporary directory tree for one task, removed on exit even when the task fails.

    Usage::

        async with TaskWorkspace(task.id, root) as ws:
            algo_dir = await ws.materialize(store, blob_key("algo", task.algo), "algo")
    """

    def __init__(self, task_id: uuid.UUID, root: Optional[Union[str, Path]] = None):
        self.task_id = task_id
        self.root = Path(root) if root else None
        self.path: Optional[Path] = None

    async def __aenter__(self) -> "TaskWorkspace":
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"uplet-{self.task_id}-", dir=self.root))
        logger.debug(f"Workspace for {self.task_id} at {self.path}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.path is None:
            return
        path, self.path = self.path, None
        loop = asyncio.get_running_loop()
        await asyncio.shield(loop.run_in_executor(None, shutil.rmtree, str(path), True))

    def dir(self, *parts: str) -> Path:
        if self.path is None:
            raise RuntimeError("workspace is not open")
        path = self.path.joinpath(*parts)
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def materialize(self, store: BlobStore, key: str, *dest: str) -> Path:
        """Fetch the tar.gz blob at ``key`` and unpack it under ``dest``."""
        target = self.dir(*dest)
        reader = await store.get(key)
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, extract_targz, reader, target)
        finally:
            reader.close()
        logger.debug(f"Materialized {key} into {target}")
        return target

    async def materialize_all(
        self, store: BlobStore, kind: Union[ResourceKind, str], ids: Iterable[uuid.UUID], *dest: str
    ) -> Path:
        """Unpack every blob into its own ``<dest>/<uuid>`` subdirectory."""
        target = self.dir(*dest)
        for resource_id in ids:
            await self.materialize(store, blob_key(kind, resource_id), *dest, str(resource_id))
        return target

    async def pack(self, *src: str) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, targz_directory, self.dir(*src))
