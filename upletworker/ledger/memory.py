"""In-memory ledger for tests and single-process runs."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from upletworker.common import TERMINAL_STATUSES, TaskStatus, UpletType
from upletworker.schema import LearnResult, LearnTask, PredictResult, PredictTask, UpletTask
from upletworker.schema.task import coerce_status
from upletworker.utils.errors import (
    AlreadyClaimedError,
    DuplicateReportError,
    InvalidStatusError,
    NetworkError,
    ProtocolError,
)

from .base import Ledger

logger = logging.getLogger(__name__)


class InMemoryLedger(Ledger):
    """Holds uplets in a dict; claims are serialized by one lock.

    With ``lease_seconds`` set, a pending task whose claim is older than the
    lease can be claimed again (its worker is presumed dead).
    """

    name = "memory"

    def __init__(
        self,
        lease_seconds: Optional[float] = None,
        latency: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lease_seconds = lease_seconds
        self.latency = latency
        self.clock = clock
        self.unavailable = False
        self.calls: List[Tuple[str, uuid.UUID, str]] = []
        self._tasks: Dict[uuid.UUID, UpletTask] = {}
        self._claimed_at: Dict[uuid.UUID, float] = {}
        self._lock = asyncio.Lock()

    def add_task(self, task: UpletTask) -> None:
        task.check()
        self._tasks[task.id] = task

    def get_task(self, task_id: uuid.UUID) -> UpletTask:
        return self._tasks[task_id]

    def _url(self, task_id: uuid.UUID) -> str:
        return f"memory://ledger/{task_id}"

    def _lookup(self, uplet_type: UpletType, task_id: uuid.UUID) -> UpletTask:
        task = self._tasks.get(task_id)
        if task is None or task.uplet_type != uplet_type:
            raise ProtocolError(f"unexisting {uplet_type.value} {task_id}", 404, self._url(task_id))
        return task

    async def _enter(self, operation: str, task_id: uuid.UUID, detail: str) -> None:
        self.calls.append((operation, task_id, detail))
        if self.unavailable:
            raise NetworkError("ledger unavailable", url=self._url(task_id))
        if self.latency:
            await asyncio.sleep(self.latency)

    def _lease_expired(self, task_id: uuid.UUID) -> bool:
        if self.lease_seconds is None or task_id not in self._claimed_at:
            return False
        return self.clock() - self._claimed_at[task_id] > self.lease_seconds

    async def update_status(
        self, uplet_type: UpletType, status: TaskStatus, task_id: uuid.UUID, worker_id: uuid.UUID
    ) -> None:
        async with self._lock:
            await self._enter("update_status", task_id, TaskStatus(status).value)
            task = self._lookup(UpletType(uplet_type), task_id)
            current = coerce_status(task.status)
            if status == TaskStatus.PENDING:
                # A redelivered message lets the holder claim its own task again.
                reclaim = current == TaskStatus.PENDING and (
                    task.worker == worker_id or self._lease_expired(task_id)
                )
                if current != TaskStatus.TODO and not reclaim:
                    raise AlreadyClaimedError(
                        f"{task.uplet_type.value} {task_id} is {current.value} (worker {task.worker})",
                        task_id=str(task_id),
                    )
                if reclaim and task.worker != worker_id:
                    logger.warning(f"Lease on {task_id} held by {task.worker} expired, reassigning to {worker_id}")
                self._tasks[task_id] = task.with_status(TaskStatus.PENDING, worker=worker_id)
                self._claimed_at[task_id] = self.clock()
            elif status == TaskStatus.FAILED:
                if current in TERMINAL_STATUSES:
                    raise DuplicateReportError(f"{task.uplet_type.value} {task_id} is already {current.value}")
                self._tasks[task_id] = task.with_status(TaskStatus.FAILED)
                self._claimed_at.pop(task_id, None)
            else:
                raise InvalidStatusError(f"status update to {TaskStatus(status).value} is not supported")

    async def _complete(self, uplet_type: UpletType, task_id: uuid.UUID, **changes) -> None:
        task = self._lookup(uplet_type, task_id)
        current = coerce_status(task.status)
        if current in TERMINAL_STATUSES:
            raise DuplicateReportError(f"{uplet_type.value} {task_id} is already {current.value}")
        if current != TaskStatus.PENDING:
            raise ProtocolError(
                f"{uplet_type.value} {task_id} is {current.value}, only pending tasks can complete",
                409,
                self._url(task_id),
            )
        self._tasks[task_id] = task.with_status(TaskStatus.DONE, **changes)
        self._claimed_at.pop(task_id, None)

    async def post_learn_result(self, task_id: uuid.UUID, result: LearnResult) -> None:
        async with self._lock:
            await self._enter("post_learn_result", task_id, TaskStatus(result.status).value)
            await self._complete(
                UpletType.LEARN,
                task_id,
                perf=result.perf,
                train_perf=dict(result.train_perf),
                test_perf=dict(result.test_perf),
            )

    async def post_predict_result(self, task_id: uuid.UUID, result: PredictResult) -> None:
        async with self._lock:
            await self._enter("post_predict_result", task_id, TaskStatus(result.status).value)
            await self._complete(
                UpletType.PREDICT,
                task_id,
                prediction_storage_uuid=result.prediction_storage_uuid,
            )

    def tasks_with_status(self, status: TaskStatus) -> List[UpletTask]:
        return [t for t in self._tasks.values() if coerce_status(t.status) == status]

    def learn_tasks(self) -> List[LearnTask]:
        return [t for t in self._tasks.values() if isinstance(t, LearnTask)]

    def predict_tasks(self) -> List[PredictTask]:
        return [t for t in self._tasks.values() if isinstance(t, PredictTask)]
