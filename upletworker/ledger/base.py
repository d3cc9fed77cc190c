"""Ledger backends and the worker-facing task ledger client."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional, Union

from upletworker.common import TaskStatus, UpletType, WORKER_STATUS_TARGETS
from upletworker.schema import LearnResult, PredictResult
from upletworker.utils.errors import DuplicateReportError, InvalidStatusError

logger = logging.getLogger(__name__)


class Ledger(ABC):
    """Canonical store of uplet state; arbitrates claims between workers.

    Backends raise :class:`AlreadyClaimedError` when a claim loses and
    :class:`DuplicateReportError` when a terminal report targets a task
    that is already terminal.
    """

    name: str = "base"

    @abstractmethod
    async def update_status(
        self, uplet_type: UpletType, status: TaskStatus, task_id: uuid.UUID, worker_id: uuid.UUID
    ) -> None:
        """Apply a pending (claim) or failed transition."""

    @abstractmethod
    async def post_learn_result(self, task_id: uuid.UUID, result: LearnResult) -> None:
        ...

    @abstractmethod
    async def post_predict_result(self, task_id: uuid.UUID, result: PredictResult) -> None:
        ...

    async def close(self) -> None:
        return None


def validate_uplet_type(uplet_type: Union[UpletType, str]) -> UpletType:
    try:
        return UpletType(uplet_type)
    except ValueError:
        allowed = ", ".join(t.value for t in UpletType)
        raise InvalidStatusError(f'uplet type "{uplet_type}" is invalid. Allowed values are {allowed}') from None


def validate_worker_status(status: Union[TaskStatus, str]) -> TaskStatus:
    try:
        status = TaskStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in TaskStatus)
        raise InvalidStatusError(f'status "{status}" is invalid. Allowed values are {allowed}') from None
    if status not in WORKER_STATUS_TARGETS:
        raise InvalidStatusError(
            f"status update to {status.value}: only pending and failed are supported, "
            "done is reported through the result routes"
        )
    return status


class TaskLedgerClient:
    """What a worker may do to the ledger: claim, report a result, report a failure.

    Arguments are validated before anything is sent.
    """

    def __init__(self, ledger: Ledger, worker_id: uuid.UUID):
        self.ledger = ledger
        self.worker_id = worker_id

    async def update_status(
        self,
        uplet_type: Union[UpletType, str],
        status: Union[TaskStatus, str],
        task_id: uuid.UUID,
        worker_id: Optional[uuid.UUID] = None,
    ) -> None:
        uplet_type = validate_uplet_type(uplet_type)
        status = validate_worker_status(status)
        await self.ledger.update_status(uplet_type, status, task_id, worker_id or self.worker_id)

    async def claim(self, uplet_type: Union[UpletType, str], task_id: uuid.UUID) -> None:
        """Move the task todo -> pending for this worker; raises AlreadyClaimedError on a lost race."""
        await self.update_status(uplet_type, TaskStatus.PENDING, task_id)
        logger.info(f"Worker {self.worker_id} claimed {UpletType(uplet_type).value} {task_id}")

    async def report_learn_result(self, task_id: uuid.UUID, result: LearnResult) -> None:
        if TaskStatus(result.status) != TaskStatus.DONE:
            raise InvalidStatusError(f"learn result for {task_id} must be done, got {result.status}")
        try:
            await self.ledger.post_learn_result(task_id, result)
        except DuplicateReportError as e:
            logger.warning(f"Learnuplet {task_id} already terminal, result ignored: {e}")
            return
        logger.info(f"Reported learnuplet {task_id} done (perf={result.perf})")

    async def report_predict_result(self, task_id: uuid.UUID, result: PredictResult) -> None:
        if TaskStatus(result.status) != TaskStatus.DONE:
            raise InvalidStatusError(f"predict result for {task_id} must be done, got {result.status}")
        try:
            await self.ledger.post_predict_result(task_id, result)
        except DuplicateReportError as e:
            logger.warning(f"Preduplet {task_id} already terminal, result ignored: {e}")
            return
        logger.info(f"Reported preduplet {task_id} done (prediction {result.prediction_storage_uuid})")

    async def report_failure(self, uplet_type: Union[UpletType, str], task_id: uuid.UUID) -> None:
        try:
            await self.update_status(uplet_type, TaskStatus.FAILED, task_id)
        except DuplicateReportError as e:
            logger.warning(f"{UpletType(uplet_type).value} {task_id} already terminal, failure ignored: {e}")
            return
        logger.info(f"Reported {UpletType(uplet_type).value} {task_id} failed")

    async def close(self) -> None:
        await self.ledger.close()
