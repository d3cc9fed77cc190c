"""Ledger backed by the orchestrator's HTTP API."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List

from upletworker.common import ResourceKind, TaskStatus, UpletType
from upletworker.core.http_client import BasicAuthClient
from upletworker.schema import Algo, Data, LearnResult, Prediction, PredictResult, Problem, Resource
from upletworker.utils.errors import (
    AlreadyClaimedError,
    DuplicateReportError,
    InvalidStatusError,
    ProtocolError,
    ValidationError,
)

from .base import Ledger

logger = logging.getLogger(__name__)

DONE_ROUTES = {
    UpletType.LEARN: "learndone",
    UpletType.PREDICT: "preddone",
}

# Models are recorded by the learndone route, never posted directly.
RESOURCE_ROUTES = {
    ResourceKind.ALGO: "algo",
    ResourceKind.DATA: "data",
    ResourceKind.PREDICTION: "prediction",
    ResourceKind.PROBLEM: "problem",
}


class OrchestratorLedger(BasicAuthClient, Ledger):
    """Routes:

    - ``POST /worker/<uplet_type>/<id>`` with ``{"worker": <uuid>}`` claims a task
    - ``POST /learndone/<id>`` and ``POST /preddone/<id>`` take results and failures
    - ``POST /<kind>`` registers an algo, data, prediction or problem record
    - ``GET /<kind>`` lists records of one kind

    A 409 answer means the ledger refused the transition: a lost claim or a
    second terminal report.
    """

    name = "orchestrator"

    async def _post_json(self, url: str, payload: Dict[str, Any]):
        logger.debug(f"POST {url} {payload}")
        return await self.request("POST", url, json=payload)

    async def update_status(
        self, uplet_type: UpletType, status: TaskStatus, task_id: uuid.UUID, worker_id: uuid.UUID
    ) -> None:
        uplet_type = UpletType(uplet_type)
        status = TaskStatus(status)
        if status == TaskStatus.PENDING:
            url = self.url("worker", uplet_type.value, task_id)
            code, body = await self._post_json(url, {"worker": str(worker_id)})
        elif status == TaskStatus.FAILED:
            url = self.url(DONE_ROUTES[uplet_type], task_id)
            code, body = await self._post_json(url, {"status": TaskStatus.FAILED.value})
        else:
            raise InvalidStatusError(f"status update to {status.value} is not supported")

        if code == 200:
            return
        message = self.error_message(body)
        if code == 409:
            if status == TaskStatus.PENDING:
                raise AlreadyClaimedError(f"{uplet_type.value} {task_id}: {message}", task_id=str(task_id))
            raise DuplicateReportError(f"{uplet_type.value} {task_id}: {message}")
        raise ProtocolError(
            f"unexpected status setting {uplet_type.value} {task_id} to {status.value}: {message}",
            code,
            url,
            body,
        )

    async def _post_result(self, uplet_type: UpletType, task_id: uuid.UUID, payload: Dict[str, Any]) -> None:
        url = self.url(DONE_ROUTES[uplet_type], task_id)
        code, body = await self._post_json(url, payload)
        if code in (200, 201):
            return
        message = self.error_message(body)
        if code == 409:
            raise DuplicateReportError(f"{uplet_type.value} {task_id}: {message}")
        raise ProtocolError(
            f"unexpected status posting {uplet_type.value} {task_id} result: {message}", code, url, body
        )

    async def post_learn_result(self, task_id: uuid.UUID, result: LearnResult) -> None:
        await self._post_result(UpletType.LEARN, task_id, result.to_payload())

    async def post_predict_result(self, task_id: uuid.UUID, result: PredictResult) -> None:
        await self._post_result(UpletType.PREDICT, task_id, result.to_payload())

    async def get_list(self, kind: str) -> List[Dict[str, Any]]:
        url = self.url(kind)
        code, body = await self.request("GET", url)
        if code != 200:
            raise ProtocolError(f"unexpected status listing {kind}: {self.error_message(body)}", code, url, body)
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"{kind} list is not JSON", code, url, body) from e
        if isinstance(payload, dict):
            # The orchestrator wraps lists in an object keyed by kind.
            payload = payload.get(kind, [])
        return list(payload)

    async def post_resource(self, resource: Resource) -> None:
        """Register a resource record; the blob itself lives in storage."""
        route = RESOURCE_ROUTES.get(resource.kind)
        if route is None:
            raise ValidationError(f"{resource.kind.value} records cannot be posted to the orchestrator")
        resource.check()
        record = resource.to_dict()
        record["uuid"] = record.pop("id")
        url = self.url(route)
        code, body = await self._post_json(url, record)
        if code in (200, 201):
            logger.info(f"Registered {resource.kind.value} {resource.id} on the orchestrator")
            return
        raise ProtocolError(
            f"unexpected status registering {resource.kind.value} {resource.id}: {self.error_message(body)}",
            code,
            url,
            body,
        )

    async def post_algo(self, algo: Algo) -> None:
        await self.post_resource(algo)

    async def post_data(self, data: Data) -> None:
        await self.post_resource(data)

    async def post_prediction(self, prediction: Prediction) -> None:
        await self.post_resource(prediction)

    async def post_problem(self, problem: Problem) -> None:
        await self.post_resource(problem)
