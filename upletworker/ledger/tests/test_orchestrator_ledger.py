"""OrchestratorLedger routes and status-code mapping against a local aiohttp app."""

import uuid
from contextlib import asynccontextmanager

import pytest
from aiohttp import test_utils, web

from upletworker.common import TaskStatus, UpletType
from upletworker.ledger import OrchestratorLedger, TaskLedgerClient
from upletworker.schema import Algo, Data, LearnResult, Model, PredictResult, Problem
from upletworker.utils.errors import (
    AlreadyClaimedError,
    DuplicateReportError,
    ProtocolError,
    ValidationError,
)


class FakeOrchestrator:
    def __init__(self):
        self.requests = []
        self.status = {}
        self.claim_answer = 200
        self.done_answer = 200
        self.register_answer = 201
        self.registered = {}

    def app(self):
        app = web.Application()
        app.router.add_post("/worker/{uplet_type}/{id}", self.claim)
        app.router.add_post("/learndone/{id}", self.done)
        app.router.add_post("/preddone/{id}", self.done)
        app.router.add_get("/{kind}", self.listing)
        app.router.add_post("/{kind}", self.register)
        return app

    async def claim(self, request):
        payload = await request.json()
        self.requests.append((request.path, payload, request.headers.get("Authorization")))
        if self.claim_answer != 200:
            return web.json_response({"error": "task is not todo"}, status=self.claim_answer)
        self.status[request.match_info["id"]] = "pending"
        return web.json_response({"message": "ok"})

    async def done(self, request):
        payload = await request.json()
        self.requests.append((request.path, payload, request.headers.get("Authorization")))
        if self.done_answer >= 300:
            return web.json_response({"error": "already finished"}, status=self.done_answer)
        self.status[request.match_info["id"]] = payload["status"]
        return web.json_response({"message": "ok"}, status=self.done_answer)

    async def register(self, request):
        payload = await request.json()
        if self.register_answer >= 300:
            return web.json_response({"error": "unknown problem"}, status=self.register_answer)
        self.registered.setdefault(request.match_info["kind"], []).append(payload)
        return web.json_response({"uuid": payload["uuid"]}, status=self.register_answer)

    async def listing(self, request):
        kind = request.match_info["kind"]
        return web.json_response({kind: [{"key": f"{kind}_{uuid.UUID(int=1)}"}]})


@asynccontextmanager
async def running(orchestrator):
    server = test_utils.TestServer(orchestrator.app())
    await server.start_server()
    ledger = OrchestratorLedger(str(server.make_url("")), "orch", "secret", timeout=5)
    try:
        yield ledger
    finally:
        await ledger.close()
        await server.close()


@pytest.mark.asyncio
async def test_claim_posts_worker_id():
    orchestrator = FakeOrchestrator()
    worker_id, task_id = uuid.uuid4(), uuid.uuid4()
    async with running(orchestrator) as ledger:
        await TaskLedgerClient(ledger, worker_id).claim(UpletType.LEARN, task_id)

    path, payload, auth = orchestrator.requests[0]
    assert path == f"/worker/learnuplet/{task_id}"
    assert payload == {"worker": str(worker_id)}
    assert auth.startswith("Basic ")
    assert orchestrator.status[str(task_id)] == "pending"


@pytest.mark.asyncio
async def test_lost_claim_is_already_claimed():
    orchestrator = FakeOrchestrator()
    orchestrator.claim_answer = 409
    async with running(orchestrator) as ledger:
        with pytest.raises(AlreadyClaimedError, match="task is not todo"):
            await ledger.update_status(UpletType.PREDICT, TaskStatus.PENDING, uuid.uuid4(), uuid.uuid4())


@pytest.mark.asyncio
async def test_failure_goes_to_done_route():
    orchestrator = FakeOrchestrator()
    task_id = uuid.uuid4()
    async with running(orchestrator) as ledger:
        await TaskLedgerClient(ledger, uuid.uuid4()).report_failure(UpletType.PREDICT, task_id)

    assert orchestrator.requests[0][:2] == (f"/preddone/{task_id}", {"status": "failed"})


@pytest.mark.asyncio
async def test_results_accept_created():
    orchestrator = FakeOrchestrator()
    orchestrator.done_answer = 201
    learn_id, pred_id, prediction = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    async with running(orchestrator) as ledger:
        await ledger.post_learn_result(learn_id, LearnResult(perf=0.7, test_perf={"f1": 0.7}))
        await ledger.post_predict_result(pred_id, PredictResult(prediction_storage_uuid=prediction))

    learn_path, learn_payload, _ = orchestrator.requests[0]
    assert learn_path == f"/learndone/{learn_id}"
    assert learn_payload == {"status": "done", "perf": 0.7, "train_perf": {}, "test_perf": {"f1": 0.7}}
    assert orchestrator.requests[1][1] == {"status": "done", "prediction_storage_uuid": str(prediction)}


@pytest.mark.asyncio
async def test_duplicate_and_unexpected_answers():
    orchestrator = FakeOrchestrator()
    async with running(orchestrator) as ledger:
        orchestrator.done_answer = 409
        with pytest.raises(DuplicateReportError):
            await ledger.post_learn_result(uuid.uuid4(), LearnResult(perf=1.0))

        orchestrator.done_answer = 500
        with pytest.raises(ProtocolError) as exc_info:
            await ledger.update_status(UpletType.LEARN, TaskStatus.FAILED, uuid.uuid4(), uuid.uuid4())
    assert exc_info.value.status_code == 500
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_get_list_unwraps_kind():
    async with running(FakeOrchestrator()) as ledger:
        records = await ledger.get_list("learnuplet")
    assert records == [{"key": f"learnuplet_{uuid.UUID(int=1)}"}]


@pytest.mark.asyncio
async def test_resources_are_registered_on_their_route():
    orchestrator = FakeOrchestrator()
    owner = uuid.uuid4()
    algo = Algo.new(owner=owner, name="svm")
    problem = Problem.new(owner=owner, name="iris", description="classify flowers")
    data = Data.new(owner=owner)
    async with running(orchestrator) as ledger:
        await ledger.post_algo(algo)
        await ledger.post_problem(problem)
        orchestrator.register_answer = 200
        await ledger.post_data(data)

    assert orchestrator.registered["algo"] == [
        {"uuid": str(algo.id), "timestamp_upload": algo.timestamp_upload, "owner": str(owner), "name": "svm"}
    ]
    assert orchestrator.registered["problem"][0]["description"] == "classify flowers"
    assert orchestrator.registered["data"][0]["uuid"] == str(data.id)


@pytest.mark.asyncio
async def test_invalid_or_refused_registrations():
    orchestrator = FakeOrchestrator()
    owner = uuid.uuid4()
    async with running(orchestrator) as ledger:
        with pytest.raises(ValidationError, match="'name' unset"):
            await ledger.post_algo(Algo.new(owner=owner))
        with pytest.raises(ValidationError, match="cannot be posted"):
            await ledger.post_resource(Model.new(owner=owner, algo=uuid.uuid4()))
        assert orchestrator.registered == {}

        orchestrator.register_answer = 400
        with pytest.raises(ProtocolError, match="unknown problem") as exc_info:
            await ledger.post_problem(Problem.new(owner=owner, name="iris", description="flowers"))
    assert exc_info.value.status_code == 400
    assert not exc_info.value.retryable
