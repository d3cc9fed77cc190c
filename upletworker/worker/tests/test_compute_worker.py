"""Learn and predict flows end to end with in-memory ledger, blob store, broker and sandbox."""

import asyncio
import io
import json
import tarfile
import uuid

import pytest

from upletworker.broker import Consumer, InMemoryBroker
from upletworker.common import SandboxOperation, TaskStatus
from upletworker.config import Settings
from upletworker.ledger import InMemoryLedger
from upletworker.sandbox import MockSandbox, ScriptedRun
from upletworker.sandbox.memory import DEFAULT_SCRIPT
from upletworker.schema import LearnTask, PredictTask
from upletworker.storage import InMemoryBlobStore
from upletworker.utils.archive import targz_directory
from upletworker.utils.error_classifier import Disposition
from upletworker.utils.errors import ValidationError
from upletworker.worker import ComputeWorker


class World:
    def __init__(self, tmp_path, sandbox=None, ledger=None):
        self.tmp_path = tmp_path
        self.workdir = tmp_path / "work"
        self.store = InMemoryBlobStore()
        self.ledger = ledger or InMemoryLedger()
        self.broker = InMemoryBroker(max_retries=2)
        self.sandbox = sandbox or MockSandbox()
        self.config = Settings(
            workdir=str(self.workdir),
            sandbox_timeout=5,
            learn_timeout=10,
            predict_timeout=10,
            learn_topic="learn",
            predict_topic="predict",
        )
        self.consumer = Consumer(self.broker, "worker-1", poll_timeout=0.05, report_backoff_cap=0.001)
        self.worker = ComputeWorker(
            uuid.uuid4(), self.ledger, self.store, self.sandbox, self.consumer, self.config
        )

    async def put_archive(self, kind, resource_id, files):
        src = self.tmp_path / "src" / f"{kind}-{resource_id}"
        src.mkdir(parents=True)
        for name, content in files.items():
            (src / name).write_bytes(content)
        archive = targz_directory(src)
        await self.store.put(f"{kind}/{resource_id}", io.BytesIO(archive), len(archive))

    async def learn_task(self, **overrides):
        fields = dict(
            id=uuid.uuid4(),
            problem=uuid.uuid4(),
            algo=uuid.uuid4(),
            train_data=(uuid.uuid4(), uuid.uuid4()),
            test_data=(uuid.uuid4(),),
            model_end=uuid.uuid4(),
        )
        fields.update(overrides)
        task = LearnTask(**fields)
        await self.put_archive("algo", task.algo, {"main.py": b"print('train')\n"})
        for data_id in task.train_data + task.test_data:
            await self.put_archive("data", data_id, {"rows.csv": b"1,2\n3,4\n"})
        self.ledger.add_task(task)
        return task

    async def predict_task(self):
        task = PredictTask(
            id=uuid.uuid4(), problem=uuid.uuid4(), algo=uuid.uuid4(), model=uuid.uuid4(), data=(uuid.uuid4(),)
        )
        await self.put_archive("algo", task.algo, {"main.py": b"print('predict')\n"})
        await self.put_archive("model", task.model, {"weights.bin": b"\x00"})
        await self.put_archive("data", task.data[0], {"rows.csv": b"5,6\n"})
        self.ledger.add_task(task)
        return task

    async def deliver(self, topic, task_dict):
        await self.broker.push(topic, json.dumps(task_dict).encode())
        return await self.broker.receive(topic, "worker-1", timeout=1)

    async def dispatch_learn(self, task_dict):
        message = await self.deliver("learn", task_dict)
        return await self.consumer.dispatch("learn", self.worker.handle_learn, message)


@pytest.mark.asyncio
async def test_learn_trains_tests_stores_model_and_reports(tmp_path):
    world = World(tmp_path)
    task = await world.learn_task()

    assert await world.dispatch_learn(task.to_dict()) == Disposition.ACK

    stored = world.ledger.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.worker == world.worker.worker_id
    assert stored.perf == 0.8
    assert stored.train_perf == {"accuracy": 0.9}
    assert stored.test_perf == {"accuracy": 0.8}

    model_key = f"model/{task.model_end}"
    with tarfile.open(fileobj=io.BytesIO(await world.store.read(model_key)), mode="r:gz") as tar:
        assert tar.getnames() == ["weights.bin"]
    assert world.store.metadata[model_key] == {"algo": str(task.algo)}

    train_run, test_run = world.sandbox.calls
    assert train_run.operation == SandboxOperation.TRAIN
    assert train_run.mount_source("/model") is None
    assert test_run.operation == SandboxOperation.TEST
    assert test_run.mount_source("/model").endswith("train_output/model")
    assert list(world.workdir.iterdir()) == []
    assert world.worker.stats["tasks_completed"] == 1


@pytest.mark.asyncio
async def test_learn_continuation_mounts_start_model(tmp_path):
    world = World(tmp_path)
    start_model = uuid.uuid4()
    await world.put_archive("model", start_model, {"weights.bin": b"\x07"})
    task = await world.learn_task(rank=1, model_start=start_model)

    assert await world.dispatch_learn(task.to_dict()) == Disposition.ACK
    assert world.sandbox.calls[0].mount_source("/model").endswith("model_start")


@pytest.mark.asyncio
async def test_predict_stores_prediction_and_reports(tmp_path):
    world = World(tmp_path)
    task = await world.predict_task()
    message = await world.deliver("predict", task.to_dict())

    assert await world.consumer.dispatch("predict", world.worker.handle_predict, message) == Disposition.ACK

    stored = world.ledger.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    prediction_key = f"prediction/{stored.prediction_storage_uuid}"
    assert await world.store.read(prediction_key) == b"0\n1\n1\n"


@pytest.mark.asyncio
async def test_algorithm_failure_marks_task_failed_without_retry(tmp_path):
    world = World(tmp_path, sandbox=MockSandbox({SandboxOperation.TRAIN: ScriptedRun(exit_code=1)}))
    task = await world.learn_task()

    assert await world.dispatch_learn(task.to_dict()) == Disposition.FAIL

    assert world.ledger.get_task(task.id).status == TaskStatus.FAILED
    assert world.broker.pending("learn") == 0
    assert world.sandbox.live == set()
    assert world.worker.stats["tasks_failed"] == 1
    assert list(world.workdir.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_blob_marks_task_failed(tmp_path):
    world = World(tmp_path)
    task = await world.learn_task()
    await world.store.delete(f"data/{task.test_data[0]}")

    assert await world.dispatch_learn(task.to_dict()) == Disposition.FAIL
    assert world.ledger.get_task(task.id).status == TaskStatus.FAILED
    assert world.sandbox.calls == []


@pytest.mark.asyncio
async def test_invalid_task_is_dropped_before_any_side_effect(tmp_path):
    world = World(tmp_path)
    task = await world.learn_task()
    bad = dict(task.to_dict(), rank=1, model_start="")

    assert await world.dispatch_learn(bad) == Disposition.DROP
    assert world.ledger.calls == []
    assert world.ledger.get_task(task.id).status == TaskStatus.TODO


@pytest.mark.asyncio
async def test_setup_failure_is_retried_by_the_same_worker(tmp_path):
    world = World(tmp_path, sandbox=MockSandbox({SandboxOperation.TRAIN: ScriptedRun(fail_create=True)}))
    task = await world.learn_task()

    assert await world.dispatch_learn(task.to_dict()) == Disposition.REQUEUE
    assert world.ledger.get_task(task.id).status == TaskStatus.PENDING

    world.sandbox.script[SandboxOperation.TRAIN] = DEFAULT_SCRIPT[SandboxOperation.TRAIN]
    redelivered = await world.broker.receive("learn", "worker-1", timeout=1)
    assert redelivered.attempts == 1
    assert await world.consumer.dispatch("learn", world.worker.handle_learn, redelivered) == Disposition.ACK
    assert world.ledger.get_task(task.id).status == TaskStatus.DONE


class LedgerOutageSandbox(MockSandbox):
    """Takes the ledger down while the algorithm runs."""

    def __init__(self, ledger, script):
        super().__init__(script)
        self.ledger = ledger

    async def _wait(self, run):
        self.ledger.unavailable = True
        return await super()._wait(run)


@pytest.mark.asyncio
async def test_ledger_down_during_failure_report_requeues(tmp_path):
    ledger = InMemoryLedger()
    sandbox = LedgerOutageSandbox(ledger, {SandboxOperation.TRAIN: ScriptedRun(exit_code=3)})
    world = World(tmp_path, sandbox=sandbox, ledger=ledger)
    task = await world.learn_task()

    assert await world.dispatch_learn(task.to_dict()) == Disposition.REQUEUE

    failure_attempts = [c for c in ledger.calls if c[0] == "update_status" and c[2] == "failed"]
    assert len(failure_attempts) == world.consumer.report_retries
    assert ledger.get_task(task.id).status == TaskStatus.PENDING
    assert world.broker.pending("learn") == 1


@pytest.mark.asyncio
async def test_consumer_runs_both_topics_until_stopped(tmp_path):
    world = World(tmp_path)
    learn = await world.learn_task()
    predict = await world.predict_task()
    world.worker.register_handlers()
    await world.broker.push("learn", json.dumps(learn.to_dict()).encode())
    await world.broker.push("predict", json.dumps(predict.to_dict()).encode())

    run = asyncio.create_task(world.consumer.consume_until_killed(install_signals=False))
    for _ in range(300):
        if len(world.ledger.tasks_with_status(TaskStatus.DONE)) == 2:
            break
        await asyncio.sleep(0.01)
    world.worker.stop()
    await asyncio.wait_for(run, 5)

    assert {t.id for t in world.ledger.tasks_with_status(TaskStatus.DONE)} == {learn.id, predict.id}
    stats = world.worker.get_stats()
    assert stats["tasks_completed"] == 2
    assert stats["dispositions"]["ack"] == 2


@pytest.mark.asyncio
async def test_report_failure_needs_a_known_topic_and_task_id(tmp_path):
    world = World(tmp_path)
    task = await world.learn_task()
    message = await world.deliver("learn", task.to_dict())

    await world.worker.report_failure("learn", message, None)
    assert world.ledger.get_task(task.id).status == TaskStatus.FAILED

    with pytest.raises(ValidationError):
        await world.worker.report_failure("unknown-topic", message, None)
    no_id = await world.deliver("learn", {"problem": str(uuid.uuid4())})
    with pytest.raises(ValidationError):
        await world.worker.report_failure("learn", no_id, None)


def test_average_processing_time_counts_failed_tasks(tmp_path):
    world = World(tmp_path)
    world.worker._update_task_stats(3.0, success=True)
    world.worker._update_task_stats(1.0, success=False)

    stats = world.worker.get_stats()
    assert stats["tasks_completed"] == 1
    assert stats["tasks_failed"] == 1
    assert stats["average_processing_time"] == 2.0
    assert stats["last_task_time"] == 1.0
