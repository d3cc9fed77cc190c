import io
import uuid

import pytest

from upletworker.broker import InMemoryBroker
from upletworker.common import UpletType
from upletworker.config import Settings
from upletworker.ledger import InMemoryLedger
from upletworker.sandbox import MockSandbox
from upletworker.storage import InMemoryBlobStore
from upletworker.utils.archive import targz_directory
from upletworker.utils.errors import BlobNotFoundError
from upletworker.worker import TaskWorkspace, blob_key
from upletworker.worker.launcher import build_worker


@pytest.mark.asyncio
async def test_workspace_materializes_and_is_removed(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "rows.csv").write_text("1,2\n")
    archive = targz_directory(src)
    store = InMemoryBlobStore()
    ids = [uuid.uuid4(), uuid.uuid4()]
    for data_id in ids:
        await store.put(blob_key("data", data_id), io.BytesIO(archive), len(archive))

    async with TaskWorkspace(uuid.uuid4(), tmp_path / "work") as ws:
        data_dir = await ws.materialize_all(store, "data", ids, "data")
        root = ws.path
        assert sorted(p.name for p in data_dir.iterdir()) == sorted(str(i) for i in ids)
        assert (data_dir / str(ids[0]) / "rows.csv").read_text() == "1,2\n"

    assert not root.exists()


@pytest.mark.asyncio
async def test_workspace_is_removed_when_materialization_fails(tmp_path):
    store = InMemoryBlobStore()
    with pytest.raises(BlobNotFoundError):
        async with TaskWorkspace(uuid.uuid4(), tmp_path / "work") as ws:
            root = ws.path
            await ws.materialize(store, blob_key("algo", uuid.uuid4()), "algo")
    assert not root.exists()


def test_blob_key_layout():
    resource_id = uuid.UUID(int=5)
    assert blob_key("model", resource_id) == f"model/{resource_id}"


def test_build_worker_from_memory_backends(tmp_path):
    config = Settings(
        ledger_backend="memory",
        broker_backend="memory",
        blobstore_backend="memory",
        sandbox_backend="memory",
        workdir=str(tmp_path),
        max_retries=7,
    )
    worker = build_worker(config)

    assert str(worker.worker_id) == config.worker_id
    assert isinstance(worker.ledger.ledger, InMemoryLedger)
    assert isinstance(worker.blobstore, InMemoryBlobStore)
    assert isinstance(worker.sandbox, MockSandbox)
    assert isinstance(worker.consumer.broker, InMemoryBroker)
    assert worker.consumer.broker.max_retries == 7
    assert worker.consumer.failure_reporter == worker.report_failure
    assert worker.consumer.name == config.worker_id


def test_handlers_follow_the_worker_topic_table(tmp_path):
    config = Settings(
        ledger_backend="memory",
        broker_backend="memory",
        blobstore_backend="memory",
        sandbox_backend="memory",
        workdir=str(tmp_path),
        learn_topic="learn-gpu",
        learn_concurrency=3,
        predict_topic="predict-cpu",
        predict_timeout=7,
    )
    worker = build_worker(config)
    worker.register_handlers()

    learn = worker.consumer.handlers["learn-gpu"]
    predict = worker.consumer.handlers["predict-cpu"]
    assert learn.handler == worker.handle_learn
    assert learn.concurrency == 3
    assert predict.handler == worker.handle_predict
    assert predict.timeout == 7
    assert worker.topics == {"learn-gpu": UpletType.LEARN, "predict-cpu": UpletType.PREDICT}
    with pytest.raises(TypeError):
        worker.topic_configs["learn-gpu"]["concurrency"] = 10
