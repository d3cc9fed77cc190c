"""Compute worker: turns learn and predict messages into sandbox runs and ledger reports."""

import io
import logging
import time
import uuid
from typing import Any, Dict, Optional, Set, Type

from upletworker.broker import Consumer, Message
from upletworker.common import ResourceKind, UpletType
from upletworker.config import Settings, topic_configs
from upletworker.ledger import Ledger, TaskLedgerClient
from upletworker.sandbox import SandboxInputs, SandboxRunner
from upletworker.sandbox.base import MODEL_OUTPUT_DIR
from upletworker.schema import LearnResult, LearnTask, PredictResult, PredictTask, UpletTask
from upletworker.schema.serialization import is_unset, parse_uuid
from upletworker.storage import BlobStore
from upletworker.utils.error_classifier import classify_error, get_error_description
from upletworker.utils.errors import ValidationError

from .workspace import TaskWorkspace, blob_key

logger = logging.getLogger("upletworker.worker")


class ComputeWorker:
    """Consumes the learn and predict topics of one worker process."""

    def __init__(
        self,
        worker_id: uuid.UUID,
        ledger: Ledger,
        blobstore: BlobStore,
        sandbox: SandboxRunner,
        consumer: Consumer,
        settings: Settings,
    ):
        self.worker_id = worker_id
        self.ledger = TaskLedgerClient(ledger, worker_id)
        self.blobstore = blobstore
        self.sandbox = sandbox
        self.consumer = consumer
        self.settings = settings
        self.current_tasks: Set[uuid.UUID] = set()

        self.stats = {
            "tasks_completed": 0,
            "tasks_failed": 0,
            "total_processing_time": 0.0,
            "average_processing_time": 0.0,
            "last_task_time": 0.0,
        }

        self.topic_configs = topic_configs(settings)
        self.topics = {topic: cfg["uplet_type"] for topic, cfg in self.topic_configs.items()}
        if consumer.failure_reporter is None:
            consumer.failure_reporter = self.report_failure

    def register_handlers(self) -> None:
        handlers = {UpletType.LEARN: self.handle_learn, UpletType.PREDICT: self.handle_predict}
        for topic, cfg in self.topic_configs.items():
            self.consumer.add_handler(
                topic,
                handlers[cfg["uplet_type"]],
                concurrency=cfg["concurrency"],
                timeout=cfg["timeout"],
            )

    async def start(self) -> None:
        """Register handlers and consume until SIGINT/SIGTERM or :meth:`stop`."""
        logger.info(f"Starting compute worker {self.worker_id} with sandbox {self.sandbox.name}")
        if not await self.sandbox.health_check():
            logger.warning(f"Sandbox backend {self.sandbox.name} failed its health check")
        removed = await self.sandbox.cleanup_orphans()
        if removed:
            logger.warning(f"Removed {removed} sandbox environment(s) left by a previous run")
        self.register_handlers()
        try:
            await self.consumer.consume_until_killed()
        finally:
            await self.close()

    def stop(self) -> None:
        self.consumer.stop()

    async def close(self) -> None:
        logger.info(f"Stopping compute worker {self.worker_id}")
        for closer in (self.sandbox.cleanup, self.ledger.close, self.blobstore.close, self.consumer.broker.close):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {closer.__self__.__class__.__name__}: {e}")
        logger.info(
            f"Worker {self.worker_id} completed {self.stats['tasks_completed']} "
            f"and failed {self.stats['tasks_failed']} tasks"
        )

    @staticmethod
    def decode_task(message: Message, task_cls: Type[UpletTask]) -> UpletTask:
        payload = message.json()
        if not isinstance(payload, dict):
            raise ValidationError(f"message {message.id} does not hold a task object")
        task = task_cls.from_dict(payload)
        task.check()
        return task

    def _run_timeout(self) -> float:
        return float(self.settings.sandbox_timeout)

    async def handle_learn(self, message: Message) -> None:
        task = self.decode_task(message, LearnTask)
        await self.ledger.claim(UpletType.LEARN, task.id)
        logger.info(f"Worker {self.worker_id} processing learnuplet {task.id} (rank {task.rank})")

        start_time = time.monotonic()
        self.current_tasks.add(task.id)
        success = False
        try:
            async with TaskWorkspace(task.id, self.settings.workdir or None) as ws:
                algo_dir = await ws.materialize(self.blobstore, blob_key(ResourceKind.ALGO, task.algo), "algo")
                start_model_dir = None
                if not is_unset(task.model_start):
                    start_model_dir = await ws.materialize(
                        self.blobstore, blob_key(ResourceKind.MODEL, task.model_start), "model_start"
                    )
                train_dir = await ws.materialize_all(self.blobstore, ResourceKind.DATA, task.train_data, "train_data")
                test_dir = await ws.materialize_all(self.blobstore, ResourceKind.DATA, task.test_data, "test_data")

                train_out = ws.dir("train_output")
                train_score = await self.sandbox.train(
                    SandboxInputs(algo_dir, train_dir, train_out, model_dir=start_model_dir),
                    self._run_timeout(),
                )
                trained_model = train_out / MODEL_OUTPUT_DIR
                test_score = await self.sandbox.test(
                    SandboxInputs(algo_dir, test_dir, ws.dir("test_output"), model_dir=trained_model),
                    self._run_timeout(),
                )

                model_id = task.model_end if not is_unset(task.model_end) else uuid.uuid4()
                archive = await ws.pack("train_output", MODEL_OUTPUT_DIR)
                await self.blobstore.put(
                    blob_key(ResourceKind.MODEL, model_id),
                    io.BytesIO(archive),
                    len(archive),
                    metadata={"algo": str(task.algo)},
                )
                logger.info(f"Stored model {model_id} of learnuplet {task.id} ({len(archive)} bytes)")

            result = LearnResult(
                perf=test_score.value,
                train_perf=train_score.metrics,
                test_perf=test_score.metrics,
            )
            await self.ledger.report_learn_result(task.id, result)
            success = True
        finally:
            self.current_tasks.discard(task.id)
            self._update_task_stats(time.monotonic() - start_time, success)

    async def handle_predict(self, message: Message) -> None:
        task = self.decode_task(message, PredictTask)
        await self.ledger.claim(UpletType.PREDICT, task.id)
        logger.info(f"Worker {self.worker_id} processing preduplet {task.id}")

        start_time = time.monotonic()
        self.current_tasks.add(task.id)
        success = False
        try:
            async with TaskWorkspace(task.id, self.settings.workdir or None) as ws:
                algo_dir = await ws.materialize(self.blobstore, blob_key(ResourceKind.ALGO, task.algo), "algo")
                model_dir = await ws.materialize(self.blobstore, blob_key(ResourceKind.MODEL, task.model), "model")
                data_dir = await ws.materialize_all(self.blobstore, ResourceKind.DATA, task.data, "data")
                prediction = await self.sandbox.predict(
                    SandboxInputs(algo_dir, data_dir, ws.dir("output"), model_dir=model_dir),
                    self._run_timeout(),
                )

            prediction_id = uuid.uuid4()
            await self.blobstore.put(
                blob_key(ResourceKind.PREDICTION, prediction_id), io.BytesIO(prediction), len(prediction)
            )
            await self.ledger.report_predict_result(task.id, PredictResult(prediction_storage_uuid=prediction_id))
            success = True
        finally:
            self.current_tasks.discard(task.id)
            self._update_task_stats(time.monotonic() - start_time, success)

    async def report_failure(self, topic: str, message: Message, error: Optional[BaseException]) -> None:
        """Mark the task carried by ``message`` failed; used by the consumer for fatal outcomes."""
        uplet_type = self.topics.get(topic)
        if uplet_type is None:
            raise ValidationError(f"no uplet type is bound to topic {topic}")
        payload = message.json()
        task_id = parse_uuid(payload.get("id") if isinstance(payload, dict) else None, "id")
        if task_id is None:
            raise ValidationError(f"message {message.id} carries no task id")
        if error is not None:
            code = classify_error(error)
            logger.error(f"{uplet_type.value} {task_id} failed with {code.value} ({get_error_description(code)}): {error}")
        await self.ledger.report_failure(uplet_type, task_id)

    def _update_task_stats(self, processing_time: float, success: bool) -> None:
        if success:
            self.stats["tasks_completed"] += 1
        else:
            self.stats["tasks_failed"] += 1

        self.stats["total_processing_time"] += processing_time
        finished_tasks = self.stats["tasks_completed"] + self.stats["tasks_failed"]
        self.stats["average_processing_time"] = self.stats["total_processing_time"] / finished_tasks
        self.stats["last_task_time"] = processing_time

    def get_stats(self) -> Dict[str, Any]:
        return {
            "worker_id": str(self.worker_id),
            "sandbox": self.sandbox.name,
            "current_tasks": sorted(str(t) for t in self.current_tasks),
            "dispositions": {d.value: n for d, n in self.consumer.dispositions.items()},
            **self.stats,
        }
