"""Work-queue abstraction and the consumer that drives task handlers.

The queue layer (:class:`Broker`) owns delivery: at-least-once receive,
ack, requeue with a bounded retry budget, and a dead-letter list. The
:class:`Consumer` owns everything else: per-topic worker coroutines,
timeouts, outcome classification and graceful shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from upletworker.utils.error_classifier import Disposition, get_disposition, is_retryable
from upletworker.utils.errors import TransientError, ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[["Message"], Awaitable[None]]
FailureReporter = Callable[[str, "Message", BaseException], Awaitable[None]]


@dataclass
class Message:
    """One delivery of a queued task body."""

    topic: str
    body: bytes
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise ValidationError(f"message {self.id} body is not JSON: {e}") from e

    def encode(self) -> bytes:
        return json.dumps(
            {
                "id": self.id,
                "topic": self.topic,
                "body": self.body.decode("utf-8"),
                "attempts": self.attempts,
                "enqueued_at": self.enqueued_at,
            }
        ).encode("utf-8")

    @classmethod
    def decode(cls, raw: Union[bytes, str]) -> "Message":
        data = json.loads(raw)
        return cls(
            topic=data["topic"],
            body=data["body"].encode("utf-8"),
            id=data["id"],
            attempts=int(data.get("attempts", 0)),
            enqueued_at=float(data.get("enqueued_at", 0.0)),
        )


class Broker(ABC):
    """Topic-based queue with at-least-once delivery."""

    name: str = "base"

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    @abstractmethod
    async def push(self, topic: str, body: bytes) -> Message:
        ...

    @abstractmethod
    async def receive(self, topic: str, consumer: str, timeout: float) -> Optional[Message]:
        """Wait up to ``timeout`` seconds for the next message; it stays in flight until settled."""

    @abstractmethod
    async def ack(self, message: Message) -> None:
        ...

    @abstractmethod
    async def requeue(self, message: Message) -> bool:
        """Put the message back for another attempt.

        Returns False when the retry budget is spent; the message then goes
        to the dead-letter list instead.
        """

    async def recover_inflight(self, topic: str, consumer: str) -> int:
        """Return messages a previous run of ``consumer`` left in flight; returns how many."""
        return 0

    async def close(self) -> None:
        return None


class Producer:
    def __init__(self, broker: Broker):
        self.broker = broker

    async def push(self, topic: str, body: Union[bytes, str, Mapping[str, Any]]) -> Message:
        if isinstance(body, Mapping):
            body = json.dumps(dict(body))
        if isinstance(body, str):
            body = body.encode("utf-8")
        message = await self.broker.push(topic, body)
        logger.debug(f"Pushed message {message.id} to {topic}")
        return message


def _backoff(attempt: int, base: float = 2.0, cap: float = 30.0) -> float:
    return min(base ** attempt, cap)


@dataclass
class HandlerSpec:
    topic: str
    handler: Handler
    concurrency: int = 1
    timeout: Optional[float] = None


class Consumer:
    """Runs registered handlers until stopped.

    ``failure_reporter(topic, message, error)`` marks a task failed in the
    ledger. It is retried with exponential backoff when it raises a
    retryable error.
    """

    def __init__(
        self,
        broker: Broker,
        name: str,
        failure_reporter: Optional[FailureReporter] = None,
        poll_timeout: float = 5.0,
        drain_timeout: float = 60.0,
        report_retries: int = 5,
        report_backoff: float = 2.0,
        report_backoff_cap: float = 30.0,
    ):
        self.broker = broker
        self.name = name
        self.failure_reporter = failure_reporter
        self.poll_timeout = poll_timeout
        self.drain_timeout = drain_timeout
        self.report_retries = max(1, report_retries)
        self.report_backoff = report_backoff
        self.report_backoff_cap = report_backoff_cap

        self.handlers: Dict[str, HandlerSpec] = {}
        self.running = False
        self.dispositions: Dict[Disposition, int] = {d: 0 for d in Disposition}
        self._stop_event: Optional[asyncio.Event] = None
        self._workers: Dict[asyncio.Task, bool] = {}

    def add_handler(
        self, topic: str, handler: Handler, concurrency: int = 1, timeout: Optional[float] = None
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency for {topic} must be at least 1, got {concurrency}")
        if topic in self.handlers:
            raise ValueError(f"a handler is already registered for {topic}")
        self.handlers[topic] = HandlerSpec(topic, handler, concurrency, timeout)

    def stop(self) -> None:
        """Stop receiving; in-flight handlers keep running until the drain ends."""
        if not self.running:
            return
        logger.info(f"Consumer {self.name} stopping")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        # Idle workers are parked in receive(); nothing to drain there.
        for task, busy in list(self._workers.items()):
            if not busy:
                task.cancel()

    def _install_signal_handlers(self) -> List[int]:
        loop = asyncio.get_running_loop()
        installed = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
                installed.append(signum)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for signal {signum} in this loop")
        return installed

    def _on_signal(self, signum: int) -> None:
        logger.info(f"Consumer {self.name} received signal {signum}")
        self.stop()

    async def consume_until_killed(self, install_signals: bool = True) -> None:
        if not self.handlers:
            raise ValueError("no handlers registered")
        self.running = True
        self._stop_event = asyncio.Event()
        installed = self._install_signal_handlers() if install_signals else []
        try:
            for spec in self.handlers.values():
                recovered = await self.broker.recover_inflight(spec.topic, self.name)
                if recovered:
                    logger.warning(f"Requeued {recovered} in-flight message(s) left on {spec.topic} by {self.name}")
                for i in range(spec.concurrency):
                    task = asyncio.create_task(self._worker_loop(spec), name=f"{self.name}:{spec.topic}:{i}")
                    self._workers[task] = False
            logger.info(
                f"Consumer {self.name} started: "
                + ", ".join(f"{s.topic}x{s.concurrency}" for s in self.handlers.values())
            )
            await self._stop_event.wait()
            await self._drain()
        finally:
            self.running = False
            loop = asyncio.get_running_loop()
            for signum in installed:
                loop.remove_signal_handler(signum)
            leftovers = [t for t in self._workers if not t.done()]
            for task in leftovers:
                task.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)
            self._workers.clear()
            logger.info(f"Consumer {self.name} stopped; dispositions: {self._disposition_summary()}")

    async def _drain(self) -> None:
        pending = [t for t in self._workers if not t.done()]
        if not pending:
            return
        logger.info(f"Draining {len(pending)} worker(s) for up to {self.drain_timeout}s")
        _, still_running = await asyncio.wait(pending, timeout=self.drain_timeout)
        if still_running:
            logger.warning(f"Drain timeout reached, cancelling {len(still_running)} in-flight handler(s)")
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _worker_loop(self, spec: HandlerSpec) -> None:
        task = asyncio.current_task()
        while self.running:
            try:
                message = await self.broker.receive(spec.topic, self.name, self.poll_timeout)
            except Exception as e:
                if not is_retryable(e):
                    raise
                logger.error(f"Receive on {spec.topic} failed: {e}")
                await asyncio.sleep(min(self.poll_timeout, 5))
                continue
            if message is None:
                continue
            self._workers[task] = True
            try:
                await self.dispatch(spec.topic, spec.handler, message, spec.timeout)
            finally:
                self._workers[task] = False

    async def dispatch(
        self, topic: str, handler: Handler, message: Message, timeout: Optional[float] = None
    ) -> Disposition:
        """Run one message through ``handler`` and settle it with the queue."""
        started = time.monotonic()
        settling = False
        try:
            disposition, error = await self._run_handler(topic, handler, message, timeout)
            settling = True
            disposition = await asyncio.shield(self._settle(topic, message, disposition, error))
        except asyncio.CancelledError:
            if not settling:
                logger.warning(f"Handler for message {message.id} on {topic} cancelled, requeueing")
                await asyncio.shield(self._settle(topic, message, Disposition.REQUEUE, None))
            raise
        logger.info(
            f"Message {message.id} on {topic} settled as {disposition.value} "
            f"after {time.monotonic() - started:.2f}s (attempt {message.attempts + 1})"
        )
        return disposition

    async def _run_handler(
        self, topic: str, handler: Handler, message: Message, timeout: Optional[float]
    ) -> Tuple[Disposition, Optional[BaseException]]:
        error: Optional[BaseException] = None
        try:
            if timeout:
                await asyncio.wait_for(handler(message), timeout)
            else:
                await handler(message)
        except asyncio.TimeoutError as e:
            error = e
            logger.warning(f"Handler for message {message.id} on {topic} timed out after {timeout}s")
        except Exception as e:
            error = e

        disposition = get_disposition(error)
        if disposition == Disposition.FAIL:
            logger.error(f"Message {message.id} on {topic} failed permanently: {error}")
            try:
                await self._report_failure(topic, message, error)
            except TransientError as report_error:
                logger.error(f"Could not report failure of {message.id}, requeueing: {report_error}")
                disposition = Disposition.REQUEUE
        elif disposition == Disposition.DROP:
            logger.warning(f"Dropping message {message.id} on {topic}: {error}")
        elif disposition == Disposition.REQUEUE:
            logger.warning(f"Retryable failure for message {message.id} on {topic}: {error}")
        return disposition, error

    async def _settle(
        self, topic: str, message: Message, disposition: Disposition, error: Optional[BaseException]
    ) -> Disposition:
        if disposition != Disposition.REQUEUE:
            await self.broker.ack(message)
        elif not await self.broker.requeue(message):
            logger.error(
                f"Message {message.id} on {topic} exhausted its retry budget "
                f"({self.broker.max_retries}), dead-lettered"
            )
            disposition = Disposition.FAIL
            try:
                await self._report_failure(topic, message, error)
            except TransientError as report_error:
                logger.error(f"Could not report failure of dead-lettered {message.id}: {report_error}")
        self.dispositions[disposition] += 1
        return disposition

    async def _report_failure(self, topic: str, message: Message, error: Optional[BaseException]) -> None:
        if self.failure_reporter is None:
            return
        last_error: Optional[BaseException] = None
        for attempt in range(self.report_retries):
            try:
                await self.failure_reporter(topic, message, error)
                return
            except ValidationError as e:
                logger.warning(f"Failure of message {message.id} cannot be reported: {e}")
                return
            except Exception as e:
                if not is_retryable(e):
                    logger.error(f"Ledger refused failure report for {message.id}: {e}")
                    return
                last_error = e
                if attempt + 1 < self.report_retries:
                    delay = _backoff(attempt, self.report_backoff, self.report_backoff_cap)
                    logger.warning(
                        f"Failure report for {message.id} failed ({e}), retry {attempt + 1} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
        raise TransientError(
            f"failure report for message {message.id} failed {self.report_retries} times: {last_error}"
        )

    def _disposition_summary(self) -> str:
        return ", ".join(f"{d.value}={n}" for d, n in self.dispositions.items())
