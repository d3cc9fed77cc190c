"""Sandbox runner interface and the run lifecycle shared by every backend."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from upletworker.common import SandboxOperation
from upletworker.utils.errors import (
    SandboxExecutionError,
    SandboxSetupError,
    SandboxTimeoutError,
    UpletError,
)

logger = logging.getLogger(__name__)

ALGO_MOUNT = "/algo"
DATA_MOUNT = "/data"
MODEL_MOUNT = "/model"
OUTPUT_MOUNT = "/output"
PERF_FILE = "perf.json"
MODEL_OUTPUT_DIR = "model"
PREDICTION_FILE = "prediction"


class RunState(str, Enum):
    CREATED = "created"
    STARTED = "started"
    RUNNING = "running"
    START_FAILED = "start_failed"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"
    TORN_DOWN = "torn_down"


_TERMINAL_RUN_STATES = frozenset({RunState.START_FAILED, RunState.COMPLETED, RunState.TIMED_OUT, RunState.CRASHED})

# Any live state may jump straight to torn_down when the caller cancels.
RUN_TRANSITIONS = MappingProxyType(
    {
        RunState.CREATED: frozenset({RunState.STARTED, RunState.START_FAILED, RunState.TORN_DOWN}),
        RunState.STARTED: frozenset({RunState.RUNNING, RunState.START_FAILED, RunState.TORN_DOWN}),
        RunState.RUNNING: frozenset(
            {RunState.COMPLETED, RunState.TIMED_OUT, RunState.CRASHED, RunState.TORN_DOWN}
        ),
        **{state: frozenset({RunState.TORN_DOWN}) for state in _TERMINAL_RUN_STATES},
        RunState.TORN_DOWN: frozenset(),
    }
)


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = True


@dataclass(frozen=True)
class SandboxInputs:
    """Host directories already holding the materialized algorithm, data and model."""

    algo_dir: Path
    data_dir: Path
    output_dir: Path
    model_dir: Optional[Path] = None


@dataclass(frozen=True)
class Score:
    value: float
    metrics: Mapping[str, float] = field(default_factory=dict)


@dataclass
class SandboxRun:
    operation: SandboxOperation
    command: List[str]
    mounts: Tuple[Mount, ...]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: RunState = RunState.CREATED
    history: List[RunState] = field(default_factory=lambda: [RunState.CREATED])
    handle: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    def transition(self, new_state: RunState) -> None:
        if new_state not in RUN_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal sandbox transition {self.state.value} -> {new_state.value} for run {self.run_id}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def mount_source(self, target: str) -> Optional[str]:
        for mount in self.mounts:
            if mount.target == target:
                return mount.source
        return None


@dataclass(frozen=True)
class SandboxResult:
    run_id: str
    operation: SandboxOperation
    exit_code: int
    stdout: str
    stderr: str
    duration: float


class SandboxRunner(ABC):
    """Runs one algorithm command per disposable, network-less environment.

    Subclasses provide the environment primitives (``_create``, ``_start``,
    ``_wait``, ``_destroy``); this class owns the run state machine, the
    timeout and the unconditional teardown.
    """

    name: str = "base"

    def __init__(self, entrypoint: Sequence[str] = ("python", "/algo/main.py"), history_size: int = 100):
        self.entrypoint = list(entrypoint)
        self.active_runs: Dict[str, SandboxRun] = {}
        self.finished_runs: Deque[SandboxRun] = deque(maxlen=history_size)

    @abstractmethod
    async def _create(self, run: SandboxRun) -> None:
        """Create the environment and set ``run.handle``."""

    @abstractmethod
    async def _start(self, run: SandboxRun) -> None:
        ...

    @abstractmethod
    async def _wait(self, run: SandboxRun) -> int:
        """Block until the command exits and return its exit code."""

    @abstractmethod
    async def _destroy(self, run: SandboxRun) -> None:
        """Kill whatever still runs and remove the environment. Must be idempotent."""

    async def _collect_logs(self, run: SandboxRun) -> Tuple[str, str]:
        return "", ""

    async def health_check(self) -> bool:
        return True

    async def cleanup(self) -> None:
        """Tear down every environment this runner still owns."""
        for run in list(self.active_runs.values()):
            await self._teardown(run)

    async def cleanup_orphans(self) -> int:
        """Remove environments an earlier process left behind; returns how many."""
        return 0

    def mounts_for(self, inputs: SandboxInputs) -> Tuple[Mount, ...]:
        mounts = [
            Mount(str(inputs.algo_dir), ALGO_MOUNT),
            Mount(str(inputs.data_dir), DATA_MOUNT),
        ]
        if inputs.model_dir is not None:
            mounts.append(Mount(str(inputs.model_dir), MODEL_MOUNT))
        mounts.append(Mount(str(inputs.output_dir), OUTPUT_MOUNT, read_only=False))
        return tuple(mounts)

    async def execute(self, operation: SandboxOperation, inputs: SandboxInputs, timeout: float) -> SandboxResult:
        operation = SandboxOperation(operation)
        run = SandboxRun(
            operation=operation,
            command=self.entrypoint + [operation.value],
            mounts=self.mounts_for(inputs),
        )
        self.active_runs[run.run_id] = run
        logger.info(f"Sandbox {self.name} run {run.run_id}: {operation.value} (timeout {timeout}s)")
        # One deadline covers create, start, the command itself and log collection.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def remaining() -> float:
            return max(deadline - loop.time(), 0.0)

        try:
            try:
                await asyncio.wait_for(self._launch(run), remaining())
            except asyncio.TimeoutError:
                run.transition(RunState.START_FAILED)
                raise SandboxTimeoutError(
                    f"{operation.value} run {run.run_id} did not start within {timeout}s"
                ) from None
            run.transition(RunState.RUNNING)
            try:
                exit_code = await asyncio.wait_for(self._wait(run), remaining())
                run.exit_code = exit_code
                run.stdout, run.stderr = await asyncio.wait_for(self._collect_logs(run), remaining())
            except asyncio.TimeoutError:
                run.transition(RunState.TIMED_OUT)
                raise SandboxTimeoutError(f"{operation.value} run {run.run_id} exceeded {timeout}s") from None
            except UpletError:
                run.transition(RunState.CRASHED)
                raise
            if exit_code != 0:
                run.transition(RunState.CRASHED)
                raise SandboxExecutionError(
                    f"{operation.value} run {run.run_id} exited with code {exit_code}",
                    exit_code=exit_code,
                    stderr=run.stderr,
                )
            run.transition(RunState.COMPLETED)
            return SandboxResult(
                run_id=run.run_id,
                operation=operation,
                exit_code=exit_code,
                stdout=run.stdout,
                stderr=run.stderr,
                duration=run.duration,
            )
        finally:
            await self._teardown(run)

    async def _launch(self, run: SandboxRun) -> None:
        try:
            await self._create(run)
            run.transition(RunState.STARTED)
            await self._start(run)
        except (SandboxSetupError, SandboxTimeoutError):
            run.transition(RunState.START_FAILED)
            raise
        except OSError as e:
            run.transition(RunState.START_FAILED)
            raise SandboxSetupError(f"cannot start sandbox run {run.run_id}: {e}") from e

    async def _teardown(self, run: SandboxRun) -> None:
        """Destroy the environment even if the calling task is being cancelled."""
        if run.state == RunState.TORN_DOWN:
            return
        destroy = asyncio.ensure_future(self._destroy(run))
        cancelled = False
        while not destroy.done():
            try:
                await asyncio.shield(destroy)
            except asyncio.CancelledError:
                cancelled = True
            except Exception:
                break
        if destroy.cancelled():
            logger.error(f"Teardown of sandbox run {run.run_id} was cancelled")
        elif destroy.exception() is not None:
            logger.error(f"Teardown of sandbox run {run.run_id} failed: {destroy.exception()}")
        run.finished_at = time.monotonic()
        run.transition(RunState.TORN_DOWN)
        self.active_runs.pop(run.run_id, None)
        self.finished_runs.append(run)
        logger.info(
            f"Sandbox run {run.run_id} torn down after {run.duration:.2f}s "
            f"({' -> '.join(s.value for s in run.history)})"
        )
        if cancelled:
            raise asyncio.CancelledError()

    async def train(self, inputs: SandboxInputs, timeout: float) -> Score:
        """Train in a fresh environment; the new model lands in ``output_dir/model``."""
        await self.execute(SandboxOperation.TRAIN, inputs, timeout)
        if not (Path(inputs.output_dir) / MODEL_OUTPUT_DIR).is_dir():
            raise SandboxExecutionError(f"train produced no {MODEL_OUTPUT_DIR}/ directory")
        return read_score(inputs.output_dir)

    async def test(self, inputs: SandboxInputs, timeout: float) -> Score:
        await self.execute(SandboxOperation.TEST, inputs, timeout)
        return read_score(inputs.output_dir)

    async def predict(self, inputs: SandboxInputs, timeout: float) -> bytes:
        await self.execute(SandboxOperation.PREDICT, inputs, timeout)
        path = Path(inputs.output_dir) / PREDICTION_FILE
        if not path.is_file():
            raise SandboxExecutionError(f"predict produced no {PREDICTION_FILE} file")
        return path.read_bytes()


def read_score(output_dir: Path) -> Score:
    """Parse ``perf.json`` (``{"perf": float, "metrics": {name: float}}``) written by the algorithm."""
    path = Path(output_dir) / PERF_FILE
    try:
        payload = json.loads(path.read_text())
        value = float(payload["perf"])
        metrics = {str(k): float(v) for k, v in (payload.get("metrics") or {}).items()}
    except FileNotFoundError as e:
        raise SandboxExecutionError(f"algorithm wrote no {PERF_FILE}") from e
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise SandboxExecutionError(f"malformed {PERF_FILE}: {e}") from e
    return Score(value=value, metrics=metrics)
