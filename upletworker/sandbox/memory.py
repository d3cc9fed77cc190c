"""Deterministic in-process sandbox for tests and local runs."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Set

from upletworker.common import SandboxOperation
from upletworker.utils.errors import SandboxSetupError

from .base import MODEL_OUTPUT_DIR, OUTPUT_MOUNT, PERF_FILE, PREDICTION_FILE, SandboxRun, SandboxRunner


def perf_output(value: float, **metrics: float) -> bytes:
    return json.dumps({"perf": value, "metrics": metrics or {"score": value}}).encode()


@dataclass
class ScriptedRun:
    """How one scripted run behaves; ``outputs`` maps output-relative paths to file contents."""

    exit_code: int = 0
    duration: float = 0.0
    outputs: Mapping[str, bytes] = field(default_factory=dict)
    fail_create: bool = False
    create_delay: float = 0.0
    fail_start: bool = False
    stdout: str = ""
    stderr: str = ""


DEFAULT_SCRIPT: Mapping[SandboxOperation, ScriptedRun] = {
    SandboxOperation.TRAIN: ScriptedRun(
        outputs={PERF_FILE: perf_output(0.9, accuracy=0.9), f"{MODEL_OUTPUT_DIR}/weights.bin": b"\x00\x01"}
    ),
    SandboxOperation.TEST: ScriptedRun(outputs={PERF_FILE: perf_output(0.8, accuracy=0.8)}),
    SandboxOperation.PREDICT: ScriptedRun(outputs={PREDICTION_FILE: b"0\n1\n1\n"}),
}


class MockSandbox(SandboxRunner):
    """Plays back :class:`ScriptedRun` behaviours with real asyncio timing.

    ``live`` holds environments that exist right now, ``torn_down`` every
    environment removed so far, ``max_live`` the peak concurrency observed.
    """

    name = "memory"

    def __init__(
        self,
        script: Optional[Mapping[SandboxOperation, ScriptedRun]] = None,
        entrypoint: Sequence[str] = ("python", "/algo/main.py"),
    ):
        super().__init__(entrypoint=entrypoint)
        self.script: Dict[SandboxOperation, ScriptedRun] = dict(DEFAULT_SCRIPT)
        self.script.update(script or {})
        self.live: Set[str] = set()
        self.torn_down: List[str] = []
        self.calls: List[SandboxRun] = []
        self.max_live = 0

    def behaviour(self, run: SandboxRun) -> ScriptedRun:
        return self.script[run.operation]

    async def _create(self, run: SandboxRun) -> None:
        self.calls.append(run)
        behaviour = self.behaviour(run)
        if behaviour.create_delay:
            # Stands in for an image pull before the environment exists.
            await asyncio.sleep(behaviour.create_delay)
        if behaviour.fail_create:
            raise SandboxSetupError(f"scripted create failure for run {run.run_id}")
        run.handle = f"mock-{run.run_id}"
        self.live.add(run.handle)
        self.max_live = max(self.max_live, len(self.live))

    async def _start(self, run: SandboxRun) -> None:
        if self.behaviour(run).fail_start:
            raise SandboxSetupError(f"scripted start failure for run {run.run_id}")

    async def _wait(self, run: SandboxRun) -> int:
        behaviour = self.behaviour(run)
        if behaviour.duration:
            await asyncio.sleep(behaviour.duration)
        output_dir = Path(run.mount_source(OUTPUT_MOUNT))
        for relative, content in behaviour.outputs.items():
            path = output_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        return behaviour.exit_code

    async def _collect_logs(self, run: SandboxRun):
        behaviour = self.behaviour(run)
        return behaviour.stdout, behaviour.stderr

    async def _destroy(self, run: SandboxRun) -> None:
        if run.handle in self.live:
            self.live.discard(run.handle)
            self.torn_down.append(run.handle)
