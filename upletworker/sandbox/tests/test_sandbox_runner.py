"""Run lifecycle, timeouts and teardown, exercised through the mock sandbox."""

import asyncio

import pytest

from upletworker.common import SandboxOperation
from upletworker.sandbox import MockSandbox, RunState, SandboxInputs, ScriptedRun
from upletworker.sandbox.base import SandboxRun
from upletworker.utils.errors import (
    SandboxExecutionError,
    SandboxSetupError,
    SandboxTimeoutError,
)


@pytest.fixture
def inputs(tmp_path):
    for name in ("algo", "data", "output"):
        (tmp_path / name).mkdir()
    return SandboxInputs(
        algo_dir=tmp_path / "algo",
        data_dir=tmp_path / "data",
        output_dir=tmp_path / "output",
    )


@pytest.mark.asyncio
async def test_train_returns_score_and_tears_down(inputs):
    sandbox = MockSandbox()
    score = await sandbox.train(inputs, timeout=5)

    assert score.value == 0.9
    assert score.metrics == {"accuracy": 0.9}
    assert (inputs.output_dir / "model" / "weights.bin").exists()
    assert sandbox.live == set()
    run = sandbox.finished_runs[-1]
    assert run.history == [
        RunState.CREATED,
        RunState.STARTED,
        RunState.RUNNING,
        RunState.COMPLETED,
        RunState.TORN_DOWN,
    ]
    assert run.command == ["python", "/algo/main.py", "train"]


@pytest.mark.asyncio
async def test_mounts_are_read_only_except_output(inputs, tmp_path):
    (tmp_path / "model").mkdir()
    sandbox = MockSandbox()
    await sandbox.test(
        SandboxInputs(inputs.algo_dir, inputs.data_dir, inputs.output_dir, model_dir=tmp_path / "model"),
        timeout=5,
    )
    mounts = {m.target: m.read_only for m in sandbox.calls[-1].mounts}
    assert mounts == {"/algo": True, "/data": True, "/model": True, "/output": False}


@pytest.mark.asyncio
async def test_timeout_is_classified_and_environment_removed(inputs):
    sandbox = MockSandbox({SandboxOperation.TRAIN: ScriptedRun(duration=10)})

    with pytest.raises(SandboxTimeoutError):
        await sandbox.train(inputs, timeout=0.05)

    assert sandbox.live == set()
    assert len(sandbox.torn_down) == 1
    assert sandbox.finished_runs[-1].history[-2:] == [RunState.TIMED_OUT, RunState.TORN_DOWN]
    assert sandbox.active_runs == {}


@pytest.mark.asyncio
async def test_timeout_covers_environment_startup(inputs):
    sandbox = MockSandbox({SandboxOperation.TEST: ScriptedRun(create_delay=1.0)})
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(SandboxTimeoutError, match="did not start"):
        await sandbox.test(inputs, timeout=0.1)

    assert loop.time() - started < 0.9
    assert sandbox.finished_runs[-1].history == [RunState.CREATED, RunState.START_FAILED, RunState.TORN_DOWN]
    assert sandbox.live == set()


@pytest.mark.asyncio
async def test_one_deadline_spans_startup_and_run(inputs):
    sandbox = MockSandbox({SandboxOperation.TEST: ScriptedRun(create_delay=0.15, duration=0.15)})

    with pytest.raises(SandboxTimeoutError, match="exceeded"):
        await sandbox.test(inputs, timeout=0.25)

    assert sandbox.finished_runs[-1].history[-2:] == [RunState.TIMED_OUT, RunState.TORN_DOWN]
    assert sandbox.live == set()


@pytest.mark.asyncio
async def test_non_zero_exit_is_execution_failure(inputs):
    sandbox = MockSandbox(
        {SandboxOperation.PREDICT: ScriptedRun(exit_code=2, stderr="Traceback: boom")}
    )

    with pytest.raises(SandboxExecutionError) as exc_info:
        await sandbox.predict(inputs, timeout=5)

    assert exc_info.value.exit_code == 2
    assert "boom" in exc_info.value.stderr
    assert not exc_info.value.retryable
    assert RunState.CRASHED in sandbox.finished_runs[-1].history
    assert sandbox.live == set()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "behaviour, expected_history",
    [
        (
            ScriptedRun(fail_create=True),
            [RunState.CREATED, RunState.START_FAILED, RunState.TORN_DOWN],
        ),
        (
            ScriptedRun(fail_start=True),
            [RunState.CREATED, RunState.STARTED, RunState.START_FAILED, RunState.TORN_DOWN],
        ),
    ],
)
async def test_setup_failures(inputs, behaviour, expected_history):
    sandbox = MockSandbox({SandboxOperation.TEST: behaviour})

    with pytest.raises(SandboxSetupError) as exc_info:
        await sandbox.test(inputs, timeout=5)

    assert exc_info.value.retryable
    assert sandbox.finished_runs[-1].history == expected_history
    assert sandbox.live == set()


@pytest.mark.asyncio
async def test_cancellation_tears_down_and_propagates(inputs):
    sandbox = MockSandbox({SandboxOperation.TRAIN: ScriptedRun(duration=10)})
    task = asyncio.create_task(sandbox.train(inputs, timeout=30))
    await asyncio.sleep(0.05)
    assert len(sandbox.live) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sandbox.live == set()
    assert sandbox.finished_runs[-1].state == RunState.TORN_DOWN


@pytest.mark.asyncio
async def test_missing_or_malformed_outputs(inputs):
    sandbox = MockSandbox({SandboxOperation.TEST: ScriptedRun(outputs={"perf.json": b"{not json"})})
    with pytest.raises(SandboxExecutionError, match="malformed perf.json"):
        await sandbox.test(inputs, timeout=5)

    sandbox = MockSandbox({SandboxOperation.TRAIN: ScriptedRun(outputs={"perf.json": b'{"perf": 1}'})})
    with pytest.raises(SandboxExecutionError, match="no model/ directory"):
        await sandbox.train(inputs, timeout=5)

    sandbox = MockSandbox({SandboxOperation.PREDICT: ScriptedRun(outputs={})})
    with pytest.raises(SandboxExecutionError, match="no prediction file"):
        await sandbox.predict(inputs, timeout=5)


def test_illegal_transition_is_rejected():
    run = SandboxRun(operation=SandboxOperation.TRAIN, command=["x"], mounts=())
    with pytest.raises(RuntimeError):
        run.transition(RunState.COMPLETED)
    run.transition(RunState.TORN_DOWN)
    with pytest.raises(RuntimeError):
        run.transition(RunState.RUNNING)


@pytest.mark.asyncio
async def test_concurrent_runs_get_separate_environments(inputs, tmp_path):
    sandbox = MockSandbox({SandboxOperation.TEST: ScriptedRun(duration=0.05, outputs={"perf.json": b'{"perf": 0.5}'})})
    outputs = []
    for i in range(3):
        out = tmp_path / f"out{i}"
        out.mkdir()
        outputs.append(SandboxInputs(inputs.algo_dir, inputs.data_dir, out))

    scores = await asyncio.gather(*(sandbox.test(i, timeout=5) for i in outputs))

    assert [s.value for s in scores] == [0.5, 0.5, 0.5]
    assert sandbox.max_live == 3
    assert len(set(sandbox.torn_down)) == 3
