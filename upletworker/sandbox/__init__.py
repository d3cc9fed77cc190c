"""Sandboxed execution of untrusted algorithms."""

from .base import (
    Mount,
    RunState,
    SandboxInputs,
    SandboxResult,
    SandboxRun,
    SandboxRunner,
    Score,
    read_score,
)
from .docker import DockerSandbox
from .memory import MockSandbox, ScriptedRun, perf_output
from .registry import get_sandbox, list_sandboxes, register_sandbox, sandbox_from_settings

__all__ = [
    "Mount",
    "RunState",
    "SandboxInputs",
    "SandboxResult",
    "SandboxRun",
    "SandboxRunner",
    "Score",
    "read_score",
    "DockerSandbox",
    "MockSandbox",
    "ScriptedRun",
    "perf_output",
    "get_sandbox",
    "list_sandboxes",
    "register_sandbox",
    "sandbox_from_settings",
]
