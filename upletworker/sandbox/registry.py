"""Sandbox runner registry and lookup helpers."""

from __future__ import annotations

from typing import Dict, Type

from upletworker.config import Settings
from upletworker.core import Registry

from .base import SandboxRunner
from .docker import DockerSandbox
from .memory import MockSandbox

_SANDBOX_REGISTRY = Registry(kind="sandbox")
_SANDBOX_REGISTRY.register("docker", DockerSandbox)
_SANDBOX_REGISTRY.register("memory", MockSandbox)


def get_sandbox(name: str, **kwargs) -> SandboxRunner:
    return _SANDBOX_REGISTRY.create(name or "docker", **kwargs)


def register_sandbox(name: str, sandbox_cls: Type[SandboxRunner]) -> None:
    _SANDBOX_REGISTRY.register(name, sandbox_cls)


def list_sandboxes() -> Dict[str, Type[SandboxRunner]]:
    return _SANDBOX_REGISTRY.items()


def sandbox_from_settings(settings: Settings) -> SandboxRunner:
    name = settings.sandbox_backend.strip().lower()
    if name == "docker":
        return get_sandbox(
            name,
            image=settings.docker_image,
            docker_binary=settings.docker_binary,
            entrypoint=settings.sandbox_entrypoint,
            memory_limit=settings.sandbox_memory_limit,
            cpus=settings.sandbox_cpus,
            pids_limit=settings.sandbox_pids_limit,
            owner=settings.worker_id,
        )
    return get_sandbox(name, entrypoint=settings.sandbox_entrypoint)
