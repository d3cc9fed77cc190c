"""Ledger backend registry and lookup helpers."""

from __future__ import annotations

from typing import Dict, Type

from upletworker.config import Settings
from upletworker.core import Registry

from .base import Ledger
from .http import OrchestratorLedger
from .memory import InMemoryLedger

_LEDGER_REGISTRY = Registry(kind="ledger")
_LEDGER_REGISTRY.register("memory", InMemoryLedger)
_LEDGER_REGISTRY.register("orchestrator", OrchestratorLedger)


def get_ledger(name: str, **kwargs) -> Ledger:
    return _LEDGER_REGISTRY.create(name or "orchestrator", **kwargs)


def register_ledger(name: str, ledger_cls: Type[Ledger]) -> None:
    _LEDGER_REGISTRY.register(name, ledger_cls)


def list_ledgers() -> Dict[str, Type[Ledger]]:
    return _LEDGER_REGISTRY.items()


def ledger_from_settings(settings: Settings) -> Ledger:
    name = settings.ledger_backend.strip().lower()
    if name == "orchestrator":
        return get_ledger(
            name,
            base_url=settings.orchestrator_url,
            user=settings.orchestrator_user,
            password=settings.orchestrator_password,
            timeout=settings.http_timeout,
        )
    return get_ledger(name)
