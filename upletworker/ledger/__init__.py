"""Task ledger: claims, results and failure reports."""

from .base import Ledger, TaskLedgerClient, validate_uplet_type, validate_worker_status
from .http import OrchestratorLedger
from .memory import InMemoryLedger
from .registry import get_ledger, ledger_from_settings, list_ledgers, register_ledger

__all__ = [
    "Ledger",
    "TaskLedgerClient",
    "validate_uplet_type",
    "validate_worker_status",
    "OrchestratorLedger",
    "InMemoryLedger",
    "get_ledger",
    "ledger_from_settings",
    "list_ledgers",
    "register_ledger",
]
