"""upletworker: executes learn and predict uplets pulled from a task queue."""

from .common import ErrorCode, ResourceKind, SandboxOperation, TaskStatus, UpletType

__version__ = "0.1.0"

__all__ = [
    "ErrorCode",
    "ResourceKind",
    "SandboxOperation",
    "TaskStatus",
    "UpletType",
    "__version__",
]
