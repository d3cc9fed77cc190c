"""Common types and enums shared across modules."""

from enum import Enum


class TaskStatus(str, Enum):
    """Uplet lifecycle status as recorded by the ledger."""

    TODO = "todo"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class UpletType(str, Enum):
    """Kinds of work unit a worker can execute."""

    LEARN = "learnuplet"
    PREDICT = "preduplet"


class ResourceKind(str, Enum):
    """Blob-backed resources known to the storage service."""

    ALGO = "algo"
    DATA = "data"
    MODEL = "model"
    PREDICTION = "prediction"
    PROBLEM = "problem"


class SandboxOperation(str, Enum):
    TRAIN = "train"
    TEST = "test"
    PREDICT = "predict"


class ErrorCode(str, Enum):
    """Error code enumeration for different error types."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATUS = "INVALID_STATUS"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    DUPLICATE_REPORT = "DUPLICATE_REPORT"
    NOT_FOUND = "NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    SETUP_ERROR = "SETUP_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


VALID_STATUSES = frozenset(TaskStatus)
TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED})
# Targets a worker may request through the plain status-update route.
WORKER_STATUS_TARGETS = frozenset({TaskStatus.PENDING, TaskStatus.FAILED})
VALID_UPLET_TYPES = frozenset(UpletType)
