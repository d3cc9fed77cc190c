"""Error classification utilities for upletworker."""

import asyncio
import re
from enum import Enum
from typing import Optional

from upletworker.common import ErrorCode
from upletworker.utils.errors import (
    AlreadyClaimedError,
    UpletError,
    ValidationError,
)


class Disposition(str, Enum):
    """What the consumer does with a message after its handler returns."""

    ACK = "ack"
    REQUEUE = "requeue"
    FAIL = "fail"
    DROP = "drop"


# Exit status the docker client uses for its own failures (daemon, image, flags).
DOCKER_CLIENT_ERROR_EXIT = 125


def classify_error(error: BaseException) -> ErrorCode:
    """Map an exception onto an error code."""
    if isinstance(error, UpletError):
        return error.error_code
    if isinstance(error, asyncio.TimeoutError):
        return ErrorCode.TIMEOUT_ERROR
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCode.NETWORK_ERROR
    return ErrorCode.UNKNOWN_ERROR


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, UpletError):
        return bool(error.retryable)
    # Host-side I/O failures (full disk, lost mount) belong to the worker, not the task.
    return isinstance(error, (asyncio.TimeoutError, asyncio.CancelledError, OSError))


def get_disposition(error: Optional[BaseException]) -> Disposition:
    """Decide requeue versus terminal failure for a handler outcome."""
    if error is None:
        return Disposition.ACK
    if isinstance(error, (ValidationError, AlreadyClaimedError)):
        return Disposition.DROP
    if is_retryable(error):
        return Disposition.REQUEUE
    return Disposition.FAIL


def classify_docker_failure(stderr: str, exit_code: Optional[int] = None) -> ErrorCode:
    """Tell a container that never ran apart from an algorithm that failed."""
    if exit_code == DOCKER_CLIENT_ERROR_EXIT:
        return ErrorCode.SETUP_ERROR
    if not stderr:
        return ErrorCode.EXECUTION_ERROR

    error_lower = stderr.lower()

    setup_patterns = [
        r"cannot connect to the docker daemon",
        r"unable to find image",
        r"pull access denied",
        r"manifest.*not found",
        r"no space left on device",
        r"error response from daemon",
        r"oci runtime create failed",
        r"permission denied.*docker\.sock",
        r"invalid reference format",
    ]
    if any(re.search(pattern, error_lower) for pattern in setup_patterns):
        return ErrorCode.SETUP_ERROR

    timeout_patterns = [
        r"context deadline exceeded",
        r"timed? ?out",
    ]
    if any(re.search(pattern, error_lower) for pattern in timeout_patterns):
        return ErrorCode.TIMEOUT_ERROR

    return ErrorCode.EXECUTION_ERROR


def get_error_description(error_code: ErrorCode) -> str:
    """Get human-readable description for error code."""
    descriptions = {
        ErrorCode.VALIDATION_ERROR: "Task validation failed - malformed uplet or resource record",
        ErrorCode.INVALID_STATUS: "Invalid status transition requested by the worker",
        ErrorCode.ALREADY_CLAIMED: "Task already claimed by another worker",
        ErrorCode.DUPLICATE_REPORT: "Task already reached a terminal status",
        ErrorCode.NOT_FOUND: "Referenced blob or resource does not exist",
        ErrorCode.NETWORK_ERROR: "Network error - service unreachable or I/O failure",
        ErrorCode.PROTOCOL_ERROR: "Remote service answered with an unexpected status",
        ErrorCode.TIMEOUT_ERROR: "Sandbox run exceeded its time limit",
        ErrorCode.SETUP_ERROR: "Sandbox environment could not be created or started",
        ErrorCode.EXECUTION_ERROR: "Algorithm exited with an error or produced unusable output",
        ErrorCode.UNKNOWN_ERROR: "Unknown error - unclassified error type",
    }
    return descriptions.get(error_code, "Unknown error type")


def get_error_category(error_code: ErrorCode) -> str:
    """Get error category for grouping similar errors."""
    categories = {
        ErrorCode.VALIDATION_ERROR: "input",
        ErrorCode.INVALID_STATUS: "input",
        ErrorCode.ALREADY_CLAIMED: "ledger",
        ErrorCode.DUPLICATE_REPORT: "ledger",
        ErrorCode.NOT_FOUND: "storage",
        ErrorCode.NETWORK_ERROR: "system",
        ErrorCode.PROTOCOL_ERROR: "system",
        ErrorCode.TIMEOUT_ERROR: "sandbox",
        ErrorCode.SETUP_ERROR: "sandbox",
        ErrorCode.EXECUTION_ERROR: "algorithm",
        ErrorCode.UNKNOWN_ERROR: "unknown",
    }
    return categories.get(error_code, "unknown")
