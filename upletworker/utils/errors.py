"""Exception hierarchy for upletworker.

Every error carries an :class:`ErrorCode` and a ``retryable`` flag. The
consumer decides between requeue and terminal failure from these alone.
"""

from datetime import datetime
from typing import Any, Optional

from upletworker.common import ErrorCode


class UpletError(Exception):
    """Base exception for all upletworker errors."""

    error_code = ErrorCode.UNKNOWN_ERROR
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.timestamp = datetime.now()


class ValidationError(UpletError):
    """Raised when a task or resource record is malformed."""

    error_code = ErrorCode.VALIDATION_ERROR


class InvalidStatusError(ValidationError):
    """Raised for an uplet type or target status the worker may not request."""

    error_code = ErrorCode.INVALID_STATUS


class AlreadyClaimedError(UpletError):
    """The ledger refused a claim because another worker holds the task."""

    error_code = ErrorCode.ALREADY_CLAIMED

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id


class DuplicateReportError(UpletError):
    """A terminal report arrived for a task that is already terminal."""

    error_code = ErrorCode.DUPLICATE_REPORT


class BlobNotFoundError(UpletError):
    error_code = ErrorCode.NOT_FOUND

    def __init__(self, key: str):
        super().__init__(f"blob not found: {key}")
        self.key = key


class TransientError(UpletError):
    """Failure expected to go away on retry."""

    retryable = True


class NetworkError(TransientError):
    """Raised when a request fails before a response arrives (connection error, timeout)."""

    error_code = ErrorCode.NETWORK_ERROR

    def __init__(self, message: str, url: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.url = url
        self.original_error = original_error

    def __str__(self):
        return f"NetworkError(url={self.url}): {self.message}"


class BlobStoreError(TransientError):
    error_code = ErrorCode.NETWORK_ERROR


class BlobSizeMismatchError(BlobStoreError):
    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(f"blob {key}: expected {expected} bytes, read {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class SandboxTimeoutError(TransientError):
    error_code = ErrorCode.TIMEOUT_ERROR


class SandboxSetupError(TransientError):
    error_code = ErrorCode.SETUP_ERROR


class FatalTaskError(UpletError):
    """Failure that retrying the same task cannot fix."""

    error_code = ErrorCode.EXECUTION_ERROR


class SandboxExecutionError(FatalTaskError):
    """The algorithm ran and exited non-zero or produced unusable output."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ProtocolError(UpletError):
    """Raised when a remote service answers with an unexpected status."""

    error_code = ErrorCode.PROTOCOL_ERROR

    def __init__(self, message: str, status_code: int, url: str, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = body

    @property
    def retryable(self) -> bool:
        return not 400 <= self.status_code < 500

    def __str__(self):
        return f"ProtocolError(status={self.status_code}, url={self.url}): {self.message}"
