import asyncio
import errno

import pytest

from upletworker.common import ErrorCode
from upletworker.utils.error_classifier import (
    Disposition,
    classify_docker_failure,
    classify_error,
    get_disposition,
    get_error_category,
    get_error_description,
    is_retryable,
)
from upletworker.utils.errors import (
    AlreadyClaimedError,
    BlobNotFoundError,
    BlobSizeMismatchError,
    DuplicateReportError,
    InvalidStatusError,
    NetworkError,
    ProtocolError,
    SandboxExecutionError,
    SandboxSetupError,
    SandboxTimeoutError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error, disposition",
    [
        (None, Disposition.ACK),
        (ValidationError("bad record"), Disposition.DROP),
        (InvalidStatusError("bad status"), Disposition.DROP),
        (AlreadyClaimedError("taken"), Disposition.DROP),
        (NetworkError("refused"), Disposition.REQUEUE),
        (BlobSizeMismatchError("data/x", 3, 2), Disposition.REQUEUE),
        (SandboxTimeoutError("slow"), Disposition.REQUEUE),
        (SandboxSetupError("no image"), Disposition.REQUEUE),
        (ProtocolError("unavailable", 503, "http://x"), Disposition.REQUEUE),
        (asyncio.TimeoutError(), Disposition.REQUEUE),
        (OSError(errno.ENOSPC, "No space left on device"), Disposition.REQUEUE),
        (PermissionError("workdir"), Disposition.REQUEUE),
        (ProtocolError("forbidden", 403, "http://x"), Disposition.FAIL),
        (SandboxExecutionError("exit 1", exit_code=1), Disposition.FAIL),
        (BlobNotFoundError("model/x"), Disposition.FAIL),
        (DuplicateReportError("already done"), Disposition.FAIL),
        (RuntimeError("unexpected"), Disposition.FAIL),
    ],
)
def test_get_disposition(error, disposition):
    assert get_disposition(error) == disposition


def test_classify_error_codes():
    assert classify_error(SandboxTimeoutError("slow")) == ErrorCode.TIMEOUT_ERROR
    assert classify_error(BlobNotFoundError("x")) == ErrorCode.NOT_FOUND
    assert classify_error(asyncio.TimeoutError()) == ErrorCode.TIMEOUT_ERROR
    assert classify_error(ConnectionResetError()) == ErrorCode.NETWORK_ERROR
    assert classify_error(KeyError("x")) == ErrorCode.UNKNOWN_ERROR


def test_is_retryable_for_foreign_errors():
    assert is_retryable(ConnectionRefusedError())
    assert is_retryable(OSError(errno.EIO, "I/O error"))
    assert is_retryable(asyncio.CancelledError())
    assert not is_retryable(ValueError("x"))


@pytest.mark.parametrize(
    "stderr, exit_code, code",
    [
        ("", 125, ErrorCode.SETUP_ERROR),
        ("Unable to find image 'algo:1' locally", 1, ErrorCode.SETUP_ERROR),
        ("Cannot connect to the Docker daemon at unix:///var/run/docker.sock", None, ErrorCode.SETUP_ERROR),
        ("context deadline exceeded", 1, ErrorCode.TIMEOUT_ERROR),
        ("Traceback (most recent call last):\nZeroDivisionError", 1, ErrorCode.EXECUTION_ERROR),
        ("", 2, ErrorCode.EXECUTION_ERROR),
    ],
)
def test_classify_docker_failure(stderr, exit_code, code):
    assert classify_docker_failure(stderr, exit_code) == code


def test_every_code_has_description_and_category():
    for code in ErrorCode:
        assert get_error_description(code) != "Unknown error type"
        assert get_error_category(code) in {"input", "ledger", "storage", "system", "sandbox", "algorithm", "unknown"}
