# tests/core/test_error_handling.py

import time
from unittest import mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from PIL import UnidentifiedImageError

from product_images.core.error_handling import (
    BatchOperationContextManager,
    call_with_timeout,
    is_retryable_storage_error,
    retry_storage_operation,
    with_error_handling,
)
from product_images.core.exceptions import (
    InvalidImageError,
    InvalidInputError,
    StageTimeoutError,
    StorageFailureError,
)


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": "msg"}}, "PutObject")


@pytest.fixture
def mock_logger():
    """Fixture to mock the logger used by the decorators."""
    with mock.patch("product_images.core.error_handling.logging") as mock_logging:
        mock_log_instance = mock.Mock()
        mock_logging.getLogger.return_value = mock_log_instance
        yield mock_log_instance


# --- Tests for @with_error_handling decorator ---

def test_with_error_handling_maps_pillow_errors(mock_logger):
    @with_error_handling
    def decode():
        raise UnidentifiedImageError("cannot identify image file")

    with pytest.raises(InvalidImageError) as excinfo:
        decode()
    assert isinstance(excinfo.value.__cause__, UnidentifiedImageError)
    mock_logger.warning.assert_called_once()


def test_with_error_handling_maps_botocore_errors(mock_logger):
    @with_error_handling
    def put():
        raise client_error("AccessDenied")

    with pytest.raises(StorageFailureError, match="Storage operation failed in put"):
        put()
    args, kwargs = mock_logger.error.call_args
    assert kwargs.get("exc_info") is True


def test_with_error_handling_maps_connection_errors(mock_logger):
    @with_error_handling
    def put():
        raise EndpointConnectionError(endpoint_url="https://s3.example.com")

    with pytest.raises(StorageFailureError):
        put()


def test_with_error_handling_passes_pipeline_errors_through():
    @with_error_handling
    def validate():
        raise InvalidInputError("too many files")

    with pytest.raises(InvalidInputError):
        validate()


def test_with_error_handling_leaves_other_errors_alone():
    @with_error_handling
    def broken():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        broken()


def test_with_error_handling_returns_value():
    @with_error_handling
    def ok(x):
        return x * 2

    assert ok(21) == 42


# --- Tests for retry_storage_operation ---

def test_is_retryable_storage_error():
    throttled = StorageFailureError("slow")
    throttled.__cause__ = client_error("SlowDown")
    denied = StorageFailureError("denied")
    denied.__cause__ = client_error("AccessDenied")

    assert is_retryable_storage_error(throttled)
    assert not is_retryable_storage_error(denied)
    assert not is_retryable_storage_error(StorageFailureError("no cause"))


@mock.patch("time.sleep", return_value=None)
def test_retry_storage_operation_retries_throttling(mock_sleep):
    calls = {"count": 0}

    @retry_storage_operation(max_attempts=3, initial_delay=0.1, backoff_factor=2)
    @with_error_handling
    def put():
        calls["count"] += 1
        if calls["count"] < 3:
            raise client_error("SlowDown")
        return "done"

    assert put() == "done"
    assert calls["count"] == 3
    mock_sleep.assert_has_calls([mock.call(0.1), mock.call(0.2)])


@mock.patch("time.sleep", return_value=None)
def test_retry_storage_operation_gives_up(mock_sleep):
    calls = {"count": 0}

    @retry_storage_operation(max_attempts=2, initial_delay=0.1)
    @with_error_handling
    def put():
        calls["count"] += 1
        raise client_error("ThrottlingException")

    with pytest.raises(StorageFailureError):
        put()
    assert calls["count"] == 2


@mock.patch("time.sleep", return_value=None)
def test_retry_storage_operation_does_not_retry_permanent_errors(mock_sleep):
    calls = {"count": 0}

    @retry_storage_operation(max_attempts=3)
    @with_error_handling
    def put():
        calls["count"] += 1
        raise client_error("AccessDenied")

    with pytest.raises(StorageFailureError):
        put()
    assert calls["count"] == 1
    mock_sleep.assert_not_called()


# --- Tests for call_with_timeout ---

def test_call_with_timeout_returns_result():
    assert call_with_timeout(lambda a, b=0: a + b, 1, b=2, timeout=1.0, stage="probe") == 3


def test_call_with_timeout_raises_stage_timeout():
    with pytest.raises(StageTimeoutError) as excinfo:
        call_with_timeout(time.sleep, 0.5, timeout=0.05, stage="derive")
    assert excinfo.value.stage == "derive"


def test_call_with_timeout_propagates_errors():
    def fail():
        raise InvalidImageError("bad pixels")

    with pytest.raises(InvalidImageError):
        call_with_timeout(fail, timeout=1.0, stage="probe")


def test_call_with_timeout_disabled_runs_inline():
    import threading

    caller = threading.current_thread()
    assert call_with_timeout(threading.current_thread, timeout=None, stage="x") is caller


# --- Tests for BatchOperationContextManager ---

def test_batch_operation_context_manager_success(mock_logger):
    with BatchOperationContextManager("Test Batch Success") as batch:
        assert not batch.errors

    mock_logger.info.assert_any_call("Starting Test Batch Success.")
    mock_logger.info.assert_any_call("Test Batch Success completed successfully.")


def test_batch_operation_context_manager_collects_errors(mock_logger):
    with BatchOperationContextManager("Test Batch Errors") as batch:
        batch.add_error("File is not a valid image", item_identifier="a.jpg")
        batch.add_error(ValueError("broken"), item_identifier="b.jpg")

    assert batch.errors == [
        {"item": "a.jpg", "error": "File is not a valid image"},
        {"item": "b.jpg", "error": "broken"},
    ]
    mock_logger.warning.assert_called_once_with("Test Batch Errors completed with 2 error(s).")
    assert mock_logger.error.call_count == 2


def test_batch_operation_context_manager_does_not_swallow(mock_logger):
    with pytest.raises(RuntimeError):
        with BatchOperationContextManager("Test Batch Crash"):
            raise RuntimeError("unexpected")

    args, kwargs = mock_logger.error.call_args
    assert "failed due to an unhandled exception" in args[0]
