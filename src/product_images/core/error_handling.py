# src/product_images/core/error_handling.py

import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .exceptions import (
    InvalidImageError,
    ProductImagesError,
    StageTimeoutError,
    StorageFailureError,
)

RETRYABLE_S3_ERROR_CODES = (
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "ServiceUnavailable",
    "InternalError",
)


def with_error_handling(func):
    """
    A decorator translating library errors into pipeline errors.

    Pillow decode failures become InvalidImageError and botocore failures
    become StorageFailureError; pipeline errors pass through unchanged.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + '.' + func.__name__)
        try:
            return func(*args, **kwargs)
        except ProductImagesError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            logger.warning(f"Image decode failed in '{func.__name__}': {e}")
            raise InvalidImageError(f"Unreadable image: {e}") from e
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Storage call failed in '{func.__name__}': {e}", exc_info=True)
            raise StorageFailureError(f"Storage operation failed in {func.__name__}: {e}") from e
    return wrapper


def is_retryable_storage_error(error: StorageFailureError) -> bool:
    """True when the error wraps a throttling-class S3 response."""
    cause = error.__cause__
    if isinstance(cause, ClientError):
        return cause.response.get('Error', {}).get('Code') in RETRYABLE_S3_ERROR_CODES
    return False


def retry_storage_operation(max_attempts=3, initial_delay=0.5, backoff_factor=2):
    """
    Decorator to retry storage operations with exponential backoff.

    Only throttling-class errors are retried; anything else is raised on
    the first attempt.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + '.' + func.__name__)
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except StorageFailureError as e:
                    if not is_retryable_storage_error(e):
                        raise
                    if attempt >= max_attempts:
                        logger.error(
                            f"Storage operation '{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        raise
                    logger.info(
                        f"Storage operation '{func.__name__}' throttled. Attempt {attempt}/{max_attempts}. "
                        f"Retrying in {delay:.2f}s. Error: {e}"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator


_timeout_executor: Optional[ThreadPoolExecutor] = None
_timeout_executor_lock = threading.Lock()


def _get_timeout_executor() -> ThreadPoolExecutor:
    global _timeout_executor
    with _timeout_executor_lock:
        if _timeout_executor is None:
            _timeout_executor = ThreadPoolExecutor(
                max_workers=32, thread_name_prefix="stage-call"
            )
        return _timeout_executor


def call_with_timeout(
    func: Callable[..., Any],
    *args: Any,
    timeout: Optional[float],
    stage: str,
    **kwargs: Any,
) -> Any:
    """
    Run func with a bounded wait.

    Raises StageTimeoutError when func does not return within timeout
    seconds. The call itself is abandoned, not interrupted. A timeout of
    None or 0 calls func directly.
    """
    if not timeout:
        return func(*args, **kwargs)
    future = _get_timeout_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        future.cancel()
        raise StageTimeoutError(stage, timeout) from e


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """
    def __init__(self, operation_name="Batch Operation"):
        self.operation_name = operation_name
        self.errors: List[Dict[str, str]] = []
        self.logger = logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)

    def __enter__(self):
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item '{error_detail['item']}': {error_detail['error']}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb)
            )
        else:
            self.logger.info(f"{self.operation_name} completed successfully.")

        # Never swallow exceptions raised inside the block
        return False

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Report an error for a specific item within the 'with' block.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed (e.g., filename).
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}")
