"""Tests for the exception hierarchy."""

import pytest

from product_images.core.exceptions import (
    AspectRatioMismatchError,
    BatchCancelledError,
    ConfigurationError,
    ImageNotFoundError,
    ImageProcessingError,
    InvalidImageError,
    InvalidInputError,
    ProductImagesError,
    RateLimitedError,
    StageTimeoutError,
    StorageCollisionError,
    StorageFailureError,
)


@pytest.mark.parametrize(
    "error, error_type",
    [
        (ConfigurationError("bad"), "configuration_error"),
        (InvalidInputError("bad"), "invalid_input"),
        (InvalidImageError("bad"), "invalid_image"),
        (StorageFailureError("bad"), "storage_failure"),
        (StorageCollisionError("bad"), "storage_collision"),
        (StageTimeoutError("store", 2), "timeout"),
        (BatchCancelledError("bad"), "cancelled"),
        (RateLimitedError("ip", 10, "bad"), "rate_limited"),
        (ImageNotFoundError("bad"), "not_found"),
    ],
)
def test_error_types(error, error_type):
    """Test that every error carries its response type."""
    assert isinstance(error, ProductImagesError)
    assert error.error_type == error_type
    assert error.to_dict()["type"] == error_type


def test_hierarchy():
    assert issubclass(InvalidImageError, ImageProcessingError)
    assert issubclass(AspectRatioMismatchError, ImageProcessingError)
    assert issubclass(StorageCollisionError, StorageFailureError)


def test_invalid_input_collects_errors():
    error = InvalidInputError("first", errors=["first", "second"])
    assert error.to_dict()["errors"] == ["first", "second"]
    assert InvalidInputError("only").errors == ["only"]


def test_aspect_ratio_mismatch_details():
    error = AspectRatioMismatchError("mobile", 0.8, 1.33, "wrong ratio")
    data = error.to_dict()
    assert data["expected"] == 0.8
    assert data["actual"] == 1.33
    assert data["device_type"] == "mobile"
    assert str(error) == "wrong ratio"


def test_stage_timeout_message():
    error = StageTimeoutError("probe", 1.5)
    assert str(error) == "probe did not complete within 1.5s"
    assert error.stage == "probe"


def test_rate_limited_defaults_retry_after_header():
    error = RateLimitedError("user", 42, "slow down")
    assert error.headers == {"Retry-After": "42"}
    assert error.to_dict()["retry_after"] == 42
    assert error.to_dict()["scope"] == "user"


def test_storage_failure_keeps_path():
    assert StorageFailureError("nope", path="images/a.jpg").path == "images/a.jpg"
