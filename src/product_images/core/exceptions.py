"""Custom exceptions for the product images pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ProductImagesError(Exception):
    """Base exception for all product images errors."""

    error_type = "product_images_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": str(self)}


class ConfigurationError(ProductImagesError):
    """Error raised for invalid configuration options."""

    error_type = "configuration_error"


class InvalidInputError(ProductImagesError):
    """The batch itself is malformed: too many files, oversize files or bad fields."""

    error_type = "invalid_input"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class ImageProcessingError(ProductImagesError):
    """Error raised when processing a single image fails."""

    error_type = "image_processing_error"


class InvalidImageError(ImageProcessingError):
    """Bytes are not a supported image or its pixel dimensions are out of bounds."""

    error_type = "invalid_image"


class AspectRatioMismatchError(ImageProcessingError):
    """The image ratio is outside the tolerance band of its device type."""

    error_type = "aspect_ratio_mismatch"

    def __init__(self, device_type: str, expected: float, actual: float, message: str):
        super().__init__(message)
        self.device_type = device_type
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            device_type=self.device_type, expected=self.expected, actual=self.actual
        )
        return data


class StorageFailureError(ProductImagesError):
    """Error raised for storage write or delete failures."""

    error_type = "storage_failure"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class StorageCollisionError(StorageFailureError):
    """The target path already exists and was not overwritten."""

    error_type = "storage_collision"


class StageTimeoutError(ProductImagesError):
    """A decode or storage call did not finish within its time budget."""

    error_type = "timeout"

    def __init__(self, stage: str, timeout: float):
        super().__init__(f"{stage} did not complete within {timeout:g}s")
        self.stage = stage
        self.timeout = timeout


class BatchCancelledError(ProductImagesError):
    """The batch was abandoned before this file finished."""

    error_type = "cancelled"


class RateLimitedError(ProductImagesError):
    """Too many uploads for a user or source IP in the current window."""

    error_type = "rate_limited"

    def __init__(
        self,
        scope: str,
        retry_after_seconds: int,
        message: str,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.scope = scope
        self.retry_after_seconds = retry_after_seconds
        self.headers = headers or {"Retry-After": str(retry_after_seconds)}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(scope=self.scope, retry_after=self.retry_after_seconds)
        return data


class ImageNotFoundError(ProductImagesError):
    """No persisted image exists for the given identifier."""

    error_type = "not_found"
