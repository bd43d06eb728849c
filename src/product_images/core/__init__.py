"""Core utilities and shared components for the product images pipeline."""

from .logging_config import get_logger, setup_logger
from .exceptions import (
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
from .models import (
    CompressionLevel,
    DeviceType,
    FileError,
    ImageType,
    PipelineConfig,
    UploadedImage,
    UploadFile,
    UploadOutcome,
    UploadRequest,
    VariantName,
    VariantResult,
)

__all__ = [
    "PipelineConfig",
    "UploadFile",
    "UploadRequest",
    "UploadedImage",
    "UploadOutcome",
    "FileError",
    "VariantResult",
    "CompressionLevel",
    "DeviceType",
    "ImageType",
    "VariantName",
    "setup_logger",
    "get_logger",
    "ProductImagesError",
    "ConfigurationError",
    "InvalidInputError",
    "ImageProcessingError",
    "InvalidImageError",
    "AspectRatioMismatchError",
    "StorageFailureError",
    "StorageCollisionError",
    "StageTimeoutError",
    "BatchCancelledError",
    "RateLimitedError",
    "ImageNotFoundError",
]
