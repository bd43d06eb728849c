"""Protocol definitions for dependency injection and testability."""

from typing import Any, Dict, List, Optional, Protocol

from .models import DeviceType, UploadedImage


class S3ClientProtocol(Protocol):
    """Subset of the boto3 S3 client used by the storage backend."""

    def put_object(self, **kwargs: Any) -> Dict[str, Any]:
        """Put object to S3."""
        ...

    def head_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        """Fetch object metadata, raising ClientError(404) when missing."""
        ...

    def delete_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        """Delete object from S3."""
        ...


class StorageBackendProtocol(Protocol):
    """Durable blob storage addressed by relative paths."""

    def write(self, path: str, data: bytes, content_type: str) -> None:
        """Create a new object; raise StorageCollisionError if it already exists."""
        ...

    def exists(self, path: str) -> bool:
        """Return True when an object is stored at path."""
        ...

    def delete(self, path: str) -> bool:
        """Remove path, returning False when nothing was stored there."""
        ...


class CounterStoreProtocol(Protocol):
    """Atomic counters with a fixed expiry, e.g. Redis INCR + EXPIRE."""

    def increment(self, key: str, window_seconds: int) -> int:
        """Atomically add one and return the new count.

        The expiry is set only when the key is created; later increments
        inside the window leave it untouched.
        """
        ...

    def remaining_ttl(self, key: str) -> int:
        """Seconds until key expires, 0 if it does not exist."""
        ...


class ImageRecordStoreProtocol(Protocol):
    """Persistence collaborator holding one record per stored image."""

    def save_image(self, image: UploadedImage) -> str:
        """Persist an uploaded image and return its identifier."""
        ...

    def get_variant_paths(self, image_id: str) -> Optional[List[str]]:
        """Return the storage paths of every variant, or None if unknown."""
        ...

    def delete_image(self, image_id: str) -> None:
        """Remove the record for image_id."""
        ...

    def promote_sole_thumbnail(
        self, product_id: int, device_type: DeviceType
    ) -> Optional[str]:
        """Leave exactly one thumbnail for the product and device, returning its id."""
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...
