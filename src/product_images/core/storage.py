"""Storage backends, the variant writer and cleanup of stored variant sets."""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from botocore.exceptions import ClientError

from .error_handling import call_with_timeout, retry_storage_operation, with_error_handling
from .exceptions import (
    ImageNotFoundError,
    ProductImagesError,
    StorageCollisionError,
    StorageFailureError,
)
from .image_utils import FORMAT_EXTENSIONS, SUPPORTED_FORMATS
from .models import VariantName
from .protocols import (
    ImageRecordStoreProtocol,
    LoggerProtocol,
    S3ClientProtocol,
    StorageBackendProtocol,
)

CONTENT_TYPES = {
    ext: SUPPORTED_FORMATS[fmt] for fmt, ext in FORMAT_EXTENSIONS.items()
}

MISSING_OBJECT_CODES = ("404", "NoSuchKey", "NotFound")
PRECONDITION_FAILED_CODES = ("412", "PreconditionFailed", "ConditionalRequestConflict")


class LocalStorageBackend:
    """Stores objects as files below a public-servable root directory."""

    def __init__(self, root: str):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        full_path = (self._root / path).resolve()
        if self._root != full_path and self._root not in full_path.parents:
            raise StorageFailureError(f"Path escapes storage root: {path}", path=path)
        return full_path

    def write(self, path: str, data: bytes, content_type: str) -> None:
        full_path = self._resolve(path)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(full_path, "xb") as fh:
                fh.write(data)
        except FileExistsError as e:
            raise StorageCollisionError(f"Refusing to overwrite {path}", path=path) from e
        except OSError as e:
            full_path.unlink(missing_ok=True)
            raise StorageFailureError(f"Failed to write {path}: {e}", path=path) from e

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> bool:
        full_path = self._resolve(path)
        try:
            full_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailureError(f"Failed to delete {path}: {e}", path=path) from e
        return True


class S3StorageBackend:
    """Stores objects in an S3 bucket using conditional writes."""

    def __init__(self, s3_client: S3ClientProtocol, bucket: str):
        self._s3_client = s3_client
        self._bucket = bucket

    @retry_storage_operation()
    @with_error_handling
    def write(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._s3_client.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as e:
            if _error_code(e) in PRECONDITION_FAILED_CODES:
                raise StorageCollisionError(
                    f"Refusing to overwrite s3://{self._bucket}/{path}", path=path
                ) from e
            raise

    @retry_storage_operation()
    @with_error_handling
    def exists(self, path: str) -> bool:
        try:
            self._s3_client.head_object(Bucket=self._bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in MISSING_OBJECT_CODES:
                return False
            raise
        return True

    @retry_storage_operation()
    @with_error_handling
    def delete(self, path: str) -> bool:
        if not self.exists(path):
            return False
        self._s3_client.delete_object(Bucket=self._bucket, Key=path)
        return True


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class StorageWriter:
    """
    Writes encoded variants under deterministic names.

    Paths follow ``{prefix}/product_{id}_image_{sequence}_{variant}.{ext}``.
    All variants of one image share a sequence number; sequences are
    reserved so concurrent files of the same product never collide.
    """

    def __init__(
        self,
        backend: StorageBackendProtocol,
        key_prefix: str = "images",
        timeout: Optional[float] = None,
        max_collision_retries: int = 5,
    ):
        self._backend = backend
        self._key_prefix = key_prefix.strip("/")
        self._timeout = timeout
        self._max_collision_retries = max_collision_retries
        self._lock = threading.Lock()
        self._reserved: Set[Tuple[int, int]] = set()
        self._next_sequence: Dict[int, int] = {}

    def build_path(
        self, product_id: int, sequence: int, variant_name: VariantName, extension: str
    ) -> str:
        filename = f"product_{product_id}_image_{sequence}_{VariantName(variant_name).value}.{extension}"
        if self._key_prefix:
            return f"{self._key_prefix}/{filename}"
        return filename

    def reserve_sequence(self, product_id: int, extension: str) -> int:
        """Claim the lowest free sequence whose variant paths are all unused."""
        with self._lock:
            sequence = self._next_sequence.get(product_id, 1)
            while (product_id, sequence) in self._reserved or self._sequence_in_use(
                product_id, sequence, extension
            ):
                sequence += 1
            self._reserved.add((product_id, sequence))
            self._next_sequence[product_id] = sequence + 1
            return sequence

    def release_sequence(self, product_id: int, sequence: int) -> None:
        with self._lock:
            self._reserved.discard((product_id, sequence))

    def _sequence_in_use(self, product_id: int, sequence: int, extension: str) -> bool:
        return any(
            self._backend.exists(self.build_path(product_id, sequence, name, extension))
            for name in VariantName
        )

    def store(
        self,
        product_id: int,
        variant_name: VariantName,
        data: bytes,
        extension: str,
        sequence: Optional[int] = None,
    ) -> str:
        """
        Durably write one variant and return its storage path.

        With an explicit sequence a collision raises StorageCollisionError so
        the caller can move the whole variant set to a fresh sequence.
        Without one, a fresh sequence is reserved and collisions retry.
        """
        if sequence is not None:
            return self._write(product_id, sequence, variant_name, data, extension)

        for _ in range(self._max_collision_retries):
            fresh = self.reserve_sequence(product_id, extension)
            try:
                return self._write(product_id, fresh, variant_name, data, extension)
            except StorageCollisionError:
                continue
            finally:
                self.release_sequence(product_id, fresh)
        raise StorageFailureError(
            f"No free sequence for product {product_id} after {self._max_collision_retries} attempts"
        )

    def _write(
        self,
        product_id: int,
        sequence: int,
        variant_name: VariantName,
        data: bytes,
        extension: str,
    ) -> str:
        path = self.build_path(product_id, sequence, variant_name, extension)
        content_type = CONTENT_TYPES.get(extension, "application/octet-stream")
        call_with_timeout(
            self._backend.write, path, data, content_type,
            timeout=self._timeout, stage="store",
        )
        return path


@dataclass
class CleanupResult:
    """Outcome of deleting a set of stored paths."""

    deleted_count: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class CleanupService:
    """Idempotent removal of every file belonging to a stored image."""

    def __init__(
        self,
        backend: StorageBackendProtocol,
        logger: Optional[LoggerProtocol] = None,
        timeout: Optional[float] = None,
    ):
        self._backend = backend
        self._logger = logger
        self._timeout = timeout

    def delete_variant_set(self, storage_paths: Iterable[str]) -> CleanupResult:
        """
        Delete every path, continuing past failures.

        Missing paths are not errors and are not counted. A failure on one
        path is recorded and the remaining paths are still attempted.
        """
        result = CleanupResult()
        for path in dict.fromkeys(storage_paths):
            try:
                removed = call_with_timeout(
                    self._backend.delete, path, timeout=self._timeout, stage="delete"
                )
            except (ProductImagesError, OSError) as e:
                result.errors.append((path, str(e)))
                if self._logger:
                    self._logger.error(f"Failed to delete {path}: {e}")
                continue
            if removed:
                result.deleted_count += 1

        if self._logger:
            self._logger.debug(
                "Variant set cleanup finished",
                deleted=result.deleted_count,
                errors=len(result.errors),
            )
        return result


@dataclass
class DeletionResult:
    """Outcome of deleting a persisted image and its files."""

    image_id: str
    deleted_count: int
    errors: List[Tuple[str, str]]
    record_deleted: bool


class ImageDeletionService:
    """Removes an image's files, then its persisted record."""

    def __init__(
        self,
        record_store: ImageRecordStoreProtocol,
        cleanup: CleanupService,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._record_store = record_store
        self._cleanup = cleanup
        self._logger = logger

    def delete_image(self, image_id: str) -> DeletionResult:
        """
        Delete all variant files of image_id, then its record.

        The record is kept when any file could not be removed, so the
        deletion can be retried.
        """
        paths = self._record_store.get_variant_paths(image_id)
        if paths is None:
            raise ImageNotFoundError(f"Image {image_id} not found")

        cleanup = self._cleanup.delete_variant_set(paths)
        record_deleted = False
        if cleanup.succeeded:
            self._record_store.delete_image(image_id)
            record_deleted = True
        elif self._logger:
            self._logger.warning(
                f"Keeping record for image {image_id}; {len(cleanup.errors)} file(s) not deleted"
            )

        return DeletionResult(
            image_id=image_id,
            deleted_count=cleanup.deleted_count,
            errors=cleanup.errors,
            record_deleted=record_deleted,
        )
