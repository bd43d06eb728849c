"""Shared data models for the product images pipeline."""

import os
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .exceptions import ConfigurationError
from .image_utils import FORMAT_EXTENSIONS

MIB = 1024 * 1024


class DeviceType(str, Enum):
    """Device class an upload is intended for."""

    MOBILE = "mobile"
    DESKTOP = "desktop"


class ImageType(str, Enum):
    """Role of an image on the product page."""

    THUMBNAIL = "thumbnail"
    GALLERY = "gallery"
    HERO = "hero"


class CompressionLevel(str, Enum):
    """Named compression tiers, ordered from least to most lossy."""

    LOSSLESS = "lossless"
    MINIMAL = "minimal"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class VariantName(str, Enum):
    """Renditions derived from every uploaded image."""

    ORIGINAL = "original"
    MOBILE_PORTRAIT = "mobile_portrait"
    MOBILE_SQUARE = "mobile_square"
    DESKTOP_LANDSCAPE = "desktop_landscape"


class FileStage(str, Enum):
    """Per-file processing stages inside a batch."""

    RECEIVED = "received"
    PROBED = "probed"
    RATIO_CHECKED = "ratio_checked"
    DERIVED = "derived"
    COMPRESSED = "compressed"
    STORED = "stored"
    RECORDED = "recorded"


class BatchStatus(str, Enum):
    """Overall result of an upload batch."""

    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    REJECTED = "rejected"


class PipelineConfig(BaseModel):
    """Configuration for the upload pipeline."""

    storage_backend: Literal["local", "s3"] = "local"
    storage_root: str = "public/storage"
    bucket: Optional[str] = None
    key_prefix: str = "images"
    max_files_per_batch: int = 10
    max_file_size: int = 30 * MIB
    max_batch_size: int = 300 * MIB
    min_dimension: int = 100
    max_dimension: int = 8000
    max_workers: Optional[int] = None
    decode_timeout: float = 30.0
    storage_timeout: float = 30.0
    user_rate_limit: int = 50
    ip_rate_limit: int = 100
    rate_limit_window: int = 3600
    redis_url: Optional[str] = None
    debug: bool = False

    def validate_backend(self) -> "PipelineConfig":
        """Raise ConfigurationError for combinations the factories cannot build."""
        if self.storage_backend == "s3" and not self.bucket:
            raise ConfigurationError("S3 storage requires a bucket name")
        if self.min_dimension > self.max_dimension:
            raise ConfigurationError("min_dimension must not exceed max_dimension")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        return self

    @property
    def worker_count(self) -> int:
        """Number of worker threads used for per-file processing."""
        return self.max_workers or os.cpu_count() or 1

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineConfig":
        """
        Build a configuration from PRODUCT_IMAGES_* environment variables.

        Every field can be set with its upper-cased name, e.g.
        PRODUCT_IMAGES_STORAGE_ROOT or PRODUCT_IMAGES_MAX_WORKERS.
        Explicit keyword overrides win over the environment.
        """
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"PRODUCT_IMAGES_{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        try:
            config = cls(**values)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc
        return config.validate_backend()


class UploadFile(BaseModel):
    """A single uploaded file as received from the HTTP layer."""

    filename: str
    content: bytes = Field(repr=False)
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class UploadRequest(BaseModel):
    """A batch of files to attach to one product."""

    product_id: int
    device_type: DeviceType
    image_type: ImageType = ImageType.GALLERY
    compression_level: CompressionLevel = CompressionLevel.LOSSLESS
    files: List[UploadFile] = Field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


class ProbedImage(BaseModel):
    """Format and geometry sniffed from raw upload bytes."""

    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    format: str
    mime_format: str
    byte_size: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def extension(self) -> str:
        return FORMAT_EXTENSIONS[self.format]


class VariantResult(BaseModel):
    """One stored rendition of an uploaded image."""

    model_config = ConfigDict(frozen=True)

    variant_name: VariantName
    storage_path: str
    width: int
    height: int
    original_byte_size: int
    compressed_byte_size: int
    # JPEG/WebP quality, PNG zlib level, or 100 for GIF
    quality_used: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def savings_bytes(self) -> int:
        return self.original_byte_size - self.compressed_byte_size

    @computed_field  # type: ignore[prop-decorator]
    @property
    def compression_ratio(self) -> float:
        return compression_ratio(self.original_byte_size, self.compressed_byte_size)


class UploadedImage(BaseModel):
    """All variants produced for one file of a batch."""

    file_index: int
    filename: str
    product_id: int
    sequence: int
    device_type: DeviceType
    image_type: ImageType
    compression_level: CompressionLevel
    width: int
    height: int
    mime_format: str
    source_byte_size: int
    variants: List[VariantResult] = Field(default_factory=list)
    image_id: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def aspect_ratio(self) -> float:
        return round(self.width / self.height, 2)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stored_byte_size(self) -> int:
        return sum(v.compressed_byte_size for v in self.variants)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def compression_ratio(self) -> float:
        """Size reduction of the stored original relative to the uploaded file."""
        original = self.variant(VariantName.ORIGINAL)
        if original is None:
            return 0.0
        return compression_ratio(self.source_byte_size, original.compressed_byte_size)

    def variant(self, name: VariantName) -> Optional[VariantResult]:
        for variant in self.variants:
            if variant.variant_name == name:
                return variant
        return None

    @property
    def storage_paths(self) -> List[str]:
        return [v.storage_path for v in self.variants]


class FileError(BaseModel):
    """A file of a batch that failed, with the stage it failed at."""

    file_index: int
    filename: str
    stage: str
    error_type: str
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)
    rollback_errors: List[str] = Field(default_factory=list)


class UploadOutcome(BaseModel):
    """Result of an upload batch, ordered by file index."""

    uploaded: List[UploadedImage] = Field(default_factory=list)
    errors: List[FileError] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> BatchStatus:
        if not self.errors:
            return BatchStatus.SUCCEEDED
        if self.uploaded:
            return BatchStatus.PARTIAL
        return BatchStatus.REJECTED


class CompressionPreview(BaseModel):
    """Compression statistics for one image, computed without persisting it."""

    original_size: int
    compressed_size: int
    compression_ratio: float
    savings_bytes: int
    width: int
    height: int
    aspect_ratio: float
    mime_type: str
    compression_level: CompressionLevel
    quality_used: int
    target_size: Optional[int] = None
    target_achieved: Optional[bool] = None


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Percentage saved, rounded to 2 decimals; 0 for empty input."""
    if original_size <= 0:
        return 0.0
    return round((original_size - compressed_size) / original_size * 100, 2)
