"""Factory classes for creating configured service instances."""

from typing import Any, Optional

import boto3
from botocore.config import Config

from .handlers import ImageUploadHandler
from .models import PipelineConfig
from .observability import LogLevel, MetricsCollector, StructuredLogger
from .orchestrator import UploadOrchestrator
from .protocols import (
    CounterStoreProtocol,
    ImageRecordStoreProtocol,
    LoggerProtocol,
    S3ClientProtocol,
    StorageBackendProtocol,
)
from .rate_limiter import (
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    UploadRateLimiter,
)
from .records import InMemoryImageRecordStore
from .services import (
    AspectRatioValidator,
    CompressionPreviewService,
    Compressor,
    ImageProber,
    VariantDeriver,
)
from .storage import (
    CleanupService,
    ImageDeletionService,
    LocalStorageBackend,
    S3StorageBackend,
    StorageWriter,
)


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str = "product-images", debug: bool = False) -> LoggerProtocol:
        """Create a structured logger; debug forces DEBUG level."""
        return StructuredLogger(name, LogLevel.DEBUG if debug else None)


class S3ClientFactory:
    """Factory for creating S3 client instances."""

    @staticmethod
    def create_s3_client(timeout: Optional[float] = None, **kwargs: Any) -> S3ClientProtocol:
        """Create S3 client whose connect and read timeouts are bounded."""
        if timeout:
            kwargs.setdefault(
                "config",
                Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 0}),
            )
        session = boto3.Session()
        return session.client("s3", **kwargs)  # type: ignore


class StorageBackendFactory:
    """Factory for the configured storage backend."""

    @staticmethod
    def create_backend(
        config: PipelineConfig, s3_client: Optional[S3ClientProtocol] = None
    ) -> StorageBackendProtocol:
        config.validate_backend()
        if config.storage_backend == "s3":
            if s3_client is None:
                s3_client = S3ClientFactory.create_s3_client(timeout=config.storage_timeout)
            return S3StorageBackend(s3_client, config.bucket)  # type: ignore[arg-type]
        return LocalStorageBackend(config.storage_root)


class CounterStoreFactory:
    """Factory for rate-limit counter stores."""

    @staticmethod
    def create_store(config: PipelineConfig) -> CounterStoreProtocol:
        """Redis when a URL is configured, otherwise a process-local store."""
        if config.redis_url:
            return RedisCounterStore.from_url(config.redis_url)
        return InMemoryCounterStore()


class PipelineFactory:
    """Factory for creating the complete upload pipeline."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        backend: Optional[StorageBackendProtocol] = None,
        record_store: Optional[ImageRecordStoreProtocol] = None,
        counter_store: Optional[CounterStoreProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.config = (config or PipelineConfig()).validate_backend()
        self.logger = logger or LoggerFactory.create_logger(debug=self.config.debug)
        self.backend = backend or StorageBackendFactory.create_backend(self.config)
        self.record_store = record_store if record_store is not None else InMemoryImageRecordStore()
        self.counter_store = counter_store or CounterStoreFactory.create_store(self.config)
        self.metrics_collector = metrics_collector
        self.cleanup = CleanupService(
            self.backend, self.logger, timeout=self.config.storage_timeout
        )

    def create_prober(self) -> ImageProber:
        return ImageProber(self.config.min_dimension, self.config.max_dimension)

    def create_orchestrator(self) -> UploadOrchestrator:
        """Create a fully configured upload orchestrator."""
        return UploadOrchestrator(
            prober=self.create_prober(),
            validator=AspectRatioValidator(),
            deriver=VariantDeriver(),
            compressor=Compressor(),
            storage_writer=StorageWriter(
                self.backend,
                key_prefix=self.config.key_prefix,
                timeout=self.config.storage_timeout,
            ),
            cleanup=self.cleanup,
            logger=self.logger,
            config=self.config,
            record_store=self.record_store,
            metrics_collector=self.metrics_collector,
        )

    def create_preview_service(self) -> CompressionPreviewService:
        return CompressionPreviewService(
            prober=self.create_prober(),
            validator=AspectRatioValidator(),
            deriver=VariantDeriver(),
            compressor=Compressor(),
            max_file_size=self.config.max_file_size,
        )

    def create_rate_limiter(self) -> UploadRateLimiter:
        return UploadRateLimiter(
            RateLimiter(self.counter_store),
            user_limit=self.config.user_rate_limit,
            ip_limit=self.config.ip_rate_limit,
            window_seconds=self.config.rate_limit_window,
            logger=self.logger,
        )

    def create_deletion_service(self) -> ImageDeletionService:
        return ImageDeletionService(self.record_store, self.cleanup, self.logger)

    def create_handler(self) -> ImageUploadHandler:
        """Wire every entrypoint around the shared backend and record store."""
        return ImageUploadHandler(
            orchestrator=self.create_orchestrator(),
            preview_service=self.create_preview_service(),
            rate_limiter=self.create_rate_limiter(),
            deletion_service=self.create_deletion_service(),
            logger=self.logger,
        )
