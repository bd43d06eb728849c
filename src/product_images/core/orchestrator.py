"""Upload orchestration: batch validation, per-file stages and rollback."""

import threading
from typing import Callable, Dict, List, Optional, Union

from PIL import Image

from ..processors import multithread_process_batch, serial_process_batch
from .error_handling import BatchOperationContextManager, call_with_timeout
from .exceptions import (
    BatchCancelledError,
    InvalidInputError,
    ProductImagesError,
    StageTimeoutError,
    StorageCollisionError,
    StorageFailureError,
)
from .image_utils import format_file_size
from .models import (
    FileError,
    FileStage,
    PipelineConfig,
    UploadedImage,
    UploadFile,
    UploadOutcome,
    UploadRequest,
    VariantName,
    VariantResult,
)
from .observability import LogContext, MetricsCollector, timed_operation
from .protocols import ImageRecordStoreProtocol, LoggerProtocol
from .services import (
    AspectRatioValidator,
    AnimatedImage,
    CompressedImage,
    Compressor,
    ImageProber,
    VariantDeriver,
)
from .storage import CleanupService, StorageWriter
from .tiers import CompressionTier, get_tier

MAX_SEQUENCE_ATTEMPTS = 5


class UploadOrchestrator:
    """
    Runs an upload batch through probe, ratio check, derivation,
    compression, storage and recording.

    A failing file is rolled back and reported in the outcome; its
    siblings carry on. Only batch-level problems (file count, sizes)
    raise, and they do so before any file is decoded.
    """

    def __init__(
        self,
        prober: ImageProber,
        validator: AspectRatioValidator,
        deriver: VariantDeriver,
        compressor: Compressor,
        storage_writer: StorageWriter,
        cleanup: CleanupService,
        logger: LoggerProtocol,
        config: Optional[PipelineConfig] = None,
        record_store: Optional[ImageRecordStoreProtocol] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        process_batch_fn: Optional[Callable] = None,
    ):
        self._prober = prober
        self._validator = validator
        self._deriver = deriver
        self._compressor = compressor
        self._writer = storage_writer
        self._cleanup = cleanup
        self._logger = logger
        self._config = config or PipelineConfig()
        self._record_store = record_store
        self._metrics = metrics_collector
        if process_batch_fn is None:
            process_batch_fn = (
                serial_process_batch
                if self._config.worker_count == 1
                else multithread_process_batch
            )
        self._process_batch = process_batch_fn

    def validate_batch(self, request: UploadRequest) -> None:
        """Reject malformed batches before any file is opened."""
        config = self._config
        errors: List[str] = []

        if not request.files:
            errors.append("At least one image is required")
        elif len(request.files) > config.max_files_per_batch:
            errors.append(
                f"Maximum {config.max_files_per_batch} images allowed per upload. "
                f"Received {len(request.files)}"
            )

        for index, upload in enumerate(request.files):
            if upload.size > config.max_file_size:
                errors.append(
                    f"File {index} ({upload.filename}) exceeds "
                    f"{format_file_size(config.max_file_size)} limit. "
                    f"Current size: {format_file_size(upload.size)}"
                )

        if request.total_size > config.max_batch_size:
            errors.append(
                f"Total upload size {format_file_size(request.total_size)} exceeds "
                f"{format_file_size(config.max_batch_size)} limit"
            )

        if errors:
            raise InvalidInputError(errors[0], errors=errors)

    def upload_batch(
        self, request: UploadRequest, cancel_event: Optional[threading.Event] = None
    ) -> UploadOutcome:
        """
        Process every file of request and return the assembled outcome.

        Results are in file order regardless of completion order. When
        cancel_event is set, files not yet started fail as cancelled and
        in-flight files are rolled back at their next stage boundary.

        Raises:
            InvalidInputError: the batch shape or sizes are out of bounds
        """
        self.validate_batch(request)
        tier = get_tier(request.compression_level)
        context = LogContext(component="upload_orchestrator").with_metadata(
            product_id=request.product_id, device_type=request.device_type.value
        )
        reached: Dict[int, FileStage] = {}

        def process_item(index: int, upload: UploadFile):
            return self._process_file(request, index, upload, tier, cancel_event, context, reached)

        def fail_item(index: int, upload: UploadFile, error: Exception) -> FileError:
            if index in reached:
                stage = _next_stage(reached[index])
            else:
                stage = FileStage.RECEIVED
            if not isinstance(error, ProductImagesError):
                self._logger.error(
                    f"Unexpected error processing {upload.filename}: {error!r}",
                    context.with_operation("process_file"),
                    file_index=index,
                )
            return _file_error(index, upload, stage, error)

        operation = f"Upload of {len(request.files)} file(s) for product {request.product_id}"
        with BatchOperationContextManager(operation_name=operation) as batch:
            results = self._process_batch(
                request.files,
                process_item,
                fail_item,
                cancel_event=cancel_event,
                max_workers=self._config.worker_count,
            )
            outcome = UploadOutcome()
            for result in results:
                if isinstance(result, FileError):
                    outcome.errors.append(result)
                    batch.add_error(result.reason, item_identifier=result.filename)
                else:
                    outcome.uploaded.append(result)

        if outcome.uploaded and self._record_store is not None:
            self._record_store.promote_sole_thumbnail(request.product_id, request.device_type)

        self._logger.info(
            "Upload batch finished",
            context.with_operation("upload_batch"),
            status=outcome.status.value,
            uploaded=len(outcome.uploaded),
            failed=len(outcome.errors),
        )
        return outcome

    def _process_file(
        self,
        request: UploadRequest,
        index: int,
        upload: UploadFile,
        tier: CompressionTier,
        cancel_event: Optional[threading.Event],
        batch_context: LogContext,
        reached: Dict[int, FileStage],
    ):
        context = LogContext(
            operation="process_file", component=batch_context.component
        ).with_metadata(**batch_context.metadata, file_index=index, filename=upload.filename)
        written: List[str] = []

        def advance(stage: FileStage) -> None:
            reached[index] = stage
            self._logger.debug(f"File reached {stage.value}", context)

        advance(FileStage.RECEIVED)
        try:
            _check_cancelled(cancel_event)
            with timed_operation("probe", self._metrics, file_index=index):
                probed = call_with_timeout(
                    self._prober.probe,
                    upload.content,
                    upload.filename,
                    upload.content_type,
                    timeout=self._config.decode_timeout,
                    stage="probe",
                )
            advance(FileStage.PROBED)

            self._validator.validate(probed, request.device_type)
            advance(FileStage.RATIO_CHECKED)

            _check_cancelled(cancel_event)
            with timed_operation("derive", self._metrics, file_index=index):
                rasters = call_with_timeout(
                    self._deriver.derive,
                    probed,
                    upload.content,
                    tier,
                    timeout=self._config.decode_timeout,
                    stage="derive",
                )
            advance(FileStage.DERIVED)

            _check_cancelled(cancel_event)
            with timed_operation("compress", self._metrics, file_index=index):
                encoded = self._compress_all(rasters, tier, probed.format)
            advance(FileStage.COMPRESSED)

            _check_cancelled(cancel_event)
            with timed_operation("store", self._metrics, file_index=index):
                sequence, variants = self._store_variant_set(
                    request.product_id, probed.extension, encoded, written, cancel_event
                )
            advance(FileStage.STORED)

            image = UploadedImage(
                file_index=index,
                filename=upload.filename,
                product_id=request.product_id,
                sequence=sequence,
                device_type=request.device_type,
                image_type=request.image_type,
                compression_level=tier.level,
                width=probed.width,
                height=probed.height,
                mime_format=probed.mime_format,
                source_byte_size=upload.size,
                variants=variants,
            )
            _check_cancelled(cancel_event)
            if self._record_store is not None:
                image_id = self._record_store.save_image(image)
                image = image.model_copy(update={"image_id": image_id})
            advance(FileStage.RECORDED)
            return image

        except ProductImagesError as e:
            stage = _next_stage(reached[index])
            rollback_errors = self._rollback(written, context)
            self._logger.error(
                f"File failed at {stage.value}: {e}",
                context,
                error_type=e.error_type,
                rolled_back=len(written),
            )
            return _file_error(index, upload, stage, e, rollback_errors)
        except Exception:
            self._rollback(written, context)
            raise

    def _compress_all(
        self,
        rasters: Dict[VariantName, Union[Image.Image, AnimatedImage]],
        tier: CompressionTier,
        output_format: str,
    ) -> Dict[VariantName, CompressedImage]:
        return {
            name: self._compressor.compress(raster, tier, output_format)
            for name, raster in rasters.items()
        }

    def _store_variant_set(
        self,
        product_id: int,
        extension: str,
        encoded: Dict[VariantName, CompressedImage],
        written: List[str],
        cancel_event: Optional[threading.Event],
    ):
        """
        Write all variants under one sequence number.

        When a path is already taken, the variants written so far are
        removed and the whole set moves to a fresh sequence.
        """
        for _ in range(MAX_SEQUENCE_ATTEMPTS):
            sequence = self._writer.reserve_sequence(product_id, extension)
            try:
                variants = self._write_variants(
                    product_id, sequence, extension, encoded, written, cancel_event
                )
                return sequence, variants
            except StorageCollisionError as e:
                self._logger.warning(
                    f"Sequence {sequence} of product {product_id} is taken, retrying",
                    path=e.path,
                )
                failed = self._cleanup.delete_variant_set(written)
                if not failed.succeeded:
                    raise StorageFailureError(
                        f"Could not release partial variant set: {failed.errors[0][1]}"
                    ) from e
                written.clear()
            finally:
                self._writer.release_sequence(product_id, sequence)

        raise StorageFailureError(
            f"No free sequence for product {product_id} after {MAX_SEQUENCE_ATTEMPTS} attempts"
        )

    def _write_variants(
        self,
        product_id: int,
        sequence: int,
        extension: str,
        encoded: Dict[VariantName, CompressedImage],
        written: List[str],
        cancel_event: Optional[threading.Event],
    ) -> List[VariantResult]:
        variants: List[VariantResult] = []
        for name, compressed in encoded.items():
            _check_cancelled(cancel_event)
            path = self._writer.build_path(product_id, sequence, name, extension)
            try:
                self._writer.store(
                    product_id, name, compressed.data, extension, sequence=sequence
                )
            except StageTimeoutError:
                # The abandoned write may still land
                written.append(path)
                raise
            written.append(path)
            variants.append(
                VariantResult(
                    variant_name=name,
                    storage_path=path,
                    width=compressed.width,
                    height=compressed.height,
                    original_byte_size=compressed.original_byte_size,
                    compressed_byte_size=compressed.compressed_byte_size,
                    quality_used=compressed.quality_used,
                )
            )
        return variants

    def _rollback(self, written: List[str], context: LogContext) -> List[str]:
        if not written:
            return []
        result = self._cleanup.delete_variant_set(written)
        if not result.succeeded:
            self._logger.error(
                "Rollback left orphaned variants",
                context,
                paths=[path for path, _ in result.errors],
            )
        return [f"{path}: {reason}" for path, reason in result.errors]


_STAGE_ORDER = list(FileStage)


def _next_stage(stage: FileStage) -> FileStage:
    """The transition a file was attempting after reaching stage."""
    position = _STAGE_ORDER.index(stage)
    return _STAGE_ORDER[min(position + 1, len(_STAGE_ORDER) - 1)]


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise BatchCancelledError("Batch was cancelled")


def _file_error(
    index: int,
    upload: UploadFile,
    stage: FileStage,
    error: Exception,
    rollback_errors: Optional[List[str]] = None,
) -> FileError:
    if isinstance(error, ProductImagesError):
        details = {
            k: v for k, v in error.to_dict().items() if k not in ("type", "message")
        }
        error_type = error.error_type
    else:
        details = {}
        error_type = "internal_error"
    return FileError(
        file_index=index,
        filename=upload.filename,
        stage=stage.value,
        error_type=error_type,
        reason=str(error),
        details=details,
        rollback_errors=rollback_errors or [],
    )
