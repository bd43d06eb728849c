"""Request entrypoints for the HTTP layer: upload, preview, analyze and delete.

Each entrypoint returns a HandlerResponse with a status code, a JSON-ready
body and response headers, so the surrounding web framework only has to
copy them onto its own response object.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .exceptions import (
    ImageNotFoundError,
    InvalidInputError,
    ProductImagesError,
    RateLimitedError,
)
from .image_utils import format_file_size
from .models import (
    BatchStatus,
    CompressionLevel,
    UploadedImage,
    UploadFile,
    UploadOutcome,
    UploadRequest,
)
from .orchestrator import UploadOrchestrator
from .protocols import LoggerProtocol
from .rate_limiter import UploadRateLimiter
from .records import summarize_uploads
from .services import CompressionPreviewService
from .storage import ImageDeletionService
from .tiers import aspect_ratio_info, compression_levels_info

BATCH_STATUS_CODES = {
    BatchStatus.SUCCEEDED: 200,
    BatchStatus.PARTIAL: 207,
    BatchStatus.REJECTED: 422,
}

BATCH_MESSAGES = {
    BatchStatus.SUCCEEDED: "All images uploaded successfully",
    BatchStatus.PARTIAL: "Some images were uploaded; see errors for the rejected files",
    BatchStatus.REJECTED: "No images were uploaded",
}


@dataclass
class HandlerResponse:
    """Status code, JSON body and headers of an entrypoint call."""

    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def error_response(
    status_code: int, error: ProductImagesError, headers: Optional[Dict[str, str]] = None
) -> HandlerResponse:
    body = {"success": False, "message": str(error), "error": error.to_dict()}
    return HandlerResponse(status_code, body, dict(headers or {}))


def _validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return messages


def _as_upload_file(file: Union[UploadFile, Mapping[str, Any]]) -> UploadFile:
    if isinstance(file, UploadFile):
        return file
    return UploadFile.model_validate(file)


def describe_uploaded(image: UploadedImage) -> Dict[str, Any]:
    """JSON view of an uploaded image with human-readable sizes."""
    data = image.model_dump(mode="json")
    data["source_size_formatted"] = format_file_size(image.source_byte_size)
    data["stored_size_formatted"] = format_file_size(image.stored_byte_size)
    return data


class ImageUploadHandler:
    """Entrypoints consumed by the HTTP layer."""

    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        preview_service: CompressionPreviewService,
        rate_limiter: UploadRateLimiter,
        deletion_service: ImageDeletionService,
        logger: LoggerProtocol,
    ):
        self._orchestrator = orchestrator
        self._preview_service = preview_service
        self._rate_limiter = rate_limiter
        self._deletion_service = deletion_service
        self._logger = logger

    def upload(
        self,
        payload: Mapping[str, Any],
        user_id: Optional[str] = None,
        ip_address: str = "unknown",
        cancel_event: Optional[threading.Event] = None,
    ) -> HandlerResponse:
        """
        Handle an upload form.

        payload holds product_id, device_type, image_type,
        compression_level and images, a list of UploadFile objects or
        dicts with filename, content and content_type.

        Returns 200 when every file was stored, 207 on partial success,
        422 when nothing was stored or the batch is malformed and 429
        when the user or IP is over its hourly limit.
        """
        try:
            rate_status = self._rate_limiter.enforce(user_id, ip_address)
        except RateLimitedError as e:
            return error_response(429, e, e.headers)
        headers = rate_status.headers()

        data = dict(payload)
        data["files"] = data.pop("images", data.get("files", []))
        try:
            request = UploadRequest.model_validate(data)
        except ValidationError as e:
            error = InvalidInputError("Invalid upload request", errors=_validation_errors(e))
            return error_response(422, error, headers)

        try:
            outcome = self._orchestrator.upload_batch(request, cancel_event=cancel_event)
        except InvalidInputError as e:
            self._logger.warning(
                f"Upload batch rejected: {e}",
                product_id=request.product_id,
                user_id=user_id,
            )
            return error_response(422, e, headers)

        return HandlerResponse(
            BATCH_STATUS_CODES[outcome.status], self._outcome_body(outcome), headers
        )

    @staticmethod
    def _outcome_body(outcome: UploadOutcome) -> Dict[str, Any]:
        status = outcome.status
        return {
            "success": status != BatchStatus.REJECTED,
            "status": status.value,
            "message": BATCH_MESSAGES[status],
            "uploaded": [describe_uploaded(image) for image in outcome.uploaded],
            "errors": [error.model_dump(mode="json") for error in outcome.errors],
            "summary": summarize_uploads(outcome.uploaded),
        }

    def preview(
        self,
        file: Union[UploadFile, Mapping[str, Any]],
        compression_level: Union[CompressionLevel, str] = CompressionLevel.LOSSLESS,
        target_size: Optional[int] = None,
    ) -> HandlerResponse:
        """Compression statistics for one file; nothing is stored."""
        try:
            upload = _as_upload_file(file)
            if target_size is not None:
                preview = self._preview_service.compress_to_target_size(upload, target_size)
            else:
                preview = self._preview_service.preview(upload, compression_level)
        except ValidationError as e:
            return error_response(
                422, InvalidInputError("Invalid file", errors=_validation_errors(e))
            )
        except ProductImagesError as e:
            return error_response(422, e)

        data = preview.model_dump(mode="json")
        data["formatted"] = {
            "original_size": format_file_size(preview.original_size),
            "compressed_size": format_file_size(preview.compressed_size),
            "savings": format_file_size(max(preview.savings_bytes, 0)),
        }
        return HandlerResponse(200, {"success": True, "data": data})

    def analyze(
        self, file: Union[UploadFile, Mapping[str, Any]], device_type: str
    ) -> HandlerResponse:
        """Report whether a file is ready to upload for device_type."""
        try:
            upload = _as_upload_file(file)
            analysis = self._preview_service.analyze(upload, device_type)
        except ValidationError as e:
            return error_response(
                422, InvalidInputError("Invalid file", errors=_validation_errors(e))
            )
        except ValueError:
            return error_response(
                422, InvalidInputError("Device type must be either mobile or desktop")
            )
        except ProductImagesError as e:
            return error_response(422, e)
        return HandlerResponse(200, {"success": True, "data": analysis})

    def delete(self, image_id: str) -> HandlerResponse:
        """Remove every variant file of an image, then its record."""
        try:
            result = self._deletion_service.delete_image(image_id)
        except ImageNotFoundError as e:
            return error_response(404, e)

        body: Dict[str, Any] = {
            "success": result.record_deleted,
            "image_id": result.image_id,
            "deleted_count": result.deleted_count,
            "errors": [{"path": path, "reason": reason} for path, reason in result.errors],
        }
        if not result.record_deleted:
            body["message"] = "Some files could not be deleted; the image record was kept"
            return HandlerResponse(500, body)
        body["message"] = "Image deleted successfully"
        return HandlerResponse(200, body)

    @staticmethod
    def levels() -> HandlerResponse:
        """Describe compression levels and device aspect ratios."""
        return HandlerResponse(
            200,
            {
                "success": True,
                "data": {
                    "compression_levels": compression_levels_info(),
                    "aspect_ratios": aspect_ratio_info(),
                },
            },
        )
