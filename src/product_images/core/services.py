"""Pure image services: probing, ratio checks, variant derivation and compression."""

import io
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from .error_handling import with_error_handling
from .exceptions import AspectRatioMismatchError, InvalidImageError, InvalidInputError
from .image_utils import (
    ANIMATED_FORMATS,
    EXTENSION_FORMATS,
    MIME_FORMATS,
    SUPPORTED_FORMATS,
    center_crop_box,
    declared_extension,
    fit_within,
    format_file_size,
    normalize_mode,
    open_image,
    oriented_size,
    raster_size,
)
from .models import (
    MIB,
    CompressionLevel,
    CompressionPreview,
    DeviceType,
    ProbedImage,
    UploadFile,
    VariantName,
    compression_ratio,
)
from .tiers import (
    ASPECT_RATIO_TARGETS,
    ASPECT_RATIO_TOLERANCE,
    VARIANT_SPECS,
    CompressionTier,
    VariantSpec,
    get_tier,
    recommend_compression_level,
)

# Errors Pillow raises for truncated or malformed pixel data
DECODE_ERRORS = (
    OSError, SyntaxError, ValueError, EOFError, struct.error, Image.DecompressionBombError,
)


class ImageProber:
    """Sniffs format and dimensions from raw bytes without decoding pixels."""

    def __init__(self, min_dimension: int = 100, max_dimension: int = 8000):
        self._min_dimension = min_dimension
        self._max_dimension = max_dimension

    def probe(
        self,
        image_bytes: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> ProbedImage:
        """
        Identify an uploaded image.

        Args:
            image_bytes: Raw upload
            filename: Client file name; its extension must match the content
            content_type: Declared MIME type; must match the content when given

        Returns:
            ProbedImage with sniffed format and pixel dimensions

        Raises:
            InvalidImageError: unreadable, unsupported, mislabelled or out-of-bounds image
        """
        if not image_bytes:
            raise InvalidImageError("File is empty")

        try:
            with open_image(image_bytes) as img:
                image_format = img.format
                width, height = oriented_size(img)
                img.verify()
        except UnidentifiedImageError as e:
            raise InvalidImageError("File is not a valid image") from e
        except DECODE_ERRORS as e:
            raise InvalidImageError(f"Corrupt image data: {e}") from e

        if image_format not in SUPPORTED_FORMATS:
            raise InvalidImageError(
                f"Unsupported image format {image_format}. Supported: JPEG, PNG, WebP, GIF"
            )

        self._check_declared_type(image_format, filename, content_type)

        if not (
            self._min_dimension <= width <= self._max_dimension
            and self._min_dimension <= height <= self._max_dimension
        ):
            raise InvalidImageError(
                f"Images must be between {self._min_dimension}x{self._min_dimension} and "
                f"{self._max_dimension}x{self._max_dimension} pixels. Current size: {width}x{height}"
            )

        return ProbedImage(
            width=width,
            height=height,
            format=image_format,
            mime_format=SUPPORTED_FORMATS[image_format],
            byte_size=len(image_bytes),
        )

    @staticmethod
    def _check_declared_type(
        image_format: str, filename: Optional[str], content_type: Optional[str]
    ) -> None:
        extension = declared_extension(filename) if filename else None
        if extension is not None:
            declared = EXTENSION_FORMATS.get(extension)
            if declared is None:
                raise InvalidImageError(
                    f"Unsupported file extension '.{extension}'. Use jpeg, jpg, png, webp or gif"
                )
            if declared != image_format:
                raise InvalidImageError(
                    f"File extension '.{extension}' does not match {image_format} content"
                )

        if content_type:
            mime = content_type.split(";", 1)[0].strip().lower()
            if mime == "application/octet-stream":
                return
            declared = MIME_FORMATS.get(mime)
            if declared is None:
                raise InvalidImageError(f"Unsupported content type '{mime}'")
            if declared != image_format:
                raise InvalidImageError(
                    f"Content type '{mime}' does not match {image_format} content"
                )


class AspectRatioValidator:
    """Checks an image ratio against the target of its device type."""

    _MESSAGES = {
        DeviceType.MOBILE: (
            "Mobile images should have a 4:5 aspect ratio (portrait). Current ratio: {actual}. "
            "Please upload an image with dimensions like 400x500, 800x1000, etc."
        ),
        DeviceType.DESKTOP: (
            "Desktop images should have a 16:9 aspect ratio (landscape). Current ratio: {actual}. "
            "Please upload an image with dimensions like 1920x1080, 1600x900, etc."
        ),
    }

    def __init__(
        self,
        targets: Optional[Dict[DeviceType, float]] = None,
        tolerance: float = ASPECT_RATIO_TOLERANCE,
    ):
        self._targets = targets or ASPECT_RATIO_TARGETS
        self._tolerance = tolerance

    def validate(self, probed: ProbedImage, device_type: Union[DeviceType, str]) -> None:
        """Raise AspectRatioMismatchError when the ratio is outside target ± tolerance."""
        try:
            device = DeviceType(device_type)
        except ValueError as e:
            raise InvalidInputError("Device type must be either mobile or desktop") from e

        target = self._targets[device]
        ratio = probed.width / probed.height
        if abs(ratio - target) > target * self._tolerance:
            actual = round(ratio, 2)
            raise AspectRatioMismatchError(
                device_type=device.value,
                expected=target,
                actual=actual,
                message=self._MESSAGES[device].format(actual=actual),
            )

    def check(self, probed: ProbedImage, device_type: Union[DeviceType, str]) -> Dict[str, Any]:
        """Non-raising variant used by upload analysis."""
        try:
            self.validate(probed, device_type)
        except AspectRatioMismatchError as e:
            return {"aspect_ratio_valid": False, "aspect_ratio_message": str(e)}
        return {
            "aspect_ratio_valid": True,
            "aspect_ratio_message": f"Aspect ratio is valid for {DeviceType(device_type).value}",
        }


class VariantDeriver:
    """Produces the fixed set of responsive renditions from one source image."""

    def __init__(self, specs: Optional[Dict[VariantName, VariantSpec]] = None):
        self._specs = specs or VARIANT_SPECS

    @with_error_handling
    def decode(self, image_bytes: bytes) -> Image.Image:
        """Fully decode image bytes, turned upright per EXIF orientation, into RGB, RGBA or L."""
        try:
            img = open_image(image_bytes)
            img.load()
            img = ImageOps.exif_transpose(img)
        except UnidentifiedImageError:
            raise
        except DECODE_ERRORS as e:
            raise InvalidImageError(f"Image could not be decoded: {e}") from e
        return normalize_mode(img)

    @with_error_handling
    def decode_animation(
        self, image_bytes: bytes, tier: Optional[CompressionTier] = None
    ) -> Optional["AnimatedImage"]:
        """
        Decode every frame of an animated GIF or WebP, sized like the original variant.

        Returns None for still images.
        """
        spec = VARIANT_SPECS[VariantName.ORIGINAL]
        try:
            img = open_image(image_bytes)
            if img.format not in ANIMATED_FORMATS or not getattr(img, "is_animated", False):
                return None
            # Read before seeking; later frames may not carry the loop count
            loop = img.info.get("loop")
            frames: List[Image.Image] = []
            durations: List[int] = []
            for frame in ImageSequence.Iterator(img):
                durations.append(int(frame.info.get("duration", 100)))
                frames.append(self.derive_variant(frame.convert("RGBA"), spec, tier))
        except UnidentifiedImageError:
            raise
        except DECODE_ERRORS as e:
            raise InvalidImageError(f"Animation could not be decoded: {e}") from e

        return AnimatedImage(
            frames=frames,
            durations=durations,
            loop=int(loop) if loop is not None else None,
        )

    def derive(
        self,
        probed: ProbedImage,
        source_bytes: bytes,
        tier: Optional[CompressionTier] = None,
    ) -> Dict[VariantName, Union[Image.Image, "AnimatedImage"]]:
        """Return one raster per variant, in VariantName order."""
        image = self.decode(source_bytes)
        if image.size != (probed.width, probed.height):
            raise InvalidImageError(
                f"Decoded size {image.width}x{image.height} differs from header "
                f"{probed.width}x{probed.height}"
            )
        rasters: Dict[VariantName, Union[Image.Image, AnimatedImage]] = {}
        for name, spec in self._specs.items():
            if name == VariantName.ORIGINAL:
                rasters[name] = self.derive_original(image, probed, source_bytes, tier, spec)
            else:
                rasters[name] = self.derive_variant(image, spec, tier)
        return rasters

    def derive_original(
        self,
        image: Image.Image,
        probed: ProbedImage,
        source_bytes: bytes,
        tier: Optional[CompressionTier] = None,
        spec: Optional[VariantSpec] = None,
    ) -> Union[Image.Image, "AnimatedImage"]:
        """The stored-original rendition; animated sources keep all their frames."""
        if probed.format in ANIMATED_FORMATS:
            animation = self.decode_animation(source_bytes, tier)
            if animation is not None:
                return animation
        return self.derive_variant(image, spec or VARIANT_SPECS[VariantName.ORIGINAL], tier)

    @staticmethod
    def derive_variant(
        image: Image.Image, spec: VariantSpec, tier: Optional[CompressionTier] = None
    ) -> Image.Image:
        """
        Center-crop image to the variant ratio, then scale into its envelope.

        Images smaller than the envelope keep their resolution; nothing is
        upsampled. The tier's long-edge ceiling applies to every variant.
        """
        max_long_edge = tier.max_long_edge if tier else None
        ratio = spec.ratio

        if ratio is None:
            target = fit_within(image.width, image.height, max_long_edge=max_long_edge)
            if target == image.size:
                return image
            return image.resize(target, Image.Resampling.LANCZOS)

        cropped = image.crop(center_crop_box(image.width, image.height, ratio))
        target = fit_within(
            cropped.width,
            cropped.height,
            max_width=spec.envelope_width,
            max_height=spec.envelope_height,
            max_long_edge=max_long_edge,
        )
        if target == cropped.size:
            return cropped
        return cropped.resize(target, Image.Resampling.LANCZOS)


@dataclass(frozen=True)
class AnimatedImage:
    """Frames of an animated source with their display durations in ms."""

    frames: List[Image.Image]
    durations: List[int]
    loop: Optional[int] = None

    @property
    def width(self) -> int:
        return self.frames[0].width

    @property
    def height(self) -> int:
        return self.frames[0].height

    @property
    def size(self) -> Tuple[int, int]:
        return self.frames[0].size


@dataclass(frozen=True)
class CompressedImage:
    """Encoded bytes of one variant plus the sizes needed for savings reports."""

    data: bytes
    format: str
    width: int
    height: int
    quality_used: int
    original_byte_size: int

    @property
    def compressed_byte_size(self) -> int:
        return len(self.data)


# Palette sizes tried, in order, when deflate alone does not shrink a PNG
PNG_PALETTE_STEPS = (256, 16)

# GIF has no quality knob; its encoder is reported as full quality
GIF_QUALITY = 100


def _to_palette(image: Image.Image, colors: int) -> Image.Image:
    if image.mode == "L":
        image = image.convert("RGB")
    return image.quantize(colors=colors, method=Image.Quantize.FASTOCTREE)


def _save(image: Image.Image, output_format: str, **options: Any) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=output_format, **options)
    return buffer.getvalue()


class Compressor:
    """Re-encodes rasters with the settings of a compression tier."""

    def compress(
        self,
        image: Union[Image.Image, AnimatedImage],
        tier: CompressionTier,
        output_format: str,
    ) -> CompressedImage:
        """
        Encode image in output_format at the tier's quality.

        Metadata (EXIF, text chunks) is never written. Encoding is
        deterministic for a given raster and tier. quality_used is the
        encoder setting actually applied: the JPEG/WebP quality, the PNG
        zlib level, or 100 for GIF.
        """
        if isinstance(image, AnimatedImage):
            return self._compress_animation(image, tier, output_format)

        original_byte_size = raster_size(image)

        if output_format == "JPEG":
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            data = _save(
                image,
                "JPEG",
                quality=tier.quality,
                subsampling=0 if tier.quality >= 95 else 2,
                optimize=True,
            )
            quality_used = tier.quality
        elif output_format == "PNG":
            data = self._encode_png(image, tier, original_byte_size)
            quality_used = tier.png_compress_level
        elif output_format == "WEBP":
            data = _save(
                image, "WEBP", quality=tier.quality, lossless=tier.lossless, method=4
            )
            quality_used = tier.quality
        elif output_format == "GIF":
            data = _save(image, "GIF")
            quality_used = GIF_QUALITY
        else:
            raise InvalidImageError(f"Cannot encode variant as {output_format}")

        return CompressedImage(
            data=data,
            format=output_format,
            width=image.width,
            height=image.height,
            quality_used=quality_used,
            original_byte_size=original_byte_size,
        )

    @staticmethod
    def _encode_png(image: Image.Image, tier: CompressionTier, raster_bytes: int) -> bytes:
        """
        Deflate at the tier's zlib level. Lossy tiers fall back to an
        ever smaller palette until the output is below the raster size.
        """
        data = _save(image, "PNG", compress_level=tier.png_compress_level)
        if tier.lossless:
            return data

        for colors in PNG_PALETTE_STEPS:
            if len(data) < raster_bytes:
                break
            options: Dict[str, Any] = {"compress_level": tier.png_compress_level}
            if colors <= 16:
                options["bits"] = 4
            candidate = _save(_to_palette(image, colors), "PNG", **options)
            if len(candidate) < len(data):
                data = candidate
        return data

    @staticmethod
    def _compress_animation(
        animation: AnimatedImage, tier: CompressionTier, output_format: str
    ) -> CompressedImage:
        """Encode every frame, keeping per-frame durations and the loop count."""
        if output_format not in ANIMATED_FORMATS:
            raise InvalidImageError(f"Cannot encode an animation as {output_format}")

        first, *rest = animation.frames
        options: Dict[str, Any] = {
            "save_all": True,
            "append_images": rest,
            "duration": animation.durations,
        }
        if animation.loop is not None:
            options["loop"] = animation.loop
        if output_format == "WEBP":
            options.update(quality=tier.quality, lossless=tier.lossless, method=4)
            quality_used = tier.quality
        else:
            quality_used = GIF_QUALITY

        return CompressedImage(
            data=_save(first, output_format, **options),
            format=output_format,
            width=first.width,
            height=first.height,
            quality_used=quality_used,
            original_byte_size=sum(raster_size(frame) for frame in animation.frames),
        )


class CompressionPreviewService:
    """Compression statistics and upload analysis without touching storage."""

    def __init__(
        self,
        prober: ImageProber,
        validator: AspectRatioValidator,
        deriver: VariantDeriver,
        compressor: Compressor,
        max_file_size: int = 30 * MIB,
    ):
        self._prober = prober
        self._validator = validator
        self._deriver = deriver
        self._compressor = compressor
        self._max_file_size = max_file_size

    def preview(
        self, upload: UploadFile, level: Union[CompressionLevel, str]
    ) -> CompressionPreview:
        """Compress the stored-original rendition of upload and report the savings."""
        self._check_size(upload)
        tier = get_tier(level)
        probed = self._prober.probe(upload.content, upload.filename, upload.content_type)

        image = self._deriver.decode(upload.content)
        original = self._deriver.derive_original(image, probed, upload.content, tier)
        compressed = self._compressor.compress(original, tier, probed.format)

        return CompressionPreview(
            original_size=upload.size,
            compressed_size=compressed.compressed_byte_size,
            compression_ratio=compression_ratio(upload.size, compressed.compressed_byte_size),
            savings_bytes=upload.size - compressed.compressed_byte_size,
            width=probed.width,
            height=probed.height,
            aspect_ratio=round(probed.aspect_ratio, 2),
            mime_type=probed.mime_format,
            compression_level=tier.level,
            quality_used=compressed.quality_used,
        )

    def compress_to_target_size(
        self, upload: UploadFile, target_size: int = 5 * MIB
    ) -> CompressionPreview:
        """Try each level from lossless to aggressive until the result fits target_size."""
        preview = None
        for level in CompressionLevel:
            preview = self.preview(upload, level)
            if preview.compressed_size <= target_size:
                return preview.model_copy(
                    update={"target_size": target_size, "target_achieved": True}
                )
        return preview.model_copy(
            update={"target_size": target_size, "target_achieved": False}
        )

    def analyze(
        self, upload: UploadFile, device_type: Union[DeviceType, str]
    ) -> Dict[str, Any]:
        """Report whether upload is ready for the given device, with a level recommendation."""
        probed = self._prober.probe(upload.content, upload.filename, upload.content_type)
        compatibility = {"device_type": DeviceType(device_type).value}
        compatibility.update(self._validator.check(probed, device_type))
        size_ok = upload.size <= self._max_file_size

        return {
            "file_info": {
                "name": upload.filename,
                "size": upload.size,
                "size_formatted": format_file_size(upload.size),
                "mime_type": probed.mime_format,
                "width": probed.width,
                "height": probed.height,
                "aspect_ratio": round(probed.aspect_ratio, 2),
            },
            "device_compatibility": compatibility,
            "compression_recommendation": recommend_compression_level(
                upload.size, probed.mime_format
            ),
            "upload_ready": compatibility["aspect_ratio_valid"] and size_ok,
        }

    def _check_size(self, upload: UploadFile) -> None:
        if upload.size > self._max_file_size:
            raise InvalidInputError(
                f"File size exceeds {format_file_size(self._max_file_size)} limit. "
                f"Current size: {format_file_size(upload.size)}"
            )
