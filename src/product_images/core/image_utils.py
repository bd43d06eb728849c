"""Image geometry and format utilities for the product images pipeline."""

import io
from typing import Optional, Tuple

from PIL import Image

# Pillow format name -> canonical MIME type
SUPPORTED_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}

FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}

# Declared file extensions and MIME types accepted for each format
EXTENSION_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
}

MIME_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
}

# Formats whose animations survive re-encoding of the stored original
ANIMATED_FORMATS = ("GIF", "WEBP")

ORIENTATION_TAG = 0x0112


def declared_extension(filename: str) -> Optional[str]:
    """Return the lower-cased extension of filename, or None if it has none."""
    if "." not in filename:
        return None
    return filename.rsplit(".", 1)[-1].lower() or None


def open_image(image_bytes: bytes) -> Image.Image:
    """Open image bytes lazily; pixel data is decoded on first access."""
    return Image.open(io.BytesIO(image_bytes))


def oriented_size(img: Image.Image) -> Tuple[int, int]:
    """Width and height as displayed, after the EXIF orientation is applied."""
    width, height = img.size
    # Orientations 5-8 rotate by a quarter turn
    if img.getexif().get(ORIENTATION_TAG) in (5, 6, 7, 8):
        return height, width
    return width, height


def center_crop_box(
    width: int, height: int, target_ratio: float
) -> Tuple[int, int, int, int]:
    """
    Calculate the largest centered box of the given width/height ratio.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        target_ratio: Desired width / height

    Returns:
        (left, top, right, bottom) box suitable for Image.crop
    """
    source_ratio = width / height
    if source_ratio > target_ratio:
        # Too wide: trim the sides
        crop_width = max(1, min(width, round(height * target_ratio)))
        left = (width - crop_width) // 2
        return left, 0, left + crop_width, height
    # Too tall (or exact): trim top and bottom
    crop_height = max(1, min(height, round(width / target_ratio)))
    top = (height - crop_height) // 2
    return 0, top, width, top + crop_height


def fit_within(
    width: int,
    height: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
    max_long_edge: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Scale (width, height) down to fit every given bound, never up.

    Returns:
        New (width, height); unchanged when the size already fits.
    """
    scale = 1.0
    if max_width:
        scale = min(scale, max_width / width)
    if max_height:
        scale = min(scale, max_height / height)
    if max_long_edge:
        scale = min(scale, max_long_edge / max(width, height))

    if scale >= 1.0:
        return width, height
    return max(1, round(width * scale)), max(1, round(height * scale))


def raster_size(img: Image.Image) -> int:
    """Size in bytes of the decoded pixel buffer of img."""
    bytes_per_band = 2 if img.mode.startswith("I;16") else 4 if img.mode in ("I", "F") else 1
    return img.width * img.height * len(img.getbands()) * bytes_per_band


def normalize_mode(img: Image.Image) -> Image.Image:
    """Convert palette and exotic modes to RGB/RGBA so resampling is smooth."""
    if img.mode in ("RGB", "RGBA", "L"):
        return img
    if img.mode in ("P", "PA", "LA", "RGBa", "La") or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB")


def format_file_size(size_bytes: int) -> str:
    """
    Format a byte count the way the admin UI shows it.

    Args:
        size_bytes: Number of bytes

    Returns:
        Human readable size, e.g. "1.5 MB"
    """
    units = ["B", "KB", "MB", "GB"]
    size = float(max(size_bytes, 0))
    power = 0
    while size >= 1024 and power < len(units) - 1:
        size /= 1024
        power += 1
    return f"{round(size, 2):g} {units[power]}"
