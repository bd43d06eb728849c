"""Lookup tables shared by the upload and preview paths.

Compression tiers, variant targets and device aspect ratios live here so
that every service reads the same constants.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .exceptions import InvalidInputError
from .models import CompressionLevel, DeviceType, MIB, VariantName


@dataclass(frozen=True)
class CompressionTier:
    """Encoder settings for one compression level."""

    level: CompressionLevel
    quality: int
    png_compress_level: int
    max_long_edge: Optional[int]
    lossless: bool = False


COMPRESSION_TIERS: Dict[CompressionLevel, CompressionTier] = {
    CompressionLevel.LOSSLESS: CompressionTier(
        CompressionLevel.LOSSLESS, quality=100, png_compress_level=1,
        max_long_edge=None, lossless=True,
    ),
    CompressionLevel.MINIMAL: CompressionTier(
        CompressionLevel.MINIMAL, quality=95, png_compress_level=3, max_long_edge=4096,
    ),
    CompressionLevel.MODERATE: CompressionTier(
        CompressionLevel.MODERATE, quality=85, png_compress_level=6, max_long_edge=3072,
    ),
    CompressionLevel.AGGRESSIVE: CompressionTier(
        CompressionLevel.AGGRESSIVE, quality=75, png_compress_level=9, max_long_edge=2048,
    ),
}


def get_tier(level: Union[CompressionLevel, str]) -> CompressionTier:
    """Return the tier for a level name, raising InvalidInputError if unknown."""
    try:
        return COMPRESSION_TIERS[CompressionLevel(level)]
    except ValueError as exc:
        raise InvalidInputError(
            "Invalid compression level. Use: lossless, minimal, moderate, or aggressive"
        ) from exc


@dataclass(frozen=True)
class VariantSpec:
    """Target geometry of a derived variant; None means keep the source geometry."""

    name: VariantName
    envelope_width: Optional[int] = None
    envelope_height: Optional[int] = None

    @property
    def ratio(self) -> Optional[float]:
        if not self.envelope_width or not self.envelope_height:
            return None
        return self.envelope_width / self.envelope_height


VARIANT_SPECS: Dict[VariantName, VariantSpec] = {
    VariantName.ORIGINAL: VariantSpec(VariantName.ORIGINAL),
    VariantName.MOBILE_PORTRAIT: VariantSpec(VariantName.MOBILE_PORTRAIT, 864, 1080),
    VariantName.MOBILE_SQUARE: VariantSpec(VariantName.MOBILE_SQUARE, 1080, 1080),
    VariantName.DESKTOP_LANDSCAPE: VariantSpec(VariantName.DESKTOP_LANDSCAPE, 1920, 1080),
}

ASPECT_RATIO_TARGETS: Dict[DeviceType, float] = {
    DeviceType.MOBILE: 0.8,
    DeviceType.DESKTOP: 1.78,
}

ASPECT_RATIO_TOLERANCE = 0.15


def aspect_ratio_info() -> Dict[str, Dict[str, Any]]:
    """Describe the expected ratio for each device type."""
    return {
        DeviceType.MOBILE.value: {
            "ratio": ASPECT_RATIO_TARGETS[DeviceType.MOBILE],
            "description": "4:5 (Portrait)",
            "examples": ["400x500", "800x1000", "1200x1500"],
            "recommended_min": "400x500",
        },
        DeviceType.DESKTOP.value: {
            "ratio": ASPECT_RATIO_TARGETS[DeviceType.DESKTOP],
            "description": "16:9 (Landscape)",
            "examples": ["1920x1080", "1600x900", "1280x720"],
            "recommended_min": "1280x720",
        },
    }


def compression_levels_info() -> Dict[str, Dict[str, Any]]:
    """Describe each compression level for the admin UI."""
    descriptions = {
        CompressionLevel.LOSSLESS: (
            "Lossless",
            "Remove metadata only, no quality loss",
            "High-quality images, professional photos",
            "5-15%",
        ),
        CompressionLevel.MINIMAL: (
            "Minimal",
            "Light compression with minimal quality loss",
            "Product photos, detailed images",
            "15-30%",
        ),
        CompressionLevel.MODERATE: (
            "Moderate",
            "Balanced compression for web use",
            "General web images, galleries",
            "30-50%",
        ),
        CompressionLevel.AGGRESSIVE: (
            "Aggressive",
            "Maximum compression for smaller files",
            "Large files, thumbnails",
            "50-70%",
        ),
    }
    info = {}
    for level, (label, description, recommended_for, savings) in descriptions.items():
        tier = COMPRESSION_TIERS[level]
        info[level.value] = {
            "label": label,
            "description": description,
            "recommended_for": recommended_for,
            "typical_savings": savings,
            "quality": tier.quality,
            "max_long_edge": tier.max_long_edge,
        }
    return info


def recommend_compression_level(byte_size: int, mime_type: str) -> Dict[str, Any]:
    """Suggest a compression level from the upload size and type."""
    if byte_size < 1 * MIB:
        level = CompressionLevel.LOSSLESS
        reason = "File is already small, lossless compression recommended"
    elif byte_size < 5 * MIB:
        level = CompressionLevel.MINIMAL
        reason = "Moderate file size, minimal compression recommended"
    elif byte_size < 15 * MIB:
        level = CompressionLevel.MODERATE
        reason = "Large file size, moderate compression recommended"
    else:
        level = CompressionLevel.AGGRESSIVE
        reason = "Very large file size, aggressive compression recommended"

    if mime_type == "image/png":
        type_note = "PNG files benefit more from lossless compression"
    elif mime_type == "image/jpeg":
        type_note = "JPEG files can handle moderate compression well"
    else:
        type_note = "Standard compression applies"

    return {
        "recommended_level": level.value,
        "reason": reason,
        "type_note": type_note,
        "file_size": byte_size,
        "mime_type": mime_type,
    }
