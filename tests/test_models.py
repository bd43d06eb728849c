"""Tests for models.py data models."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from product_images.core.exceptions import ConfigurationError
from product_images.core.models import (
    MIB,
    BatchStatus,
    CompressionLevel,
    DeviceType,
    FileError,
    ImageType,
    PipelineConfig,
    ProbedImage,
    UploadedImage,
    UploadFile,
    UploadOutcome,
    UploadRequest,
    VariantName,
    VariantResult,
    compression_ratio,
)


def make_variant(name=VariantName.ORIGINAL, original=1000, compressed=400):
    return VariantResult(
        variant_name=name,
        storage_path=f"images/product_1_image_1_{name.value}.jpg",
        width=800,
        height=1000,
        original_byte_size=original,
        compressed_byte_size=compressed,
        quality_used=85,
    )


def make_uploaded(variants=None, **overrides):
    data = dict(
        file_index=0,
        filename="a.jpg",
        product_id=1,
        sequence=1,
        device_type=DeviceType.MOBILE,
        image_type=ImageType.GALLERY,
        compression_level=CompressionLevel.MODERATE,
        width=800,
        height=1000,
        mime_format="image/jpeg",
        source_byte_size=2000,
        variants=variants if variants is not None else [make_variant()],
    )
    data.update(overrides)
    return UploadedImage(**data)


class TestPipelineConfig:
    """Tests for PipelineConfig model."""

    def test_defaults(self):
        """Test the documented default limits."""
        config = PipelineConfig()
        assert config.storage_backend == "local"
        assert config.storage_root == "public/storage"
        assert config.max_files_per_batch == 10
        assert config.max_file_size == 30 * MIB
        assert config.max_batch_size == 300 * MIB
        assert config.min_dimension == 100
        assert config.max_dimension == 8000
        assert config.user_rate_limit == 50
        assert config.ip_rate_limit == 100
        assert config.rate_limit_window == 3600

    def test_s3_requires_bucket(self):
        """Test that the S3 backend cannot be selected without a bucket."""
        with pytest.raises(ConfigurationError, match="bucket"):
            PipelineConfig(storage_backend="s3").validate_backend()

    def test_dimension_bounds_must_be_ordered(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig(min_dimension=500, max_dimension=100).validate_backend()

    def test_worker_count_uses_explicit_value(self):
        assert PipelineConfig(max_workers=3).worker_count == 3

    def test_worker_count_falls_back_to_cpu_count(self):
        with patch("os.cpu_count", return_value=6):
            assert PipelineConfig().worker_count == 6

    def test_from_env_reads_prefixed_variables(self):
        """Test configuration from PRODUCT_IMAGES_* variables."""
        env = {
            "PRODUCT_IMAGES_STORAGE_ROOT": "/tmp/images",
            "PRODUCT_IMAGES_MAX_WORKERS": "2",
            "PRODUCT_IMAGES_DEBUG": "true",
        }
        with patch.dict(os.environ, env):
            config = PipelineConfig.from_env()
        assert config.storage_root == "/tmp/images"
        assert config.max_workers == 2
        assert config.debug is True

    def test_from_env_overrides_win(self):
        with patch.dict(os.environ, {"PRODUCT_IMAGES_STORAGE_ROOT": "/tmp/env"}):
            config = PipelineConfig.from_env(storage_root="/tmp/explicit")
        assert config.storage_root == "/tmp/explicit"

    def test_from_env_invalid_value(self):
        """Test that unparsable values surface as ConfigurationError."""
        with patch.dict(os.environ, {"PRODUCT_IMAGES_MAX_WORKERS": "many"}):
            with pytest.raises(ConfigurationError, match="Invalid pipeline configuration"):
                PipelineConfig.from_env()


class TestUploadRequest:
    """Tests for UploadRequest and UploadFile models."""

    def test_total_size(self):
        request = UploadRequest(
            product_id=5,
            device_type="desktop",
            files=[
                UploadFile(filename="a.jpg", content=b"x" * 10),
                UploadFile(filename="b.jpg", content=b"y" * 5),
            ],
        )
        assert request.total_size == 15
        assert request.image_type == ImageType.GALLERY
        assert request.compression_level == CompressionLevel.LOSSLESS

    def test_invalid_device_type(self):
        with pytest.raises(ValidationError):
            UploadRequest(product_id=5, device_type="tablet")

    def test_upload_file_repr_hides_content(self):
        upload = UploadFile(filename="a.jpg", content=b"secret-bytes")
        assert "secret-bytes" not in repr(upload)


class TestResultModels:
    """Tests for variant, image and outcome models."""

    def test_probed_image_properties(self):
        probed = ProbedImage(
            width=1600, height=2000, format="PNG", mime_format="image/png", byte_size=10
        )
        assert probed.aspect_ratio == 0.8
        assert probed.extension == "png"

    def test_variant_savings(self):
        variant = make_variant(original=1000, compressed=400)
        assert variant.savings_bytes == 600
        assert variant.compression_ratio == 60.0

    def test_uploaded_image_summary_fields(self):
        image = make_uploaded(
            [
                make_variant(VariantName.ORIGINAL, compressed=500),
                make_variant(VariantName.MOBILE_SQUARE, compressed=300),
            ]
        )
        assert image.aspect_ratio == 0.8
        assert image.stored_byte_size == 800
        # 2000 uploaded bytes vs 500 stored for the original rendition
        assert image.compression_ratio == 75.0
        assert image.storage_paths == [
            "images/product_1_image_1_original.jpg",
            "images/product_1_image_1_mobile_square.jpg",
        ]

    def test_uploaded_image_dump_includes_computed_fields(self):
        data = make_uploaded().model_dump(mode="json")
        assert data["compression_ratio"] == 80.0
        assert data["variants"][0]["savings_bytes"] == 600
        assert data["device_type"] == "mobile"

    @pytest.mark.parametrize(
        "uploaded, errors, expected",
        [
            (1, 0, BatchStatus.SUCCEEDED),
            (1, 1, BatchStatus.PARTIAL),
            (0, 2, BatchStatus.REJECTED),
        ],
    )
    def test_outcome_status(self, uploaded, errors, expected):
        outcome = UploadOutcome(
            uploaded=[make_uploaded(file_index=i) for i in range(uploaded)],
            errors=[
                FileError(
                    file_index=i,
                    filename="bad.jpg",
                    stage="probed",
                    error_type="invalid_image",
                    reason="File is not a valid image",
                )
                for i in range(errors)
            ],
        )
        assert outcome.status == expected


class TestCompressionRatio:
    """Tests for the compression_ratio helper."""

    def test_rounds_to_two_decimals(self):
        assert compression_ratio(3, 1) == 66.67

    def test_zero_original(self):
        assert compression_ratio(0, 0) == 0.0

    def test_growth_is_negative(self):
        assert compression_ratio(100, 150) == -50.0
