"""Testing utilities and fakes for the product images pipeline."""

from .fakes import (
    FakeLogger,
    FakeS3Client,
    S3Object,
    create_test_image,
)

__all__ = [
    "FakeS3Client",
    "FakeLogger",
    "S3Object",
    "create_test_image",
]
