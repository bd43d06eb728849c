"""Product image ingestion: validation, responsive variants, compression and storage."""

__version__ = "0.1.0"
