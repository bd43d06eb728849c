"""Main module for the product images CLI."""

import argparse
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .core import ConfigurationError, PipelineConfig, UploadFile, get_logger
from .core.factories import PipelineFactory
from .core.handlers import HandlerResponse
from .core.logging_config import set_debug_logging
from .core.models import CompressionLevel, DeviceType, ImageType


def read_upload(path: str) -> UploadFile:
    """Load a file from disk as an upload."""
    file_path = Path(path)
    content_type, _ = mimetypes.guess_type(file_path.name)
    return UploadFile(
        filename=file_path.name,
        content=file_path.read_bytes(),
        content_type=content_type,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="product-images",
        description="Product images - validate, derive, compress and store product photos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Upload two portrait photos for product 42
  product-images upload --product-id 42 --device-type mobile a.jpg b.jpg

  # Preview savings at the moderate level
  product-images preview --level moderate photo.png

  # Show version
  product-images version
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--storage-root", default=None, help="Local storage root (default: public/storage)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    upload_parser = subparsers.add_parser("upload", help="Upload images for a product")
    upload_parser.add_argument("files", nargs="+", help="Image files to upload")
    upload_parser.add_argument("--product-id", type=int, required=True)
    upload_parser.add_argument(
        "--device-type", required=True, choices=[d.value for d in DeviceType]
    )
    upload_parser.add_argument(
        "--image-type", default=ImageType.GALLERY.value, choices=[t.value for t in ImageType]
    )
    upload_parser.add_argument(
        "--compression-level",
        default=CompressionLevel.LOSSLESS.value,
        choices=[c.value for c in CompressionLevel],
    )
    upload_parser.add_argument("--user-id", default=None, help="User id for rate limiting")
    upload_parser.add_argument("--ip", default="127.0.0.1", help="Client IP for rate limiting")

    preview_parser = subparsers.add_parser("preview", help="Preview compression savings")
    preview_parser.add_argument("file", help="Image file")
    preview_parser.add_argument(
        "--level",
        default=CompressionLevel.LOSSLESS.value,
        choices=[c.value for c in CompressionLevel],
    )
    preview_parser.add_argument(
        "--target-size", type=int, default=None,
        help="Try levels in order until the result fits this many bytes",
    )

    analyze_parser = subparsers.add_parser("analyze", help="Check an image before upload")
    analyze_parser.add_argument("file", help="Image file")
    analyze_parser.add_argument(
        "--device-type", required=True, choices=[d.value for d in DeviceType]
    )

    delete_parser = subparsers.add_parser("delete", help="Delete stored variant files")
    delete_parser.add_argument("paths", nargs="+", help="Storage paths relative to the root")

    subparsers.add_parser("levels", help="Describe compression levels and aspect ratios")
    subparsers.add_parser("version", help="Show version information")
    return parser


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


def _emit(response: HandlerResponse) -> int:
    _print_json(response.body)
    return 0 if response.status_code < 300 else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the product-images command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "version":
        print("Product Images CLI")
        print(f"Version {__version__}")
        return 0

    logger = get_logger()
    if args.debug:
        set_debug_logging(logger)

    overrides: Dict[str, Any] = {"debug": args.debug}
    if args.storage_root:
        overrides["storage_root"] = args.storage_root
    try:
        config = PipelineConfig.from_env(**overrides)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    factory = PipelineFactory(config)
    handler = factory.create_handler()

    if args.command == "levels":
        return _emit(handler.levels())

    if args.command == "upload":
        payload = {
            "product_id": args.product_id,
            "device_type": args.device_type,
            "image_type": args.image_type,
            "compression_level": args.compression_level,
            "images": [read_upload(path) for path in args.files],
        }
        return _emit(handler.upload(payload, user_id=args.user_id, ip_address=args.ip))

    if args.command == "preview":
        return _emit(
            handler.preview(read_upload(args.file), args.level, target_size=args.target_size)
        )

    if args.command == "analyze":
        return _emit(handler.analyze(read_upload(args.file), args.device_type))

    if args.command == "delete":
        result = factory.cleanup.delete_variant_set(args.paths)
        _print_json(
            {
                "success": result.succeeded,
                "deleted_count": result.deleted_count,
                "errors": [{"path": p, "reason": r} for p, r in result.errors],
            }
        )
        return 0 if result.succeeded else 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
