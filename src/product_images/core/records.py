"""In-memory image record store and upload statistics."""

import itertools
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .image_utils import format_file_size
from .models import DeviceType, ImageType, UploadedImage, VariantName, compression_ratio


class InMemoryImageRecordStore:
    """Reference implementation of the persistence collaborator.

    Holds one record per uploaded image, keyed by a generated id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._images: Dict[str, UploadedImage] = {}
        self._created: Dict[str, int] = {}
        self._counter = itertools.count()

    def save_image(self, image: UploadedImage) -> str:
        image_id = uuid.uuid4().hex
        with self._lock:
            self._images[image_id] = image.model_copy(update={"image_id": image_id})
            self._created[image_id] = next(self._counter)
        return image_id

    def get(self, image_id: str) -> Optional[UploadedImage]:
        return self._images.get(image_id)

    def get_variant_paths(self, image_id: str) -> Optional[List[str]]:
        image = self._images.get(image_id)
        return image.storage_paths if image is not None else None

    def delete_image(self, image_id: str) -> None:
        with self._lock:
            self._images.pop(image_id, None)
            self._created.pop(image_id, None)

    def list_images(
        self, product_id: int, device_type: Optional[DeviceType] = None
    ) -> List[UploadedImage]:
        """Images of a product in upload order, optionally for one device."""
        with self._lock:
            return self._list_locked(product_id, device_type)

    def _list_locked(
        self, product_id: int, device_type: Optional[DeviceType]
    ) -> List[UploadedImage]:
        ids = sorted(
            (
                image_id
                for image_id, image in self._images.items()
                if image.product_id == product_id
                and (device_type is None or image.device_type == device_type)
            ),
            key=self._created.__getitem__,
        )
        return [self._images[image_id] for image_id in ids]

    def promote_sole_thumbnail(
        self, product_id: int, device_type: DeviceType
    ) -> Optional[str]:
        """
        Leave exactly one thumbnail for the product on this device.

        With no thumbnail the earliest image is promoted; with several,
        the most recent one stays and the others become gallery images.
        """
        with self._lock:
            images = self._list_locked(product_id, device_type)
            if not images:
                return None

            thumbnails = [i for i in images if i.image_type == ImageType.THUMBNAIL]
            keep = thumbnails[-1] if thumbnails else images[0]

            for image in images:
                if image is keep:
                    wanted = ImageType.THUMBNAIL
                elif image.image_type == ImageType.THUMBNAIL:
                    wanted = ImageType.GALLERY
                else:
                    continue
                if wanted != image.image_type:
                    self._images[image.image_id] = image.model_copy(
                        update={"image_type": wanted}
                    )
            return keep.image_id


def summarize_uploads(images: Iterable[UploadedImage]) -> Dict[str, Any]:
    """Aggregate size and savings statistics over uploaded images."""
    images = list(images)
    total_original = sum(i.source_byte_size for i in images)
    total_stored = 0
    for image in images:
        original = image.variant(VariantName.ORIGINAL)
        if original is not None:
            total_stored += original.compressed_byte_size

    return {
        "total_images": len(images),
        "mobile_images": sum(1 for i in images if i.device_type == DeviceType.MOBILE),
        "desktop_images": sum(1 for i in images if i.device_type == DeviceType.DESKTOP),
        "total_original_size": total_original,
        "total_compressed_size": total_stored,
        "total_savings": total_original - total_stored,
        "compression_ratio": compression_ratio(total_original, total_stored),
        "formatted": {
            "total_original_size": format_file_size(total_original),
            "total_compressed_size": format_file_size(total_stored),
            "total_savings": format_file_size(total_original - total_stored),
        },
    }
