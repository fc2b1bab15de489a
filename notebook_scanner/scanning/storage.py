from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONTENT_TYPE_SUFFIXES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


@dataclass
class StoragePaths:
    root: Path

    def page_dir(self, page_id: str) -> Path:
        return self.root / "pages" / str(page_id)

    def image_path(self, page_id: str, image_name: str) -> Path:
        return self.page_dir(page_id) / image_name


class LocalImageStorage:
    """
    Filesystem object storage for page photographs. Files are laid out per
    page and published under ``public_base_url``, which a static file server
    or CDN is expected to serve.
    """

    def __init__(self, storage_paths: StoragePaths, public_base_url: str):
        self.paths = storage_paths
        self.public_base_url = public_base_url.rstrip("/")

    def save_page_image(self, page_id: str, data: bytes, content_type: Optional[str] = None) -> str:
        if not data:
            raise ValueError("Image payload is empty")
        suffix = CONTENT_TYPE_SUFFIXES.get((content_type or "").lower())
        if suffix is None:
            raise ValueError(f"Unsupported image type: {content_type}")

        image_name = f"{uuid.uuid4().hex}{suffix}"
        target = self.paths.image_path(page_id, image_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %s bytes for page %s at %s", len(data), page_id, target)
        return self.public_url(page_id, image_name)

    def public_url(self, page_id: str, image_name: str) -> str:
        return f"{self.public_base_url}/pages/{page_id}/{image_name}"
