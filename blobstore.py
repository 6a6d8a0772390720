"""Image blob storage backed by a local directory served under /static/uploads."""

import logging
import uuid
from pathlib import Path

from errors import BlobStoreError, UploadNotFound, ValidationError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
URL_PREFIX = "/static/uploads/"


class LocalBlobStore:
    def __init__(self, directory: str, base_url: str = ""):
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")

    def store(self, data: bytes, content_type: str) -> str:
        ext = EXTENSIONS.get(content_type)
        if ext is None:
            raise ValidationError(f"Unsupported image type: {content_type}")
        name = uuid.uuid4().hex + ext
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / name).write_bytes(data)
        except OSError as exc:
            logger.error("failed to store blob %s: %s", name, exc)
            raise BlobStoreError("Could not store the uploaded file") from exc
        logger.info("stored blob %s (%d bytes)", name, len(data))
        return f"{self.base_url}{URL_PREFIX}{name}"

    def delete(self, url: str) -> None:
        marker = url.find(URL_PREFIX)
        name = url[marker + len(URL_PREFIX):] if marker >= 0 else ""
        if not name or "/" in name or name.startswith("."):
            raise ValidationError(f"Not an uploaded file URL: {url}")
        path = self.directory / name
        if not path.exists():
            raise UploadNotFound(url)
        try:
            path.unlink()
        except OSError as exc:
            raise BlobStoreError("Could not delete the stored file") from exc
        logger.info("deleted blob %s", name)
