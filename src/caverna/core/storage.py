"""Asset handoff: durable storage for generated images.

The orchestrator hands raw artifact bytes to an :class:`AssetStorage` and
gets back the public URL to record on the job.  Storage backends never touch
job records; they only persist and remove files.

:class:`LocalAssetStorage` writes into the gallery directory, which the API
serves as static files under ``public_base_url``::

    data/gallery/<job_id>.png  ->  /static/gallery/<job_id>.png
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .errors import AssetStorageError

logger = logging.getLogger(__name__)

# PIL format name -> file extension
_EXTENSIONS: dict[str, str] = {
    "PNG": "png",
    "JPEG": "jpg",
    "WEBP": "webp",
    "GIF": "gif",
}


class AssetStorage(ABC):
    """Outbound contract to durable object storage."""

    @abstractmethod
    def store(self, artifact_bytes: bytes, job_id: str) -> str:
        """Persist *artifact_bytes* for *job_id* and return its public URL.

        Raises:
            AssetStorageError: If the artifact cannot be stored.
        """

    @abstractmethod
    def delete(self, public_url: str) -> bool:
        """Remove a stored artifact.  Returns ``False`` if it was not found."""


def sniff_image_format(artifact_bytes: bytes) -> str:
    """Return the file extension for image bytes.

    Raises:
        AssetStorageError: If the bytes are not a supported image.
    """
    if not artifact_bytes:
        raise AssetStorageError("artifact is empty")
    try:
        with Image.open(BytesIO(artifact_bytes)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError) as e:
        raise AssetStorageError(f"artifact is not a readable image: {e}") from e

    extension = _EXTENSIONS.get(image_format or "")
    if extension is None:
        raise AssetStorageError(f"unsupported image format: {image_format}")
    return extension


class LocalAssetStorage(AssetStorage):
    """Store artifacts as files in a local directory.

    Args:
        base_dir: Directory to write into (created if missing).
        public_base_url: URL prefix the directory is served under.
    """

    def __init__(self, base_dir: Path | str, public_base_url: str = "/static/gallery") -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def store(self, artifact_bytes: bytes, job_id: str) -> str:
        extension = sniff_image_format(artifact_bytes)
        filename = f"{job_id}.{extension}"
        target = self._resolve(filename)

        try:
            tmp_path = target.with_suffix(target.suffix + ".tmp")
            tmp_path.write_bytes(artifact_bytes)
            tmp_path.replace(target)
        except OSError as e:
            logger.exception("Failed to store artifact for job %s", job_id)
            raise AssetStorageError(f"could not write {filename}: {e}") from e

        public_url = f"{self.public_base_url}/{filename}"
        logger.info("Stored artifact for job %s at %s", job_id, public_url)
        return public_url

    def delete(self, public_url: str) -> bool:
        prefix = f"{self.public_base_url}/"
        if not public_url.startswith(prefix):
            logger.warning("Refusing to delete asset outside %s: %s", self.public_base_url, public_url)
            return False

        try:
            target = self._resolve(public_url[len(prefix):])
        except AssetStorageError:
            logger.warning("Path traversal attempt detected: %s", public_url)
            return False

        if not target.is_file():
            logger.debug("Asset already gone: %s", public_url)
            return False

        try:
            target.unlink()
        except OSError as e:
            logger.exception("Failed to delete asset %s", public_url)
            raise AssetStorageError(f"could not delete {public_url}: {e}") from e

        logger.info("Deleted asset %s", public_url)
        return True

    def _resolve(self, filename: str) -> Path:
        """Resolve *filename* inside ``base_dir``, rejecting anything outside it."""
        base_resolved = self.base_dir.resolve()
        try:
            full_path = (base_resolved / filename).resolve()
        except (ValueError, OSError) as e:
            raise AssetStorageError(f"invalid asset path: {e}") from e
        if full_path.parent != base_resolved:
            raise AssetStorageError(f"asset path outside storage directory: {filename}")
        return full_path
