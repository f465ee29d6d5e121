import asyncio
import io
import struct
from pathlib import Path
from typing import Optional

from PIL import Image, ImageOps

from upload_server import config
from upload_server.app.models.artifact import Artifact
from upload_server.app.services.errors import StorageFailure, ThumbnailFailure
from upload_server.app.services.failure_monitor import FailureMonitor
from upload_server.app.services.storage_manager import StorageManager
from upload_server.logger_config import setup_logger

logger = setup_logger()

RASTER_CONTENT_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
})


def render_thumbnail(source: Path, max_dimension: int) -> bytes:
    """Decode an image file and return a PNG no larger than max_dimension on either edge."""
    try:
        with Image.open(source) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA")
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
    except (OSError, ValueError, SyntaxError, EOFError, struct.error, Image.DecompressionBombError) as e:
        raise ThumbnailFailure(f"Could not render thumbnail of {source.name}: {e}") from e
    return buffer.getvalue()


class ThumbnailGenerator:
    """Best-effort thumbnails for uploaded raster images.

    Nothing raised while decoding, encoding or storing leaves this class: a
    missing thumbnail is always an acceptable outcome for the upload.
    """

    def __init__(self, storage: StorageManager, max_dimension: int = config.THUMBNAIL_SIZE,
                 timeout: float = config.THUMBNAIL_TIMEOUT, monitor: Optional[FailureMonitor] = None):
        self.storage = storage
        self.max_dimension = max_dimension
        self.timeout = timeout
        self.monitor = monitor or FailureMonitor("thumbnail generation", failure_threshold=10)

    @staticmethod
    def is_thumbnailable(content_type: str) -> bool:
        return content_type.split(";")[0].strip().lower() in RASTER_CONTENT_TYPES

    async def generate(self, artifact: Artifact) -> bool:
        """Create and store a thumbnail for ``artifact``. Returns True if one was stored."""
        if not self.is_thumbnailable(artifact.content_type):
            return False

        blob_path, _, _ = self.storage.get_paths(artifact.id)
        try:
            data = await asyncio.wait_for(
                asyncio.to_thread(render_thumbnail, blob_path, self.max_dimension),
                timeout=self.timeout,
            )
            stored = await self.storage.publish_thumbnail(artifact.id, data)
        except ThumbnailFailure as e:
            logger.warning(f"Skipping thumbnail for {artifact.id}: {e}")
            self.monitor.record_failure()
            return False
        except asyncio.TimeoutError:
            logger.warning(f"Thumbnail for {artifact.id} timed out after {self.timeout}s")
            self.monitor.record_failure()
            return False
        except StorageFailure as e:
            logger.warning(f"Could not store thumbnail for {artifact.id}: {e}")
            self.monitor.record_failure()
            return False

        self.monitor.record_success()
        if stored:
            logger.debug(f"Stored thumbnail for {artifact.id}")
        return stored
