import asyncio
import hashlib
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from upload_server import config
from upload_server.app.models.artifact import Artifact
from upload_server.app.services.errors import IdentifierCollision, NotFound, StorageFailure
from upload_server.logger_config import setup_logger

logger = setup_logger()

THUMBNAIL_CONTENT_TYPE = "image/png"


@dataclass
class ArtifactHandle:
    """An opened artifact, owning its file until the content is consumed.

    The descriptor is opened before the handle is returned, so a concurrent
    delete only unlinks the name; the bytes being served stay intact.
    """
    artifact: Artifact
    file: object
    chunk_size: int = config.CHUNK_SIZE

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            while chunk := await self.file.read(self.chunk_size):
                yield chunk
        finally:
            await self.file.close()

    async def read(self) -> bytes:
        try:
            return await self.file.read()
        finally:
            await self.file.close()


@dataclass
class ThumbnailHandle(ArtifactHandle):
    size: int = 0
    content_type: str = THUMBNAIL_CONTENT_TYPE


class StorageManager:
    def __init__(self, data_dir: Path, chunk_size: int = config.CHUNK_SIZE):
        self.data_dir = data_dir
        self.files_dir = data_dir / "files"
        self.meta_dir = data_dir / "meta"
        self.thumbnails_dir = data_dir / "thumbnails"
        self.temp_dir = data_dir / "tmp"
        self.chunk_size = chunk_size

    async def initialize(self):
        """Create the storage layout and clear leftovers from interrupted uploads."""
        logger.info("Initializing storage manager...")

        for directory in (self.files_dir, self.meta_dir, self.thumbnails_dir, self.temp_dir):
            await aiofiles.os.makedirs(directory, exist_ok=True)
        logger.debug(f"Storage directories created/verified under {self.data_dir}")

        files_removed = await self.clean_temp_dir()
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

    async def clean_temp_dir(self) -> int:
        files_removed = 0
        for file in self.temp_dir.glob("*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        return files_removed

    @staticmethod
    def _shard(artifact_id: str) -> str:
        # Use first 2 chars of MD5 hash as directory name
        return hashlib.md5(artifact_id.encode()).hexdigest()[:2]

    def get_paths(self, artifact_id: str) -> Tuple[Path, Path, Path]:
        """Return the content, metadata and thumbnail paths of an identifier."""
        shard = self._shard(artifact_id)
        return (
            self.files_dir / shard / artifact_id,
            self.meta_dir / shard / f"{artifact_id}.json",
            self.thumbnails_dir / shard / artifact_id,
        )

    def _temp_path(self, suffix: str) -> Path:
        return self.temp_dir / f"{secrets.token_hex(8)}{suffix}"

    async def publish(self, artifact_id: str, temp_path: Path, metadata: Artifact) -> Artifact:
        """Atomically move an ingested upload into place under ``artifact_id``.

        The identifier is claimed by hard-linking the metadata record into
        place, which fails if it already exists. The content is linked next, so
        a reader that can open the content always finds its metadata.
        """
        blob_path, meta_path, _ = self.get_paths(artifact_id)
        temp_meta_path = self._temp_path(".json")

        try:
            await aiofiles.os.makedirs(blob_path.parent, exist_ok=True)
            await aiofiles.os.makedirs(meta_path.parent, exist_ok=True)
            async with aiofiles.open(temp_meta_path, 'w') as f:
                await f.write(metadata.model_dump_json())
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())

            try:
                await aiofiles.os.link(temp_meta_path, meta_path)
            except FileExistsError:
                raise IdentifierCollision(f"Identifier {artifact_id} is already in use")

            try:
                await aiofiles.os.link(temp_path, blob_path)
            except FileExistsError:
                await self._unlink(meta_path)
                raise IdentifierCollision(f"Content path for {artifact_id} already exists")
            except OSError:
                await self._unlink(meta_path)
                raise
        except OSError as e:
            logger.error(f"Error publishing {artifact_id}: {e}", exc_info=True)
            raise StorageFailure(f"Could not publish {artifact_id}") from e
        finally:
            await self._unlink(temp_meta_path)

        await self._unlink(temp_path)
        logger.info(f"Published {artifact_id} ({metadata.size} bytes)")
        return metadata

    async def get_metadata(self, artifact_id: str) -> Optional[Artifact]:
        _, meta_path, _ = self.get_paths(artifact_id)
        try:
            async with aiofiles.open(meta_path, 'r') as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            return Artifact.model_validate_json(content)
        except ValidationError:
            logger.error(f"Corrupt metadata record for {artifact_id}")
            raise StorageFailure(f"Corrupt metadata for {artifact_id}")

    async def fetch(self, artifact_id: str) -> Optional[ArtifactHandle]:
        blob_path, _, _ = self.get_paths(artifact_id)
        try:
            f = await aiofiles.open(blob_path, 'rb')
        except FileNotFoundError:
            return None

        try:
            metadata = await self.get_metadata(artifact_id)
        except BaseException:
            await f.close()
            raise
        if metadata is None:
            # Deleted between opening the content and reading its record
            await f.close()
            return None
        return ArtifactHandle(artifact=metadata, file=f, chunk_size=self.chunk_size)

    async def has_thumbnail(self, artifact_id: str) -> bool:
        _, _, thumb_path = self.get_paths(artifact_id)
        return await aiofiles.os.path.exists(thumb_path)

    async def fetch_thumbnail(self, artifact_id: str) -> Optional[ThumbnailHandle]:
        _, _, thumb_path = self.get_paths(artifact_id)
        try:
            f = await aiofiles.open(thumb_path, 'rb')
        except FileNotFoundError:
            return None

        try:
            metadata = await self.get_metadata(artifact_id)
        except BaseException:
            await f.close()
            raise
        if metadata is None:
            await f.close()
            return None
        size = os.fstat(f.fileno()).st_size
        return ThumbnailHandle(artifact=metadata, file=f, chunk_size=self.chunk_size, size=size)

    async def publish_thumbnail(self, artifact_id: str, data: bytes) -> bool:
        """Store thumbnail bytes, replacing any previous thumbnail atomically.

        Returns False when the parent artifact disappeared in the meantime; the
        thumbnail is removed again so it cannot outlive its artifact.
        """
        blob_path, _, thumb_path = self.get_paths(artifact_id)
        temp_path = self._temp_path(".thumb")
        try:
            await aiofiles.os.makedirs(thumb_path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(temp_path, thumb_path)
        except OSError as e:
            await self._unlink(temp_path)
            raise StorageFailure(f"Could not store thumbnail for {artifact_id}") from e

        if not await aiofiles.os.path.exists(blob_path):
            await self._unlink(thumb_path)
            logger.info(f"Artifact {artifact_id} was deleted while its thumbnail was generated")
            return False
        return True

    async def delete(self, artifact_id: str):
        """Delete an artifact, its thumbnail and its metadata record.

        Each file is removed independently; a missing thumbnail is the normal
        case for non-image uploads. NotFound is raised only when neither the
        content nor the metadata record existed.
        """
        blob_path, meta_path, thumb_path = self.get_paths(artifact_id)

        removed_blob = await self._unlink(blob_path)
        removed_thumb = await self._unlink(thumb_path)
        removed_meta = await self._unlink(meta_path)

        if not (removed_blob or removed_meta):
            raise NotFound(f"Artifact {artifact_id} not found")
        logger.info(f"Deleted {artifact_id} (thumbnail removed: {removed_thumb})")

    async def list_artifacts(self) -> List[Artifact]:
        artifacts = []
        meta_paths = await asyncio.to_thread(lambda: list(self.meta_dir.glob("*/*.json")))
        for meta_path in meta_paths:
            try:
                metadata = await self.get_metadata(meta_path.stem)
            except StorageFailure:
                continue
            if metadata is not None:
                artifacts.append(metadata)
        return artifacts

    async def recent(self, limit: int) -> List[Artifact]:
        artifacts = await self.list_artifacts()
        artifacts.sort(key=lambda a: a.created_at, reverse=True)
        return artifacts[:limit]

    async def purge_older_than(self, max_age: timedelta) -> int:
        """Delete every artifact created more than ``max_age`` ago."""
        cutoff = datetime.now(timezone.utc) - max_age
        purged = 0
        for artifact in await self.list_artifacts():
            if artifact.created_at >= cutoff:
                continue
            try:
                await self.delete(artifact.id)
                purged += 1
            except NotFound:
                # Deleted concurrently
                pass
        logger.info(f"Purged {purged} artifacts older than {max_age}")
        return purged

    async def _unlink(self, path: Path) -> bool:
        try:
            await aiofiles.os.unlink(path)
            return True
        except FileNotFoundError:
            return False
