import json
import mimetypes
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import AsyncIterable, List, Optional
from urllib.parse import urljoin

from pydantic import ValidationError

from upload_server import config
from upload_server.app.models.artifact import Artifact, RecentEntry, UploadOptions
from upload_server.app.services.errors import (
    IdentifierCollision,
    InvalidOptions,
    MalformedUpload,
    NotFound,
    StorageFailure,
    Unauthorized,
)
from upload_server.app.services.identifier import IdentifierAllocator, hash_token, is_valid_identifier
from upload_server.app.services.ingestor import IngestedUpload, SizeBoundedIngestor
from upload_server.app.services.multipart_reader import MultipartReader
from upload_server.app.services.storage_manager import ArtifactHandle, StorageManager, ThumbnailHandle
from upload_server.app.services.thumbnail import ThumbnailGenerator
from upload_server.logger_config import setup_logger

logger = setup_logger()

FILE_FIELD = "file"
OPTIONS_FIELD = "options"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
MAX_DISPLAY_NAME_LENGTH = 255

_UNSAFE_NAME_CHARS = re.compile(r'[\x00-\x1f\x7f"]')


class UploadState(str, Enum):
    RECEIVING = "receiving"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    THUMBNAIL_PENDING = "thumbnail_pending"
    COMPLETED = "completed"
    ABORTED = "aborted"


class DeleteState(str, Enum):
    REQUESTED = "requested"
    AUTHORIZING = "authorizing"
    DELETING = "deleting"
    COMPLETED = "completed"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class UploadResult:
    artifact: Artifact
    delete_token: str
    url: str
    thumbnail_url: Optional[str]
    options: UploadOptions


def sanitize_display_name(filename: Optional[str]) -> Optional[str]:
    """Strip directories, control characters and quotes from a client filename."""
    if not filename:
        return None
    name = PurePosixPath(filename.replace("\\", "/")).name
    name = _UNSAFE_NAME_CHARS.sub("", name).strip()
    if not name or name in (".", ".."):
        return None
    return name[:MAX_DISPLAY_NAME_LENGTH]


def resolve_content_type(declared: Optional[str], filename: Optional[str]) -> str:
    if declared and declared.lower() != DEFAULT_CONTENT_TYPE:
        return declared
    if filename:
        guessed_type, _ = mimetypes.guess_type(filename)
        if guessed_type:
            return guessed_type
    return declared or DEFAULT_CONTENT_TYPE


def parse_options(raw: Optional[bytes]) -> UploadOptions:
    if raw is None or not raw.strip():
        return UploadOptions()
    try:
        return UploadOptions.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise InvalidOptions(f"Invalid options: {e}") from e


class UploadService:
    """Upload, fetch and delete orchestration, independent of the web framework."""

    def __init__(self, settings: config.Config, storage: StorageManager, ingestor: SizeBoundedIngestor,
                 allocator: IdentifierAllocator, thumbnails: ThumbnailGenerator):
        self.settings = settings
        self.storage = storage
        self.ingestor = ingestor
        self.allocator = allocator
        self.thumbnails = thumbnails

    @classmethod
    def from_config(cls, settings: config.Config) -> 'UploadService':
        storage = StorageManager(settings.data_dir, chunk_size=settings.chunk_size)
        return cls(
            settings=settings,
            storage=storage,
            ingestor=SizeBoundedIngestor(storage.temp_dir, settings.max_upload_size),
            allocator=IdentifierAllocator(settings.id_length),
            thumbnails=ThumbnailGenerator(storage, settings.thumbnail_size, settings.thumbnail_timeout),
        )

    def public_url(self, artifact_id: str) -> str:
        return urljoin(self.settings.server_url, artifact_id)

    def thumbnail_url(self, artifact_id: str) -> str:
        return urljoin(self.settings.server_url, f"{artifact_id}/thumbnail")

    def max_body_size(self) -> int:
        return self.settings.max_upload_size + config.MULTIPART_OVERHEAD_ALLOWANCE

    async def handle_upload(self, body: AsyncIterable[bytes], content_type_header: Optional[str]) -> UploadResult:
        state = UploadState.RECEIVING
        ingested: Optional[IngestedUpload] = None
        try:
            reader = MultipartReader(body, content_type_header, max_body_size=self.max_body_size())
            filename = None
            declared_type = None
            raw_options = None

            async for part in reader.parts():
                if part.name == FILE_FIELD and ingested is None:
                    filename = part.filename
                    declared_type = part.content_type
                    ingested = await self.ingestor.ingest(part.chunks())
                elif part.name == OPTIONS_FIELD and raw_options is None:
                    raw_options = await part.read(config.MAX_OPTIONS_LENGTH)
                else:
                    logger.debug(f"Ignoring form field {part.name!r}")

            state = UploadState.VALIDATING
            logger.debug(f"Upload state: {state.value}")
            if ingested is None:
                raise MalformedUpload("Missing file field")
            options = parse_options(raw_options)

            state = UploadState.PERSISTING
            logger.debug(f"Upload state: {state.value}")
            delete_token = self.allocator.new_delete_token()
            artifact = await self._publish(ingested, filename, declared_type, options, delete_token)
        except BaseException:
            logger.info(f"Upload {UploadState.ABORTED.value} while {state.value}")
            if ingested is not None:
                await self.ingestor.discard(ingested)
            raise

        state = UploadState.THUMBNAIL_PENDING
        logger.debug(f"Upload state: {state.value}")
        has_thumbnail = await self.thumbnails.generate(artifact)

        state = UploadState.COMPLETED
        logger.info(f"Upload {artifact.id} {state.value} ({artifact.size} bytes, {artifact.content_type})")
        return UploadResult(
            artifact=artifact,
            delete_token=delete_token,
            url=self.public_url(artifact.id),
            thumbnail_url=self.thumbnail_url(artifact.id) if has_thumbnail else None,
            options=options,
        )

    async def _publish(self, ingested: IngestedUpload, filename: Optional[str], declared_type: Optional[str],
                       options: UploadOptions, delete_token: str) -> Artifact:
        content_type = resolve_content_type(declared_type, filename)
        original_name = sanitize_display_name(filename)

        for attempt in range(1, self.settings.max_publish_attempts + 1):
            artifact_id = self.allocator.allocate(filename)
            display_name = original_name if options.use_original_filename and original_name else artifact_id
            metadata = Artifact(
                id=artifact_id,
                content_type=content_type,
                size=ingested.size,
                sha256=ingested.sha256,
                created_at=datetime.now(timezone.utc),
                display_name=display_name,
                delete_token_hash=hash_token(delete_token),
            )
            try:
                return await self.storage.publish(artifact_id, ingested.temp_path, metadata)
            except IdentifierCollision:
                logger.warning(f"Identifier collision on {artifact_id} (attempt {attempt}), retrying")

        raise StorageFailure(f"No free identifier after {self.settings.max_publish_attempts} attempts")

    async def handle_delete(self, artifact_id: str, token: Optional[str]):
        state = DeleteState.REQUESTED
        logger.info(f"Delete of {artifact_id} {state.value}")

        state = DeleteState.AUTHORIZING
        logger.debug(f"Delete state: {state.value}")
        metadata = await self.storage.get_metadata(artifact_id) if is_valid_identifier(artifact_id) else None
        if metadata is None:
            state = DeleteState.NOT_FOUND
            logger.info(f"Delete of {artifact_id} ended in state {state.value}")
            raise NotFound(f"Artifact {artifact_id} not found")
        if not token or not secrets.compare_digest(hash_token(token), metadata.delete_token_hash):
            state = DeleteState.REJECTED
            logger.warning(f"Delete of {artifact_id} ended in state {state.value}")
            raise Unauthorized(f"Bad delete token for {artifact_id}")

        state = DeleteState.DELETING
        logger.debug(f"Delete state: {state.value}")
        await self.storage.delete(artifact_id)

        state = DeleteState.COMPLETED
        logger.info(f"Delete of {artifact_id} {state.value}")

    async def fetch(self, artifact_id: str) -> Optional[ArtifactHandle]:
        if not is_valid_identifier(artifact_id):
            return None
        return await self.storage.fetch(artifact_id)

    async def fetch_thumbnail(self, artifact_id: str) -> Optional[ThumbnailHandle]:
        if not is_valid_identifier(artifact_id):
            return None
        return await self.storage.fetch_thumbnail(artifact_id)

    async def recent(self, limit: Optional[int] = None) -> List[RecentEntry]:
        if limit is None:
            limit = self.settings.recent_count
        limit = max(0, min(limit, config.MAX_RECENT_COUNT))

        entries = []
        for artifact in await self.storage.recent(limit):
            has_thumbnail = await self.storage.has_thumbnail(artifact.id)
            entries.append(RecentEntry(
                url=self.public_url(artifact.id),
                thumbnail_url=self.thumbnail_url(artifact.id) if has_thumbnail else None,
                created_at=artifact.created_at,
                size=artifact.size,
                content_type=artifact.content_type,
                name=artifact.display_name,
            ))
        return entries
