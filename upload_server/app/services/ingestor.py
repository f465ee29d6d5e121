import asyncio
import hashlib
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable

import aiofiles
import aiofiles.os

from upload_server import config
from upload_server.app.services.errors import EmptyUpload, PayloadTooLarge, StorageFailure
from upload_server.logger_config import setup_logger

logger = setup_logger()


@dataclass(frozen=True)
class IngestedUpload:
    temp_path: Path
    size: int
    sha256: str


class SizeBoundedIngestor:
    """Streams a body into a temporary file under a hard size ceiling.

    Only the current chunk is ever held in memory. The limit is checked against
    the cumulative number of bytes received, so a breach aborts as soon as the
    offending chunk arrives and the rest of the stream is never read.
    """

    def __init__(self, temp_dir: Path, max_size: int = config.MAX_UPLOAD_SIZE):
        if max_size <= 0:
            raise ValueError("Maximum upload size must be positive")
        self.temp_dir = temp_dir
        self.max_size = max_size

    def _new_temp_path(self) -> Path:
        return self.temp_dir / f"upload-{secrets.token_hex(8)}.part"

    async def ingest(self, chunks: AsyncIterable[bytes]) -> IngestedUpload:
        temp_path = self._new_temp_path()
        hasher = hashlib.sha256()
        size = 0

        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    size += len(chunk)
                    if size > self.max_size:
                        logger.info(f"Upload exceeded {self.max_size} bytes, aborting")
                        raise PayloadTooLarge(f"Upload exceeds {self.max_size} bytes")
                    hasher.update(chunk)
                    await f.write(chunk)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
        except OSError as e:
            logger.error(f"Error writing upload to {temp_path}: {e}", exc_info=True)
            await self._remove(temp_path)
            raise StorageFailure("Could not write upload") from e
        except BaseException:
            # Size breach, client disconnect or cancellation
            await self._remove(temp_path)
            raise

        if size == 0:
            await self._remove(temp_path)
            raise EmptyUpload()

        logger.debug(f"Ingested {size} bytes into {temp_path.name}")
        return IngestedUpload(temp_path=temp_path, size=size, sha256=hasher.hexdigest())

    async def discard(self, upload: IngestedUpload):
        await self._remove(upload.temp_path)

    @staticmethod
    async def _remove(path: Path):
        try:
            await aiofiles.os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {path}: {e}")
