import hashlib

import pytest

from conftest import FSYNC_DELAY, max_loop_gap
from upload_server.app.services.errors import EmptyUpload, PayloadTooLarge, StorageFailure
from upload_server.app.services.ingestor import SizeBoundedIngestor


async def stream(*chunks):
    for chunk in chunks:
        yield chunk


@pytest.fixture
def temp_dir(tmp_path):
    directory = tmp_path / "tmp"
    directory.mkdir()
    return directory


@pytest.mark.asyncio
async def test_ingest_writes_all_chunks(temp_dir):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=100)
    result = await ingestor.ingest(stream(b"hello ", b"", b"world"))

    assert result.size == 11
    assert result.temp_path.read_bytes() == b"hello world"
    assert result.sha256 == hashlib.sha256(b"hello world").hexdigest()


@pytest.mark.asyncio
async def test_ingest_accepts_exactly_max_size(temp_dir):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=10)
    result = await ingestor.ingest(stream(b"12345", b"67890"))
    assert result.size == 10


@pytest.mark.asyncio
async def test_limit_applies_to_cumulative_size(temp_dir):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=10)

    with pytest.raises(PayloadTooLarge):
        await ingestor.ingest(stream(*[b"ab"] * 6))
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_oversize_aborts_without_reading_the_rest(temp_dir):
    consumed = 0

    async def endless():
        nonlocal consumed
        while True:
            consumed += 1
            yield b"x" * 1024

    ingestor = SizeBoundedIngestor(temp_dir, max_size=4096)
    with pytest.raises(PayloadTooLarge):
        await ingestor.ingest(endless())

    assert consumed == 5
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_stream_is_rejected(temp_dir):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=10)

    with pytest.raises(EmptyUpload):
        await ingestor.ingest(stream())
    with pytest.raises(EmptyUpload):
        await ingestor.ingest(stream(b"", b""))
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_interrupted_stream_discards_temp_file(temp_dir):
    class Disconnected(Exception):
        pass

    async def interrupted():
        yield b"partial"
        raise Disconnected()

    ingestor = SizeBoundedIngestor(temp_dir, max_size=100)
    with pytest.raises(Disconnected):
        await ingestor.ingest(interrupted())
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_write_failure_is_storage_failure(tmp_path):
    ingestor = SizeBoundedIngestor(tmp_path / "missing", max_size=100)

    with pytest.raises(StorageFailure):
        await ingestor.ingest(stream(b"abc"))


@pytest.mark.asyncio
async def test_discard_tolerates_missing_file(temp_dir):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=100)
    result = await ingestor.ingest(stream(b"abc"))

    await ingestor.discard(result)
    await ingestor.discard(result)
    assert not result.temp_path.exists()


def test_max_size_must_be_positive(temp_dir):
    with pytest.raises(ValueError):
        SizeBoundedIngestor(temp_dir, max_size=0)


@pytest.mark.asyncio
async def test_fsync_runs_off_the_event_loop(temp_dir, slow_fsync):
    ingestor = SizeBoundedIngestor(temp_dir, max_size=100)
    result, gap = await max_loop_gap(ingestor.ingest(stream(b"abc")))

    assert len(slow_fsync) == 1
    assert result.temp_path.read_bytes() == b"abc"
    assert gap < 0.2 < FSYNC_DELAY
