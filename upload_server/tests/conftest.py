import asyncio
import io
import json
import os
import time
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from PIL import Image

from upload_server.app.services.storage_manager import StorageManager
from upload_server.config import Config
from upload_server.main import create_app

MAX_UPLOAD_SIZE = 1024


@pytest.fixture
def settings(tmp_path):
    return Config(
        data_dir=tmp_path / "data",
        server_url="http://testserver/",
        max_upload_size=MAX_UPLOAD_SIZE,
        thumbnail_size=32,
        thumbnail_timeout=5.0,
    )


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def storage(tmp_path):
    manager = StorageManager(tmp_path / "store")
    await manager.initialize()
    return manager


def make_png(width=64, height=32, color="#3366cc") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def upload(client, content: bytes, filename="upload.bin", content_type="application/octet-stream",
           options=None, **kwargs):
    files = {"file": (filename, content, content_type)}
    data = {"options": json.dumps(options)} if options is not None else None
    return client.post("/", files=files, data=data, **kwargs)


def stored_files(root: Path):
    return [p for p in root.rglob("*") if p.is_file()]


FSYNC_DELAY = 0.5


@pytest.fixture
def slow_fsync(monkeypatch):
    """Make fsync block its calling thread, like a slow disk would."""
    calls = []
    real_fsync = os.fsync

    def fsync(fd):
        calls.append(fd)
        time.sleep(FSYNC_DELAY)
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", fsync)
    return calls


async def max_loop_gap(awaitable, interval=0.01):
    """Await ``awaitable`` while a ticker runs; return its result and the longest gap between ticks."""
    ticks = []

    async def ticker():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(interval)

    task = asyncio.create_task(ticker())
    await asyncio.sleep(0)
    try:
        result = await awaitable
    finally:
        ticks.append(time.monotonic())
        task.cancel()
    return result, max(b - a for a, b in zip(ticks, ticks[1:]))
