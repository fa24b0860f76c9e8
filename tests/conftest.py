"""Shared fixtures for receiver, API and uploader tests."""

import os
import pytest
from fastapi.testclient import TestClient

from chibi_upload.core.config import Settings
from chibi_upload.main import app
from chibi_upload.services.receiver import UploadReceiver, get_receiver

SESSION_ID = "67fe1028-8875-480a-8aab-1540230f5674"


class BytesStream:
    """Minimal async file stream, like Starlette's UploadFile."""

    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        self.reads += 1
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset:self._offset + size]
        self._offset += len(chunk)
        return chunk


def chunk_headers(number, total, session_id=SESSION_ID):
    return {
        "chibi-uuid": session_id,
        "chibi-chunk-number": str(number),
        "chibi-chunks-total": str(total),
    }


@pytest.fixture
def upload_settings(tmp_path):
    return Settings(
        UPLOAD_DESTINATION_PATH=str(tmp_path / "uploads"),
        MAX_FILE_SIZE=10_000,
        MAX_CHUNK_SIZE=100,
        UPLOAD_SERVICE_BASE_URL="http://testserver",
    )


@pytest.fixture
def receiver(upload_settings):
    return UploadReceiver(upload_settings)


@pytest.fixture
def client(receiver):
    app.dependency_overrides[get_receiver] = lambda: receiver
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_file(tmp_path):
    """250 bytes: chunks of 100, 100 and 50 at chunk_size=100."""
    path = tmp_path / "sample.bin"
    path.write_bytes(os.urandom(250))
    return path
