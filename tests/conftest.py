"""Shared fixtures: in-memory store, fake blob store and fake transformer."""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Settings are read when main is imported; keep tests off disk-backed defaults
_BLOB_ROOT = tempfile.mkdtemp(prefix="image-server-blobs-")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("BLOB_BACKEND", "local")
os.environ.setdefault("LOCAL_BLOB_ROOT", _BLOB_ROOT)
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_BLOB_ROOT}/images.db")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from core.store import KeyValueStore, MemoryStoreBackend  # noqa: E402
from models.image import ImageInfo, ImageRequest, TransformResult, UploadRequest  # noqa: E402
from services.errors import SourceFetchError, TransformError, UploadError  # noqa: E402
from services.keys import KeyDeriver  # noqa: E402
from services.lock import DistributedLock  # noqa: E402
from services.coordinator import ArtifactCoordinator  # noqa: E402


class FakeBlobStore:
    """Dict-backed blob store that records calls and can be told to fail."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None, delay: float = 0.0):
        self.files: Dict[str, bytes] = dict(files or {})
        self.delay = delay
        self.gets: List[str] = []
        self.uploads: List[UploadRequest] = []
        self.fail_upload = False

    async def get_file(self, path: str) -> bytes:
        self.gets.append(path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if path not in self.files:
            raise SourceFetchError(path)
        return self.files[path]

    async def upload(self, request: UploadRequest) -> None:
        if self.fail_upload:
            raise UploadError(request.destination, "unexpected status 500", status_code=500)
        self.uploads.append(request)
        self.files[request.destination] = Path(request.source).read_bytes()


class FakeTransformer:
    """Writes the source bytes to a temp file and counts invocations."""

    def __init__(self, tmp_dir: Path, delay: float = 0.0):
        self.tmp_dir = tmp_dir
        self.delay = delay
        self.calls = 0
        self.identify_calls = 0
        self.fail = False
        self.outputs: List[str] = []
        self.animated_flags: List[Optional[bool]] = []

    async def transform(self, image: ImageRequest, source: bytes,
                        animated_gif: Optional[bool] = None) -> TransformResult:
        self.calls += 1
        self.animated_flags.append(animated_gif)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransformError("corrupt input")
        path = self.tmp_dir / f"out-{self.calls}"
        path.write_bytes(source)
        self.outputs.append(str(path))
        return TransformResult(path=str(path), size=len(source))

    async def identify(self, source: bytes) -> ImageInfo:
        self.identify_calls += 1
        return ImageInfo(format="JPEG", width=640, height=480, mode="RGB")


@pytest.fixture
def store():
    return KeyValueStore(MemoryStoreBackend())


@pytest.fixture
def keys():
    return KeyDeriver("img-server", "development", "https://cdn.example.com/")


@pytest.fixture
def lock(store):
    return DistributedLock(store, poll_interval_ms=10, wait_timeout_ms=1000)


@pytest.fixture
def blob_store():
    return FakeBlobStore({"photos/cat.jpg": b"original-bytes"}, delay=0.05)


@pytest.fixture
def transformer(tmp_path):
    return FakeTransformer(tmp_path)


@pytest.fixture
def make_coordinator(store, lock, keys, blob_store, transformer):
    def _make(**overrides):
        params = dict(store=store, lock=lock, keys=keys, blob_store=blob_store,
                      transformer=transformer, max_rounds=3)
        params.update(overrides)
        return ArtifactCoordinator(**params)
    return _make


@pytest.fixture
def resize_request():
    return ImageRequest.from_path("photos/cat.jpg", {"action": "resize", "width": 100, "height": 50})
