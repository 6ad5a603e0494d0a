"""Pytest configuration and fixtures."""

import io
import stat
import sys
import threading
import time
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pytest

from s3unzip.exceptions import UploadAbortedError

# Add the project root to the Python path (for unzip_to_s3.py)
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

FILE_NAMES = ["test.txt", "test2.txt"]
FILE_CONTENT = b"test"


def build_zip(
    files: Dict[str, bytes],
    directories: Sequence[str] = (),
    symlinks: Optional[Dict[str, str]] = None,
) -> bytes:
    """Build an in-memory zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name in directories:
            archive.writestr(name if name.endswith("/") else name + "/", b"")
        for name, target in (symlinks or {}).items():
            info = zipfile.ZipInfo(name)
            info.create_system = 3
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            archive.writestr(info, target)
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def chunked(data: bytes, size: int = 7) -> Iterable[bytes]:
    """Non-seekable view of ``data`` as small chunks."""
    for start in range(0, len(data), size):
        yield data[start:start + size]


class FakeRemoteClient:
    """Thread-safe stand-in for S3RemoteClient.

    Args:
        fail_on: keys whose upload raises RuntimeError
        delay: seconds each upload sleeps after reading its body
        block_on: keys whose upload waits until the run is cancelled
    """

    def __init__(self, bucket: str = "bucket", fail_on: Sequence[str] = (), delay: float = 0.0,
                 block_on: Sequence[str] = ()):
        self.bucket = bucket
        self.fail_on = set(fail_on)
        self.block_on = set(block_on)
        self.delay = delay
        self.calls: List[str] = []
        self.uploads: Dict[str, bytes] = {}
        self.cancelled: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def upload(self, key: str, chunks: Iterable[bytes], cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            body = b"".join(chunks)
            if self.delay:
                time.sleep(self.delay)
            if key in self.block_on:
                assert cancel_event is not None
                if cancel_event.wait(timeout=5):
                    with self._lock:
                        self.cancelled.append(key)
                    raise UploadAbortedError("Upload cancelled", key=key)
            if key in self.fail_on:
                raise RuntimeError(f"boom: {key}")
            with self._lock:
                self.uploads[key] = body
            return {
                "Location": f"https://example.test/{self.bucket}/{key}",
                "Bucket": self.bucket,
                "Key": key,
                "ETag": f'"etag-{len(body)}"',
                "size": len(body),
            }
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def zip_bytes() -> bytes:
    """Archive holding test.txt and test2.txt, both containing 'test'."""
    return build_zip({name: FILE_CONTENT for name in FILE_NAMES})


@pytest.fixture
def options() -> Dict[str, Any]:
    return {
        "access_key": "key",
        "secret_key": "secret",
        "bucket_name": "bucket",
    }


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
