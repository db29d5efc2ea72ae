"""
Pytest configuration and fixtures for Komik Upload Backend tests.
"""

import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["KOMIK_DATA_DIR"] = tempfile.mkdtemp(prefix="komik_test_data_")
os.environ["KOMIK_MASTER_KEY"] = "test-master-key-12345"
os.environ["KOMIK_STORAGE_BACKEND"] = "local"
os.environ.pop("KOMIK_STORAGE_ROOT", None)

from komik_upload.catalog import CatalogStore
from komik_upload.configuration import make_runtime_config
from komik_upload.database import JobDatabase
from komik_upload.job_manager import UploadCoordinator
from komik_upload.key_manager import OperatorCredential
from komik_upload.main import app
from komik_upload.rate_limit import StorageGate
from komik_upload.storage import LocalStorage


def page_bytes(name: str) -> bytes:
    """Small fake JPEG payload that differs per page."""
    return b"\xff\xd8\xff\xe0" + name.encode() + b"\xff\xd9"


def chapter_pages(folder: str, count: int, extension: str = ".jpg") -> Dict[str, bytes]:
    return {f"{folder}/{number:03d}{extension}": page_bytes(f"{folder}/{number}") for number in range(1, count + 1)}


class RecordingStorage(LocalStorage):
    """Local storage that remembers every key it was asked to write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.puts: List[str] = []
        self.on_put: Optional[Callable[[Path, str], None]] = None

    def _put(self, local_path: Path, key: str) -> None:
        self.puts.append(key)
        if self.on_put is not None:
            self.on_put(local_path, key)
        super()._put(local_path, key)


class FlakyStorage(RecordingStorage):
    """
    Fails puts with a transient error.

    ``failures`` transient errors are raised first; while ``blocked`` is set
    every put whose key contains it fails.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = 0
        self.blocked: Optional[str] = None

    def _put(self, local_path: Path, key: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection reset by peer")
        if self.blocked and self.blocked in key:
            raise ConnectionError(f"storage unreachable for {key}")
        super()._put(local_path, key)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the app's data directory after the session."""
    data_dir = os.environ["KOMIK_DATA_DIR"]
    yield {"data": data_dir}
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def master_key():
    """Return the master API key."""
    return "test-master-key-12345"


@pytest.fixture
def auth_headers(master_key):
    return {"Authorization": f"Bearer {master_key}"}


@pytest.fixture
def config(tmp_path):
    return make_runtime_config({
        "paths": {"data_dir": str(tmp_path / "data")},
        "storage": {"retry_backoff_seconds": 0, "requests_per_second": 0, "max_connections": 3},
        "execution": {"max_unit_workers": 3},
    })


@pytest.fixture
def catalog(config):
    return CatalogStore(Path(str(config.paths.catalog_db)))


@pytest.fixture
def database(config):
    return JobDatabase(Path(str(config.paths.job_db)))


@pytest.fixture
def storage(config):
    gate = StorageGate(int(config.storage.max_connections), 0)
    return FlakyStorage(
        Path(str(config.storage.local_root)),
        gate,
        retry_attempts=3,
        retry_backoff_seconds=0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def make_coordinator(config, storage, catalog, database):
    """Build coordinators over the same stores, as a restarted process would."""
    created = []

    def factory(**overrides):
        coordinator = UploadCoordinator(
            overrides.pop("config", config),
            storage=overrides.pop("storage", storage),
            catalog=overrides.pop("catalog", catalog),
            database=overrides.pop("database", database),
        )
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.shutdown(wait=True)


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def operator():
    return OperatorCredential(id="op-1", owner="tester", role="operator")


@pytest.fixture
def make_zip(tmp_path):
    """Write a zip archive from {archive path: bytes}."""
    counter = {"value": 0}

    def factory(entries: Dict[str, bytes], name: Optional[str] = None) -> Path:
        counter["value"] += 1
        path = tmp_path / (name or f"archive-{counter['value']}.zip")
        with zipfile.ZipFile(path, "w") as archive:
            for entry, data in entries.items():
                archive.writestr(entry, data)
        return path

    return factory


@pytest.fixture
def make_pages(tmp_path):
    """Write loose page files and return (original name, path) pairs."""

    def factory(names: List[str]) -> List:
        directory = tmp_path / "loose"
        directory.mkdir(exist_ok=True)
        files = []
        for name in names:
            path = directory / name
            path.write_bytes(page_bytes(name))
            files.append((name, path))
        return files

    return factory
