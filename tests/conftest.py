"""
Pytest fixtures for vforge tests.

Each test that needs a database gets its own SQLite file, so tests are
independent and need no running PostgreSQL. Redis is never contacted:
VFORGE_REDIS_URL is cleared and Redis-backed code is exercised with mocks.
"""

import os
import tempfile
from pathlib import Path

import pytest
from databases import Database

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VFORGE_TEST_MODE"] = "1"
os.environ["VFORGE_DATABASE_URL"] = f"sqlite:///{_test_temp_dir}/vforge.db"
os.environ["VFORGE_STORAGE_PATH"] = str(Path(_test_temp_dir) / "blobs")
os.environ["VFORGE_WORK_DIR"] = str(Path(_test_temp_dir) / "work")
os.environ["VFORGE_REDIS_URL"] = ""
os.environ["VFORGE_JOB_QUEUE_MODE"] = "memory"
os.environ["VFORGE_PRESIGN_SECRET"] = "test-presign-secret"
os.environ["VFORGE_ALERT_WEBHOOK_URL"] = ""
os.environ["VFORGE_ADMIN_API_SECRET"] = ""

from api.blob_store import LocalBlobStore  # noqa: E402
from api.database import configure_database, create_tables  # noqa: E402
from api.job_queue import InMemoryJobQueue  # noqa: E402
from api.job_repository import JobRepository  # noqa: E402
from api.job_service import Principal  # noqa: E402
from api.status_cache import MemoryCacheBackend, StatusCache  # noqa: E402
from worker.alerts import reset_alert_metrics  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_alerts():
    reset_alert_metrics()
    yield
    reset_alert_metrics()


@pytest.fixture
async def test_db(tmp_path: Path):
    """Connected Database on a fresh SQLite file with all tables created."""
    db_url = f"sqlite:///{tmp_path}/test.db"
    create_tables(db_url)
    db = Database(db_url)
    await db.connect()
    await configure_database(db)
    yield db
    await db.disconnect()


@pytest.fixture
def repository(test_db) -> JobRepository:
    return JobRepository(test_db)


@pytest.fixture
def cache() -> StatusCache:
    return StatusCache(MemoryCacheBackend(), enabled=True)


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path / "blobs", secret="test-presign-secret", base_url="")


@pytest.fixture
def memory_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue(visibility_timeout=60)


@pytest.fixture
def owner() -> Principal:
    return Principal(id="user-1")


@pytest.fixture
def other_owner() -> Principal:
    return Principal(id="user-2")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="admin-1", role="admin")


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
