"""
Pytest configuration: an isolated sqlite database and storage root for the run.

The environment is prepared before anything from ``wikiupload`` is imported,
because settings, the engine and the storage service are created at import time.
"""

import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="wikiupload-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'test.db'}"
os.environ["STORAGE_ROOT"] = str(_TEST_ROOT / "storage")
os.environ["JWT_SECRET"] = "test-secret-0123456789abcdef0123456789"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

import pytest
from httpx import ASGITransport, AsyncClient

from wikiupload.core.config import settings
from wikiupload.db.base import Base
from wikiupload.db.session import async_session_factory, engine
from wikiupload.main import app
from wikiupload.models.user import User
from wikiupload.services import orchestrator
from wikiupload.services.storage import storage_service
from wikiupload.utils.security import create_access_token


@pytest.fixture
async def database():
    """Fresh schema for every test."""
    storage_service.ensure_base_dirs()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(database):
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    async def _make(email: str = "uploader@example.com", **fields) -> User:
        fields.setdefault("is_active", True)
        fields.setdefault("password_hash", "unused")
        user = User(email=email, **fields)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    return _make


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
async def other_user(make_user):
    return await make_user("someone-else@example.com")


def _bearer(user: User) -> dict[str, str]:
    token, _ = create_access_token(str(user.id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    return _bearer


@pytest.fixture
def auth_headers(user):
    return _bearer(user)


@pytest.fixture
async def client(database):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as async_client:
        yield async_client


@pytest.fixture(autouse=True)
def queued_jobs(monkeypatch):
    """Capture Celery submissions instead of talking to a broker."""
    jobs: list[tuple[str, tuple]] = []
    monkeypatch.setattr(
        orchestrator,
        "assemble_upload_chunks_task",
        SimpleNamespace(delay=lambda *args: jobs.append(("assemble", args))),
    )
    monkeypatch.setattr(
        orchestrator,
        "publish_stashed_file_task",
        SimpleNamespace(delay=lambda *args: jobs.append(("publish", args))),
    )
    return jobs


@pytest.fixture
def small_chunks(monkeypatch):
    monkeypatch.setattr(settings, "min_upload_chunk_size", 1000)
    return settings.min_upload_chunk_size


@pytest.fixture
def async_uploads(monkeypatch):
    monkeypatch.setattr(settings, "enable_async_uploads", True)


@pytest.fixture
def tmp_file(tmp_path):
    def _write(content: bytes, name: str = "source.bin") -> Path:
        path = tmp_path / name
        path.write_bytes(content)
        return path

    return _write
