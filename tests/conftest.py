"""Common test fixtures for the notekeep store."""

import pytest

from notekeep.config import config
from notekeep.observability import metrics
from notekeep.storage.note_repository import NoteRepository
from notekeep.storage.note_store import NoteStore


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a temporary database (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", tmp_path / "db" / "test_notekeep.db")
    monkeypatch.setattr(config, "backup_dir", tmp_path / "backups")
    monkeypatch.setattr(config, "connect_retry_delay", 0.0)
    monkeypatch.setattr(config, "flush_retry_delay", 0.0)
    monkeypatch.setattr(config, "sync_min_latency", 0.0)
    monkeypatch.setattr(config, "sync_max_latency", 0.0)
    metrics.reset()
    yield config


@pytest.fixture
async def store(test_config, anyio_backend):
    """An open store on a fresh database."""
    note_store = await NoteStore.open_or_create(test_config)
    yield note_store
    await note_store.close()


@pytest.fixture
async def repository(store, test_config):
    """A loaded repository over the test store."""
    repo = NoteRepository(store, test_config)
    await repo.load()
    yield repo
    await repo.close()
