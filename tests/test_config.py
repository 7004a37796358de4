"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest

from notekeep.config import NotekeepConfig
from notekeep.exceptions import ConfigurationError, ErrorCode


class TestNotekeepConfig:
    """Tests for NotekeepConfig."""

    def test_defaults(self, monkeypatch):
        for name in ("NOTEKEEP_CONNECT_RETRIES", "NOTEKEEP_RECENT_DAYS", "NOTEKEEP_BACKUP_DIR"):
            monkeypatch.delenv(name, raising=False)
        config = NotekeepConfig()
        assert config.connect_retries == 3
        assert config.recent_days == 7
        assert config.backup_dir is None

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NOTEKEEP_CONNECT_RETRIES", "5")
        monkeypatch.setenv("NOTEKEEP_SYNC_FAILURE_RATE", "0.5")
        monkeypatch.setenv("NOTEKEEP_BACKUP_DIR", str(tmp_path / "bk"))
        config = NotekeepConfig()
        assert config.connect_retries == 5
        assert config.sync_failure_rate == 0.5
        assert config.backup_dir == tmp_path / "bk"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("connect_retries", -1),
            ("connect_retry_delay", -0.5),
            ("open_timeout", 0),
            ("flush_max_attempts", 0),
            ("sync_failure_rate", 1.5),
            ("sync_interval", 0),
            ("search_history_size", 0),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ConfigurationError) as exc_info:
            NotekeepConfig(**{field: value})
        assert exc_info.value.config_key == field
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID

    def test_latency_range(self):
        with pytest.raises(ConfigurationError) as exc_info:
            NotekeepConfig(sync_min_latency=2.0, sync_max_latency=1.0)
        assert exc_info.value.config_key == "sync_max_latency"
        assert "sync_min_latency" in exc_info.value.message

    def test_invalid_environment_value_rejected(self, monkeypatch):
        monkeypatch.setenv("NOTEKEEP_FLUSH_MAX_ATTEMPTS", "0")
        with pytest.raises(ConfigurationError):
            NotekeepConfig()

    def test_relative_paths_use_base_dir(self, tmp_path):
        config = NotekeepConfig(base_dir=tmp_path, database_path=Path("db/notes.db"))
        assert config.get_absolute_path(config.database_path) == tmp_path / "db" / "notes.db"
        assert config.get_db_url() == f"sqlite+aiosqlite:///{tmp_path / 'db' / 'notes.db'}"
        assert (tmp_path / "db").is_dir()

    def test_absolute_paths_unchanged(self, tmp_path):
        config = NotekeepConfig(base_dir=Path("/elsewhere"))
        assert config.get_absolute_path(tmp_path) == tmp_path

    def test_backup_dir_created(self, tmp_path):
        config = NotekeepConfig(base_dir=tmp_path, backup_dir=Path("backups"))
        assert config.get_backup_dir() == tmp_path / "backups"
        assert (tmp_path / "backups").is_dir()
