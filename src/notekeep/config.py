"""Configuration module for the notekeep storage engine."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notekeep.exceptions import ConfigurationError

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the database
_USER_ENV = Path.home() / ".notekeep" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


class NotekeepConfig(BaseModel):
    """Configuration for the note store."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEKEEP_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEKEEP_DATABASE_PATH", "data/db/notekeep.db")
        )
    )
    # When set, backups are written here instead of ~/.notekeep/backups
    backup_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEKEEP_BACKUP_DIR"))
            if os.getenv("NOTEKEEP_BACKUP_DIR")
            else None
        )
    )

    # Store open/reconnect policy: first attempt plus up to N retries,
    # sleeping retry_delay * attempt between them
    connect_retries: int = Field(
        default_factory=lambda: _env_int("NOTEKEEP_CONNECT_RETRIES", "3")
    )
    connect_retry_delay: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_CONNECT_RETRY_DELAY", "1.0")
    )
    open_timeout: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_OPEN_TIMEOUT", "10.0")
    )
    query_timeout: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_QUERY_TIMEOUT", "5.0")
    )

    # Background flusher for notes created in memory but not yet persisted
    flush_max_attempts: int = Field(
        default_factory=lambda: _env_int("NOTEKEEP_FLUSH_MAX_ATTEMPTS", "5")
    )
    flush_retry_delay: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_FLUSH_RETRY_DELAY", "0.5")
    )

    # Simulated remote endpoint used by the sync queue
    sync_min_latency: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_SYNC_MIN_LATENCY", "0.5")
    )
    sync_max_latency: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_SYNC_MAX_LATENCY", "1.5")
    )
    sync_failure_rate: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_SYNC_FAILURE_RATE", "0.1")
    )
    sync_interval: float = Field(
        default_factory=lambda: _env_float("NOTEKEEP_SYNC_INTERVAL", "30.0")
    )

    # Query and search behaviour
    recent_days: int = Field(
        default_factory=lambda: _env_int("NOTEKEEP_RECENT_DAYS", "7")
    )
    search_history_size: int = Field(
        default_factory=lambda: _env_int("NOTEKEEP_SEARCH_HISTORY_SIZE", "10")
    )
    max_backups: int = Field(
        default_factory=lambda: _env_int("NOTEKEEP_MAX_BACKUPS", "10")
    )

    @model_validator(mode="after")
    def _validate_ranges(self) -> "NotekeepConfig":
        """Reject settings that would break the store or the sync loop.

        Raises:
            ConfigurationError: Naming the offending setting.
        """
        checks = [
            ("connect_retries", self.connect_retries >= 0, "must be >= 0"),
            ("connect_retry_delay", self.connect_retry_delay >= 0, "must be >= 0"),
            ("flush_retry_delay", self.flush_retry_delay >= 0, "must be >= 0"),
            ("open_timeout", self.open_timeout > 0, "must be > 0"),
            ("query_timeout", self.query_timeout > 0, "must be > 0"),
            ("flush_max_attempts", self.flush_max_attempts >= 1, "must be >= 1"),
            (
                "sync_failure_rate",
                0.0 <= self.sync_failure_rate <= 1.0,
                "must be between 0 and 1",
            ),
            ("sync_min_latency", self.sync_min_latency >= 0, "must be >= 0"),
            (
                "sync_max_latency",
                self.sync_max_latency >= self.sync_min_latency,
                "must be >= sync_min_latency",
            ),
            ("sync_interval", self.sync_interval > 0, "must be > 0"),
            ("search_history_size", self.search_history_size >= 1, "must be >= 1"),
        ]
        for key, ok, requirement in checks:
            if not ok:
                raise ConfigurationError(
                    f"{key} {requirement} (got {getattr(self, key)!r})",
                    config_key=key,
                )
        if self.recent_days < 1:
            logger.warning(
                "recent_days=%d disables the 'recent' quick filter", self.recent_days
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the async SQLAlchemy URL for the SQLite database."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{db_path}"

    def get_backup_dir(self) -> Path:
        """Get the backup directory, creating it if needed."""
        backup_dir = (
            self.get_absolute_path(self.backup_dir)
            if self.backup_dir
            else Path.home() / ".notekeep" / "backups"
        )
        backup_dir.mkdir(parents=True, exist_ok=True)
        return backup_dir


# Create a global config instance
config = NotekeepConfig()
