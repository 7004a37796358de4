"""Backup utilities for the notekeep store.

A backup is a gzip-compressed JSON snapshot of every note, folder and
setting. Backups rotate by count; restoring replaces the store contents
in one transaction.
"""
import gzip
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from notekeep.config import NotekeepConfig
from notekeep.config import config as default_config
from notekeep.exceptions import NotekeepError
from notekeep.models.db_models import Collection
from notekeep.models.schema import validate_folder, validate_note
from notekeep.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"
BACKUP_PREFIX = "notekeep_"
BACKUP_SUFFIX = ".json.gz"
LAST_BACKUP_SETTING = "lastBackup"


class BackupManager:
    """Creates, lists, rotates and restores store snapshots."""

    def __init__(
        self,
        store: NoteStore,
        backup_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
        config: Optional[NotekeepConfig] = None,
    ):
        """Initialize the backup manager.

        Args:
            store: Store to snapshot and restore into.
            backup_dir: Directory for backups. Defaults to the configured
                backup directory (~/.notekeep/backups).
            max_backups: Number of backups to keep.
        """
        self.store = store
        self.config = config or default_config
        self.backup_dir = Path(backup_dir) if backup_dir else self.config.get_backup_dir()
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups if max_backups is not None else self.config.max_backups

    async def create_backup(self, label: Optional[str] = None) -> Optional[Path]:
        """Write a snapshot of the store and record the ``lastBackup`` setting.

        Args:
            label: Optional label to include in the filename

        Returns:
            Path to the backup file, or None if the backup failed.

        Example:
            path = await manager.create_backup(label="pre-restore")
        """
        try:
            now = datetime.now(timezone.utc)
            snapshot = {
                "version": BACKUP_FORMAT_VERSION,
                "created_at": now.isoformat(),
                "notes": await self.store.get_all(Collection.NOTES),
                "folders": await self.store.get_all(Collection.FOLDERS),
                "settings": await self.store.get_all_settings(),
            }

            label_part = f"_{label}" if label else ""
            backup_path = self.backup_dir / (
                f"{BACKUP_PREFIX}{now.strftime('%Y%m%dT%H%M%S%f')}{label_part}{BACKUP_SUFFIX}"
            )
            with gzip.open(backup_path, "wt", encoding="utf-8", compresslevel=6) as f:
                json.dump(snapshot, f, ensure_ascii=False)

            await self.store.put_setting(LAST_BACKUP_SETTING, now.isoformat())

            size_kb = backup_path.stat().st_size / 1024
            logger.info(
                f"Backup created: {backup_path} ({len(snapshot['notes'])} notes, "
                f"{size_kb:.1f} KB)"
            )
            self._rotate_backups()
            return backup_path

        except (NotekeepError, OSError) as e:
            logger.error(f"Backup failed: {e}", exc_info=True)
            return None

    def _rotate_backups(self) -> int:
        """Remove the oldest backups beyond max_backups.

        Returns:
            Number of backups removed.
        """
        removed = 0
        for backup in self._backup_files()[self.max_backups:]:
            try:
                backup.unlink()
                removed += 1
                logger.debug(f"Removed old backup: {backup}")
            except OSError as e:
                logger.warning(f"Could not remove old backup {backup}: {e}")

        if removed > 0:
            logger.info(f"Rotated {removed} old backup(s)")
        return removed

    def _backup_files(self) -> List[Path]:
        """Backup files, newest first (names sort by timestamp)."""
        return sorted(
            self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"),
            key=lambda p: p.name,
            reverse=True,
        )

    def list_backups(self) -> List[Dict[str, Any]]:
        """List all available backups, newest first."""
        backups = []
        for path in self._backup_files():
            stat = path.stat()
            backups.append({
                "path": str(path),
                "name": path.name,
                "size_bytes": stat.st_size,
                "modified_at": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
            })
        return backups

    @staticmethod
    def read_backup(backup_path: Union[str, Path]) -> Dict[str, Any]:
        """Load and sanity-check a backup file.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the file is not a notekeep backup.
        """
        with gzip.open(backup_path, "rt", encoding="utf-8") as f:
            snapshot = json.load(f)
        if not isinstance(snapshot, dict) or not isinstance(snapshot.get("notes"), list):
            raise ValueError(f"Not a notekeep backup: {backup_path}")
        return snapshot

    async def restore_backup(self, backup_path: Union[str, Path]) -> bool:
        """Replace the store contents with a backup.

        The current contents are backed up first (label ``pre-restore``).
        Records that fail validation are skipped with a warning.

        Returns:
            True if the restore succeeded, False otherwise.
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            logger.error(f"Backup not found: {backup_path}")
            return False

        try:
            snapshot = self.read_backup(backup_path)
        except (OSError, ValueError) as e:
            logger.error(f"Unreadable backup {backup_path}: {e}")
            return False

        raw_folders = [r for r in snapshot.get("folders") or [] if isinstance(r, dict)]
        folder_ids = {r.get("id") for r in raw_folders}
        folders = [
            folder.to_record()
            for folder in (validate_folder(r, folder_ids=folder_ids) for r in raw_folders)
            if folder is not None
        ]
        live_ids = {record["id"] for record in folders}
        notes = []
        for record in snapshot["notes"]:
            note = validate_note(record, folder_ids=live_ids)
            if note is not None:
                notes.append({**note.to_record(), "is_dirty": False})
        settings = snapshot.get("settings")
        settings = settings if isinstance(settings, dict) else {}

        try:
            await self.create_backup(label="pre-restore")
            await self.store.replace_all(notes, folders, settings)
        except NotekeepError as e:
            logger.error(f"Restore from {backup_path} failed: {e}", exc_info=True)
            return False

        logger.info(
            f"Restored {len(notes)} notes and {len(folders)} folders from {backup_path}"
        )
        return True
