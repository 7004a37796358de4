"""Repository for note and folder storage and retrieval.

The repository owns the canonical in-memory collections. Reads are served
from memory; writes go to memory first and then to the persistent store.
Newly created notes and folders are tracked in a pending set that a
background flusher drains, so ``create`` and ``create_folder`` never block
on I/O.
"""

import asyncio
import datetime
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from notekeep.config import NotekeepConfig
from notekeep.config import config as default_config
from notekeep.exceptions import NotekeepError, ValidationError
from notekeep.models.db_models import Collection
from notekeep.models.schema import (
    DEFAULT_COLOR,
    Folder,
    FolderSummary,
    Note,
    QuickFilter,
    SortKey,
    ensure_timezone_aware,
    generate_id,
    utc_now,
    validate_folder,
    validate_note,
)
from notekeep.observability import timed_operation, traced
from notekeep.services.export_service import parse_note_import
from notekeep.storage.note_store import NoteStore
from notekeep.utils import count_words, strip_html

logger = logging.getLogger(__name__)


def _coerce_choice(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value}",
            field=field,
            value=value,
        ) from None


class NoteRepository:
    """In-memory note and folder collections backed by a NoteStore."""

    def __init__(self, store: NoteStore, config: Optional[NotekeepConfig] = None):
        self.store = store
        self.config = config or default_config
        self._notes: Dict[str, Note] = {}
        self._folders: Dict[str, Folder] = {}

        self._load_in_progress = False
        self._save_in_progress = False
        self._save_idle = asyncio.Event()
        self._save_idle.set()

        # Unsaved note and folder ids -> generation of their latest in-memory change
        self._pending: Dict[str, int] = {}
        self._pending_folders: Dict[str, int] = {}
        self._generation = 0
        self._flush_task: Optional[asyncio.Task] = None
        # Per-note store writes still in flight (awaited by delete)
        self._inflight: Dict[str, asyncio.Future] = {}
        # Ids deleted while a load is reading the store
        self._deleted_during_load: Set[str] = set()
        self._folders_deleted_during_load: Set[str] = set()

    # =========================================================================
    # Internal bookkeeping
    # =========================================================================

    def _mark_pending(self, note_id: str) -> int:
        self._generation += 1
        self._pending[note_id] = self._generation
        return self._generation

    def _mark_folder_pending(self, folder_id: str) -> int:
        self._generation += 1
        self._pending_folders[folder_id] = self._generation
        return self._generation

    def _has_pending(self) -> bool:
        return bool(self._pending or self._pending_folders)

    def _settle(self, note_id: str, generation: int) -> None:
        """Clear the pending mark unless the note changed again meanwhile."""
        if self._pending.get(note_id) != generation:
            return
        del self._pending[note_id]
        note = self._notes.get(note_id)
        if note is not None:
            note.is_dirty = False

    def _settle_folder(self, folder_id: str, generation: int) -> None:
        if self._pending_folders.get(folder_id) == generation:
            del self._pending_folders[folder_id]

    @staticmethod
    def _record(note: Note) -> Dict[str, Any]:
        # The stored copy is durable by definition
        record = note.to_record()
        record["is_dirty"] = False
        return record

    def _touched(self, note: Note, **changes: Any) -> Note:
        """Copy of note with changes applied as a new user-visible version."""
        metadata = note.metadata.model_copy(
            update={"version": note.metadata.version + 1}
        )
        return note.model_copy(
            update={
                **changes,
                "modified_at": max(utc_now(), note.modified_at),
                "synced": False,
                "is_dirty": True,
                "metadata": metadata,
            }
        )

    async def _wait_for_save(self) -> None:
        while self._save_in_progress:
            await self._save_idle.wait()

    @property
    def pending_count(self) -> int:
        """Number of notes changed in memory but not yet durable."""
        return len(self._pending)

    # =========================================================================
    # Load / save
    # =========================================================================

    @traced("load")
    async def load(self) -> bool:
        """Replace the in-memory collections with the store contents.

        Folders are validated first, then notes against the loaded folder
        set; invalid records are skipped with a warning. Notes and folders
        with unsaved in-memory changes win over their stored copies, and
        anything deleted while the store was being read stays deleted.

        Returns:
            False if a load was already running and this call did nothing.
        """
        if self._load_in_progress:
            logger.debug("Load already in progress; skipping")
            return False
        self._load_in_progress = True
        self._deleted_during_load.clear()
        self._folders_deleted_during_load.clear()
        try:
            folder_records = await self.store.get_all(Collection.FOLDERS)
            note_records = await self.store.get_all(Collection.NOTES)

            deleted_notes = self._deleted_during_load
            deleted_folders = self._folders_deleted_during_load
            folder_records = [
                record for record in folder_records
                if not (isinstance(record, dict) and record.get("id") in deleted_folders)
            ]
            folder_ids = {
                record.get("id") for record in folder_records if isinstance(record, dict)
            }
            folder_ids.update(self._pending_folders)
            skipped = 0
            folders: Dict[str, Folder] = {}
            for record in folder_records:
                folder = validate_folder(record, folder_ids=folder_ids)
                if folder is None:
                    skipped += 1
                    continue
                folders[folder.id] = folder

            for folder_id in self._pending_folders:
                folder = self._folders.get(folder_id)
                if folder is not None:
                    folders[folder_id] = folder

            notes: Dict[str, Note] = {}
            for record in note_records:
                if isinstance(record, dict) and record.get("id") in deleted_notes:
                    continue
                note = validate_note(record, folder_ids=folders.keys())
                if note is None:
                    skipped += 1
                    continue
                note.is_dirty = False
                notes[note.id] = note

            for note_id in self._pending:
                note = self._notes.get(note_id)
                if note is not None:
                    notes[note_id] = note

            self._folders = folders
            self._notes = notes
            logger.info(
                f"Loaded {len(notes)} notes and {len(folders)} folders"
                + (f" ({skipped} invalid records skipped)" if skipped > 0 else "")
            )
            return True
        finally:
            self._load_in_progress = False
            self._deleted_during_load.clear()
            self._folders_deleted_during_load.clear()

    @traced("save")
    async def save(self) -> bool:
        """Persist every note and folder in one store transaction.

        Returns:
            False if a save was already running and this request was dropped.

        Raises:
            TransactionError: If the store write failed; nothing was saved.
            StoreConnectionError: If the store is not open.
        """
        if self._save_in_progress:
            logger.debug("Save already in progress; request dropped")
            return False
        self._save_in_progress = True
        self._save_idle.clear()
        try:
            pending = dict(self._pending)
            pending_folders = dict(self._pending_folders)
            notes = [self._record(note) for note in self._notes.values()]
            folders = [folder.to_record() for folder in self._folders.values()]
            await self.store.save_many(notes, folders)
            for note_id, generation in pending.items():
                self._settle(note_id, generation)
            for folder_id, generation in pending_folders.items():
                self._settle_folder(folder_id, generation)
            return True
        finally:
            self._save_in_progress = False
            self._save_idle.set()

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(
                f"No running event loop; {len(self._pending)} notes and "
                f"{len(self._pending_folders)} folders wait for flush()"
            )
            return
        self._flush_task = loop.create_task(self._drain_pending())

    async def _drain_pending(self) -> None:
        """Save until the pending set is empty, with bounded retries."""
        failures = 0
        while self._has_pending():
            await self._wait_for_save()
            try:
                saved = await self.save()
            except NotekeepError as e:
                failures += 1
                if failures >= self.config.flush_max_attempts:
                    logger.error(
                        f"Background save failed {failures} times, giving up; "
                        f"{len(self._pending)} notes and {len(self._pending_folders)} folders "
                        f"remain unsaved: {e}"
                    )
                    return
                delay = self.config.flush_retry_delay * failures
                logger.warning(
                    f"Background save failed (attempt {failures}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue
            if saved:
                failures = 0

    async def flush(self) -> None:
        """Wait until every pending note and folder is durable.

        Raises:
            NotekeepError: If the final save attempt failed.
        """
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        while self._has_pending():
            await self._wait_for_save()
            await self.save()

    async def close(self) -> None:
        """Wait for the background flusher to finish. Never raises."""
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        if self._has_pending():
            logger.warning(
                f"Closing with {len(self._pending)} unsaved notes and "
                f"{len(self._pending_folders)} unsaved folders"
            )

    # =========================================================================
    # Notes
    # =========================================================================

    def create(
        self,
        title: str = "",
        content: str = "",
        tags: Optional[Iterable[str]] = None,
        folder_id: Optional[str] = None,
        color: str = DEFAULT_COLOR,
        is_favorite: bool = False,
        is_shared: bool = False,
    ) -> Note:
        """Create a note in memory and schedule its persistence.

        Returns immediately; the note is durable once the background flusher
        (or an explicit ``flush()``) has saved it.

        Raises:
            ValidationError: If the note fails strict validation.
        """
        with timed_operation("create_note", title=str(title or "")[:30]):
            now = utc_now()
            note = validate_note(
                {
                    "id": generate_id(),
                    "title": title,
                    "content": content,
                    "color": color,
                    "tags": list(tags or []),
                    "folder_id": folder_id,
                    "is_favorite": is_favorite,
                    "is_shared": is_shared,
                    "created_at": now,
                    "modified_at": now,
                    "is_dirty": True,
                    "synced": False,
                    "metadata": {"word_count": count_words(content), "version": 1},
                },
                strict=True,
                folder_ids=self._folders.keys(),
            )
            self._notes[note.id] = note
            self._mark_pending(note.id)
            self._schedule_flush()
            logger.debug(f"Created note {note.id}")
            return note

    @traced("update_note")
    async def update(self, note: Note) -> bool:
        """Replace a note and persist it immediately.

        ``modified_at`` and ``metadata.version`` are advanced and the note is
        marked unsynced. ``created_at`` is preserved.

        Returns:
            False if no note with that id exists.

        Raises:
            ValidationError: If the note fails strict validation.
            NotekeepError: If the store write failed; the in-memory copy is
                kept with ``is_dirty = True``.
        """
        current = self._notes.get(note.id)
        if current is None:
            return False

        data = note.model_dump()
        data["created_at"] = current.created_at
        data["modified_at"] = max(utc_now(), current.modified_at)
        data["synced"] = False
        data["is_dirty"] = True
        data["metadata"] = {
            **data["metadata"],
            "word_count": count_words(note.content),
            "version": max(current.metadata.version, note.metadata.version) + 1,
        }
        updated = validate_note(data, strict=True, folder_ids=self._folders.keys())
        self._notes[note.id] = updated
        generation = self._mark_pending(note.id)

        write = asyncio.ensure_future(
            self.store.put(Collection.NOTES, self._record(updated))
        )
        self._inflight[note.id] = write
        try:
            await write
        except NotekeepError as e:
            logger.error(f"Failed to persist note {note.id}; kept in memory: {e}")
            raise
        finally:
            if self._inflight.get(note.id) is write:
                del self._inflight[note.id]

        self._settle(note.id, generation)
        return True

    @traced("delete_note")
    async def delete(self, note_id: str) -> bool:
        """Delete a note from memory, then durably from the store.

        The note disappears from memory at once and stays gone even if the
        store write fails, in which case the error is raised.

        Returns:
            False if no note with that id exists.
        """
        note = self._notes.pop(note_id, None)
        if note is None:
            return False
        self._pending.pop(note_id, None)
        if self._load_in_progress:
            self._deleted_during_load.add(note_id)

        write = self._inflight.get(note_id)
        if write is not None:
            await asyncio.wait([write])
        await self._wait_for_save()

        await self.store.delete(Collection.NOTES, note_id)
        await self.save()
        logger.debug(f"Deleted note {note_id}")
        return True

    def get_note(self, note_id: str) -> Optional[Note]:
        return self._notes.get(note_id)

    def get_all_notes(self) -> List[Note]:
        """All notes in insertion order."""
        return list(self._notes.values())

    async def toggle_favorite(self, note_id: str) -> bool:
        """Flip a note's favorite flag. Returns False for unknown ids."""
        note = self._notes.get(note_id)
        if note is None:
            return False
        return await self.update(
            note.model_copy(update={"is_favorite": not note.is_favorite})
        )

    async def add_tag(self, note_id: str, tag: str) -> bool:
        note = self._notes.get(note_id)
        if note is None:
            return False
        return await self.update(note.model_copy(update={"tags": [*note.tags, tag]}))

    async def remove_tag(self, note_id: str, tag: str) -> bool:
        note = self._notes.get(note_id)
        if note is None:
            return False
        return await self.update(
            note.model_copy(update={"tags": [t for t in note.tags if t != tag]})
        )

    def get_all_tags(self) -> List[Dict[str, Any]]:
        """Tag usage counts, most used first, then alphabetical."""
        counts = Counter(tag for note in self._notes.values() for tag in note.tags)
        return [
            {"name": name, "count": count}
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def import_note(
        self, data: Union[str, Mapping[str, Any]], fmt: str = "json"
    ) -> Note:
        """Create a new note from exported json or markdown.

        The note gets a fresh id and timestamps.

        Raises:
            ValidationError: On an unsupported format or unparseable data.
        """
        fields = parse_note_import(data, fmt)
        return self.create(
            title=fields["title"],
            content=fields["content"],
            tags=fields["tags"],
            color=fields["color"] or DEFAULT_COLOR,
        )

    def mark_synced(self, note_id: str, modified_at: datetime.datetime) -> bool:
        """Record that the given version of a note reached the remote.

        Ignored if the note was edited after that version was pushed.
        """
        note = self._notes.get(note_id)
        if note is None or note.modified_at != ensure_timezone_aware(modified_at):
            return False
        note.synced = True
        return True

    # =========================================================================
    # Query
    # =========================================================================

    def query(
        self,
        quick_filter: Union[QuickFilter, str] = QuickFilter.ALL,
        folder_id: Optional[str] = None,
        tag: Optional[str] = None,
        search_text: Optional[str] = None,
        sort: Union[SortKey, str] = SortKey.MODIFIED,
        now: Optional[datetime.datetime] = None,
    ) -> List[Note]:
        """Filter and sort the in-memory notes.

        Filters apply in order: quick filter, folder, tag, then a
        case-insensitive substring match over title, plain-text content and
        tags. Sorting is stable, so ties keep insertion order.
        """
        quick_filter = _coerce_choice(QuickFilter, quick_filter, "quick_filter")
        sort = _coerce_choice(SortKey, sort, "sort")
        notes = list(self._notes.values())

        with timed_operation(
            "query", quick_filter=quick_filter.value, sort=sort.value
        ) as op:
            if quick_filter is QuickFilter.RECENT:
                cutoff = ensure_timezone_aware(now) if now else utc_now()
                cutoff -= datetime.timedelta(days=self.config.recent_days)
                notes = [n for n in notes if n.modified_at >= cutoff]
            elif quick_filter is QuickFilter.FAVORITES:
                notes = [n for n in notes if n.is_favorite]
            elif quick_filter is QuickFilter.SHARED:
                notes = [n for n in notes if n.is_shared]

            if folder_id:
                notes = [n for n in notes if n.folder_id == folder_id]
            if tag:
                notes = [n for n in notes if tag in n.tags]

            needle = search_text.strip().casefold() if search_text else ""
            if needle:
                notes = [
                    n for n in notes
                    if needle in n.title.casefold()
                    or needle in strip_html(n.content).casefold()
                    or any(needle in t.casefold() for t in n.tags)
                ]

            if sort is SortKey.MODIFIED:
                notes.sort(key=lambda n: n.modified_at, reverse=True)
            elif sort is SortKey.CREATED:
                notes.sort(key=lambda n: n.created_at, reverse=True)
            elif sort is SortKey.TITLE:
                notes.sort(key=lambda n: n.title.casefold())
            elif sort is SortKey.FOLDER:
                notes.sort(key=lambda n: self.get_folder_name(n.folder_id).casefold())

            op["result_count"] = len(notes)
            return notes

    # =========================================================================
    # Folders
    # =========================================================================

    @traced("create_folder")
    def create_folder(
        self,
        name: str,
        parent_id: Optional[str] = None,
        color: str = DEFAULT_COLOR,
    ) -> Folder:
        """Create a folder in memory and schedule its persistence.

        Like ``create``, this returns immediately; the folder is saved by
        the background flusher together with any pending notes.

        Raises:
            ValidationError: If the name is empty.
        """
        now = utc_now()
        folder = validate_folder(
            {
                "id": generate_id("folder"),
                "name": name,
                "parent_id": parent_id,
                "color": color,
                "created_at": now,
                "modified_at": now,
            },
            strict=True,
            folder_ids=self._folders.keys(),
        )
        self._folders[folder.id] = folder
        self._mark_folder_pending(folder.id)
        self._schedule_flush()
        logger.debug(f"Created folder {folder.id}")
        return folder

    @traced("update_folder")
    async def update_folder(self, folder: Folder) -> bool:
        """Replace and persist a folder. Returns False for unknown ids.

        Raises:
            NotekeepError: If the store write failed; the in-memory copy is
                kept and saved by the next flush.
        """
        current = self._folders.get(folder.id)
        if current is None:
            return False
        data = folder.model_dump()
        data["created_at"] = current.created_at
        data["modified_at"] = max(utc_now(), current.modified_at)
        updated = validate_folder(data, strict=True, folder_ids=self._folders.keys())
        self._folders[folder.id] = updated
        generation = self._mark_folder_pending(folder.id)
        await self.store.put(Collection.FOLDERS, updated.to_record())
        self._settle_folder(folder.id, generation)
        return True

    @traced("delete_folder")
    async def delete_folder(self, folder_id: str) -> bool:
        """Delete a folder and detach its member notes and sub-folders.

        Member notes keep existing with ``folder_id = None``; the detached
        notes and folders are persisted in one transaction.

        Returns:
            False if no folder with that id exists.
        """
        folder = self._folders.pop(folder_id, None)
        if folder is None:
            return False
        self._pending_folders.pop(folder_id, None)
        if self._load_in_progress:
            self._folders_deleted_during_load.add(folder_id)

        detached_notes: List[Note] = []
        for note_id, note in self._notes.items():
            if note.folder_id == folder_id:
                detached = self._touched(note, folder_id=None)
                self._notes[note_id] = detached
                detached_notes.append(detached)

        detached_folders: List[Folder] = []
        now = utc_now()
        for child_id, child in self._folders.items():
            if child.parent_id == folder_id:
                moved = child.model_copy(
                    update={"parent_id": None, "modified_at": max(now, child.modified_at)}
                )
                self._folders[child_id] = moved
                detached_folders.append(moved)

        generations = {note.id: self._mark_pending(note.id) for note in detached_notes}
        await self._wait_for_save()
        await self.store.delete(Collection.FOLDERS, folder_id)
        await self.store.save_many(
            [self._record(note) for note in detached_notes],
            [child.to_record() for child in detached_folders],
        )
        for note_id, generation in generations.items():
            self._settle(note_id, generation)

        logger.info(
            f"Deleted folder {folder_id}; detached {len(detached_notes)} notes "
            f"and {len(detached_folders)} sub-folders"
        )
        return True

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        return self._folders.get(folder_id)

    def get_folder_name(self, folder_id: Optional[str]) -> str:
        """Folder display name, or an empty string for none/unknown."""
        folder = self._folders.get(folder_id) if folder_id else None
        return folder.name if folder else ""

    def get_folders(self) -> List[FolderSummary]:
        """All folders with their derived note counts."""
        counts = Counter(
            note.folder_id for note in self._notes.values() if note.folder_id
        )
        return [
            FolderSummary(folder=folder, note_count=counts.get(folder.id, 0))
            for folder in self._folders.values()
        ]

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate counts over the in-memory collections."""
        notes = list(self._notes.values())
        created = [note.created_at for note in notes]
        return {
            "total_notes": len(notes),
            "total_words": sum(count_words(note.content) for note in notes),
            "total_folders": len(self._folders),
            "total_tags": len(self.get_all_tags()),
            "favorite_notes": sum(1 for note in notes if note.is_favorite),
            "shared_notes": sum(1 for note in notes if note.is_shared),
            "unsynced_notes": sum(1 for note in notes if not note.synced),
            "pending_notes": len(self._pending),
            "oldest_note": min(created).isoformat() if created else None,
            "newest_note": max(created).isoformat() if created else None,
        }
