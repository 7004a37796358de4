"""Transactional persistent store for notes, folders and settings.

A thin asynchronous layer over SQLite (SQLAlchemy asyncio + aiosqlite).
Records are plain JSON dicts; the store never validates them beyond
requiring a key. Every public operation runs in exactly one transaction
that either commits fully or rolls back.
"""

import asyncio
import datetime
import logging
from contextlib import asynccontextmanager
from datetime import timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Dict, Iterable, List, Optional, TypeVar, Union

from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.exc import DBAPIError, NoSuchModuleError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from notekeep.config import NotekeepConfig
from notekeep.config import config as default_config
from notekeep.exceptions import (
    ErrorCode,
    NotekeepError,
    OperationTimeoutError,
    StoreConnectionError,
    TransactionError,
    ValidationError,
)
from notekeep.models.db_models import (
    SCHEMA_VERSION,
    Collection,
    DBFolder,
    DBNote,
    DBNoteTag,
    DBSetting,
    init_db,
    install_pragmas,
)
from notekeep.models.schema import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Secondary lookups available per collection
NOTE_INDEXES = {
    "title": DBNote.title,
    "created_at": DBNote.created_at,
    "modified_at": DBNote.modified_at,
    "folder_id": DBNote.folder_id,
}
FOLDER_INDEXES = {
    "name": DBFolder.name,
    "parent_id": DBFolder.parent_id,
    "created_at": DBFolder.created_at,
}
RANGE_INDEXES = {"created_at", "modified_at"}


async def run_with_timeout(
    awaitable: Awaitable[T], timeout: float, operation: str
) -> T:
    """Await with a time bound without cancelling the underlying work.

    Raises:
        OperationTimeoutError: If the bound elapses first. The shielded
            operation keeps running in the background.
    """
    try:
        return await asyncio.wait_for(asyncio.shield(awaitable), timeout=timeout)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout) from None


def _to_db_time(value: Any) -> datetime.datetime:
    """Convert a record timestamp to naive UTC for the indexed columns."""
    parsed = parse_timestamp(value) or utc_now()
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _collection(value: Union[Collection, str]) -> Collection:
    try:
        return Collection(value)
    except ValueError:
        raise ValidationError(
            f"Unknown collection: {value}",
            field="collection",
            value=value,
            code=ErrorCode.INVALID_ENTITY_TYPE,
        ) from None


class NoteStore:
    """Persistent key-addressed store with notes, folders and settings.

    One engine per store; the store is shared by every component that needs
    durability. Open it with ``await store.open()`` or
    ``await NoteStore.open_or_create(config)``.
    """

    def __init__(self, config: Optional[NotekeepConfig] = None):
        self.config = config or default_config
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._connected = False
        self._open_lock = asyncio.Lock()

    @classmethod
    async def open_or_create(
        cls, config: Optional[NotekeepConfig] = None
    ) -> "NoteStore":
        """Create a store and open it, creating the schema on first use."""
        store = cls(config)
        await store.open()
        return store

    @property
    def is_open(self) -> bool:
        return self._connected and self.session_factory is not None

    @property
    def database_path(self) -> Path:
        return self.config.get_absolute_path(self.config.database_path)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def open(self) -> "NoteStore":
        """Open the store, retrying with linear backoff.

        The first attempt is followed by up to ``connect_retries`` retries,
        sleeping ``connect_retry_delay * attempt`` seconds before each. Every
        attempt is bounded by ``open_timeout``.

        Raises:
            StoreConnectionError: If every attempt failed, or the SQLite
                driver is not available.
        """
        async with self._open_lock:
            if self.is_open:
                return self

            attempts = self.config.connect_retries + 1
            last_error: Optional[BaseException] = None
            for attempt in range(1, attempts + 1):
                try:
                    await asyncio.wait_for(
                        self._connect(), timeout=self.config.open_timeout
                    )
                    logger.info(
                        "Store opened at %s (attempt %d)", self.database_path, attempt
                    )
                    return self
                except (NoSuchModuleError, ImportError) as e:
                    await self._dispose()
                    raise StoreConnectionError(
                        "SQLite async driver is not available",
                        operation="open",
                        attempts=attempt,
                        code=ErrorCode.STORE_UNSUPPORTED,
                        original_error=e,
                    ) from e
                except (asyncio.TimeoutError, SQLAlchemyError, OSError) as e:
                    last_error = e
                    await self._dispose()
                    if attempt < attempts:
                        delay = self.config.connect_retry_delay * attempt
                        logger.warning(
                            "Store open attempt %d/%d failed: %s; retrying in %.1fs",
                            attempt,
                            attempts,
                            str(e) or type(e).__name__,
                            delay,
                        )
                        await asyncio.sleep(delay)

            logger.error("Store open failed after %d attempts: %s", attempts, last_error)
            raise StoreConnectionError(
                f"Failed to open store after {attempts} attempts",
                operation="open",
                attempts=attempts,
                original_error=last_error if isinstance(last_error, Exception) else None,
            )

    async def _connect(self) -> None:
        engine = create_async_engine(self.config.get_db_url())
        self.engine = engine
        install_pragmas(engine)
        await init_db(engine)
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._connected = True

    async def _dispose(self) -> None:
        self._connected = False
        self.session_factory = None
        if self.engine is not None:
            engine, self.engine = self.engine, None
            await engine.dispose()

    async def close(self) -> None:
        """Dispose the engine. Later operations raise StoreConnectionError."""
        await self._dispose()
        logger.debug("Store closed")

    @asynccontextmanager
    async def _transaction(
        self,
        operation: str,
        collection: Optional[Collection] = None,
        code: ErrorCode = ErrorCode.TRANSACTION_WRITE_FAILED,
    ) -> AsyncIterator[AsyncSession]:
        """Run the block in one transaction, mapping driver errors.

        Any exception inside the block rolls the transaction back.
        """
        if not self.is_open:
            raise StoreConnectionError(
                "Store is not open",
                operation=operation,
                code=ErrorCode.STORE_CONNECTION_LOST,
            )
        collection_name = collection.value if collection else None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except NotekeepError:
            raise
        except DBAPIError as e:
            if e.connection_invalidated:
                self._connected = False
                logger.error("Store connection lost during %s: %s", operation, e)
                raise StoreConnectionError(
                    f"Store connection lost during {operation}",
                    operation=operation,
                    code=ErrorCode.STORE_CONNECTION_LOST,
                    original_error=e,
                ) from e
            raise TransactionError(
                f"Transaction failed during {operation}",
                operation=operation,
                collection=collection_name,
                code=code,
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            raise TransactionError(
                f"Transaction failed during {operation}",
                operation=operation,
                collection=collection_name,
                code=code,
                original_error=e,
            ) from e

    # =========================================================================
    # Record writes (caller owns the session)
    # =========================================================================

    @staticmethod
    def _require_key(record: Any, collection: Collection, key: str = "id") -> str:
        value = record.get(key) if isinstance(record, dict) else None
        if not isinstance(value, str) or not value:
            raise TransactionError(
                f"Record without '{key}' cannot be stored",
                operation="put",
                collection=collection.value,
            )
        return value

    async def _write_note(self, session: AsyncSession, record: Dict[str, Any]) -> None:
        note_id = self._require_key(record, Collection.NOTES)
        values = {
            "title": record.get("title") or "",
            "created_at": _to_db_time(record.get("created_at")),
            "modified_at": _to_db_time(record.get("modified_at")),
            "folder_id": record.get("folder_id"),
            "data": record,
        }
        db_note = await session.get(DBNote, note_id)
        if db_note:
            for attr, value in values.items():
                setattr(db_note, attr, value)
        else:
            session.add(DBNote(id=note_id, **values))
        await session.flush()

        # Tags: clear + rebuild
        await session.execute(delete(DBNoteTag).where(DBNoteTag.note_id == note_id))
        tags = list(dict.fromkeys(
            tag for tag in record.get("tags") or [] if isinstance(tag, str) and tag
        ))
        if tags:
            await session.execute(
                insert(DBNoteTag), [{"note_id": note_id, "tag": tag} for tag in tags]
            )

    async def _write_folder(
        self, session: AsyncSession, record: Dict[str, Any]
    ) -> None:
        folder_id = self._require_key(record, Collection.FOLDERS)
        values = {
            "name": record.get("name") or "",
            "parent_id": record.get("parent_id"),
            "created_at": _to_db_time(record.get("created_at")),
            "modified_at": _to_db_time(record.get("modified_at")),
            "data": record,
        }
        db_folder = await session.get(DBFolder, folder_id)
        if db_folder:
            for attr, value in values.items():
                setattr(db_folder, attr, value)
        else:
            session.add(DBFolder(id=folder_id, **values))

    async def _write_setting(self, session: AsyncSession, key: str, value: Any) -> None:
        db_setting = await session.get(DBSetting, key)
        if db_setting:
            db_setting.value = value
        else:
            session.add(DBSetting(key=key, value=value))

    async def _write(
        self, session: AsyncSession, collection: Collection, record: Dict[str, Any]
    ) -> None:
        if collection is Collection.NOTES:
            await self._write_note(session, record)
        elif collection is Collection.FOLDERS:
            await self._write_folder(session, record)
        else:
            key = self._require_key(record, collection, key="key")
            await self._write_setting(session, key, record.get("value"))

    # =========================================================================
    # Core operations
    # =========================================================================

    async def put(self, collection: Union[Collection, str], record: Dict[str, Any]) -> None:
        """Insert or replace one record.

        Settings records are ``{"key": ..., "value": ...}``.

        Raises:
            TransactionError: If the record has no key or the write failed.
            StoreConnectionError: If the store is not open.
        """
        coll = _collection(collection)
        async with self._transaction("put", coll) as session:
            await self._write(session, coll, record)

    async def get(
        self, collection: Union[Collection, str], record_id: str
    ) -> Optional[Any]:
        """Fetch one record by key, or None if absent."""
        coll = _collection(collection)
        async with self._transaction(
            "get", coll, ErrorCode.TRANSACTION_READ_FAILED
        ) as session:
            if coll is Collection.NOTES:
                row = await session.get(DBNote, record_id)
            elif coll is Collection.FOLDERS:
                row = await session.get(DBFolder, record_id)
            else:
                row = await session.get(DBSetting, record_id)
                return row.value if row else None
            return dict(row.data) if row else None

    async def get_all(self, collection: Union[Collection, str]) -> List[Dict[str, Any]]:
        """Fetch every record of a collection, oldest first.

        Settings come back as ``{"key": ..., "value": ...}`` records.
        """
        coll = _collection(collection)
        async with self._transaction(
            "get_all", coll, ErrorCode.TRANSACTION_READ_FAILED
        ) as session:
            if coll is Collection.SETTINGS:
                rows = (await session.execute(select(DBSetting))).scalars().all()
                return [{"key": row.key, "value": row.value} for row in rows]
            model = DBNote if coll is Collection.NOTES else DBFolder
            rows = (
                await session.execute(
                    select(model).order_by(model.created_at, model.id)
                )
            ).scalars().all()
            return [dict(row.data) for row in rows]

    async def delete(self, collection: Union[Collection, str], record_id: str) -> bool:
        """Remove one record. Deleting a missing key is a no-op.

        Returns:
            True if a record was removed.
        """
        coll = _collection(collection)
        async with self._transaction(
            "delete", coll, ErrorCode.TRANSACTION_DELETE_FAILED
        ) as session:
            if coll is Collection.NOTES:
                await session.execute(
                    delete(DBNoteTag).where(DBNoteTag.note_id == record_id)
                )
                result = await session.execute(
                    delete(DBNote).where(DBNote.id == record_id)
                )
            elif coll is Collection.FOLDERS:
                result = await session.execute(
                    delete(DBFolder).where(DBFolder.id == record_id)
                )
            else:
                result = await session.execute(
                    delete(DBSetting).where(DBSetting.key == record_id)
                )
            return bool(result.rowcount)

    async def save_many(
        self,
        notes: Iterable[Dict[str, Any]] = (),
        folders: Iterable[Dict[str, Any]] = (),
    ) -> int:
        """Upsert notes and folders in a single transaction.

        Either every record is written or none is.

        Returns:
            Number of records written.

        Raises:
            TransactionError: If any write failed; nothing was committed.
        """
        written = 0
        async with self._transaction("save_many") as session:
            for record in folders:
                await self._write_folder(session, record)
                written += 1
            for record in notes:
                await self._write_note(session, record)
                written += 1
        logger.debug("save_many committed %d records", written)
        return written

    # =========================================================================
    # Secondary lookups
    # =========================================================================

    async def find_by(
        self, collection: Union[Collection, str], index: str, value: Any
    ) -> List[Dict[str, Any]]:
        """Fetch records whose secondary index equals value.

        Notes support ``title``, ``created_at``, ``modified_at``,
        ``folder_id`` and the multi-valued ``tag`` index; folders support
        ``name``, ``parent_id`` and ``created_at``.
        """
        coll = _collection(collection)
        async with self._transaction(
            "find_by", coll, ErrorCode.TRANSACTION_READ_FAILED
        ) as session:
            if coll is Collection.NOTES and index == "tag":
                stmt = (
                    select(DBNote)
                    .join(DBNoteTag, DBNoteTag.note_id == DBNote.id)
                    .where(DBNoteTag.tag == value)
                    .order_by(DBNote.created_at, DBNote.id)
                )
            else:
                model, column = self._index_column(coll, index)
                if index in RANGE_INDEXES:
                    value = _to_db_time(value)
                condition = column.is_(None) if value is None else column == value
                stmt = select(model).where(condition).order_by(model.created_at, model.id)
            rows = (await session.execute(stmt)).scalars().all()
            return [dict(row.data) for row in rows]

    async def find_range(
        self,
        collection: Union[Collection, str],
        index: str,
        lower: Optional[Any] = None,
        upper: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch records whose time index lies in [lower, upper].

        Either bound may be None for an open range.
        """
        coll = _collection(collection)
        if index not in RANGE_INDEXES:
            raise ValidationError(
                f"Index '{index}' does not support range queries",
                field="index",
                value=index,
            )
        model, column = self._index_column(coll, index)
        stmt = select(model)
        if lower is not None:
            stmt = stmt.where(column >= _to_db_time(lower))
        if upper is not None:
            stmt = stmt.where(column <= _to_db_time(upper))
        stmt = stmt.order_by(column, model.id)

        async with self._transaction(
            "find_range", coll, ErrorCode.TRANSACTION_READ_FAILED
        ) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [dict(row.data) for row in rows]

    @staticmethod
    def _index_column(collection: Collection, index: str):
        if collection is Collection.NOTES and index in NOTE_INDEXES:
            return DBNote, NOTE_INDEXES[index]
        if collection is Collection.FOLDERS and index in FOLDER_INDEXES:
            return DBFolder, FOLDER_INDEXES[index]
        raise ValidationError(
            f"Unknown index '{index}' for collection '{collection.value}'",
            field="index",
            value=index,
        )

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_setting(self, key: str, default: Any = None) -> Any:
        value = await self.get(Collection.SETTINGS, key)
        return default if value is None else value

    async def put_setting(self, key: str, value: Any) -> None:
        async with self._transaction("put_setting", Collection.SETTINGS) as session:
            await self._write_setting(session, key, value)

    async def get_all_settings(self) -> Dict[str, Any]:
        return {
            record["key"]: record["value"]
            for record in await self.get_all(Collection.SETTINGS)
        }

    # =========================================================================
    # Sync and maintenance
    # =========================================================================

    async def mark_synced(
        self, note_id: str, expected_modified_at: datetime.datetime
    ) -> bool:
        """Flag a stored note as synced if it is still the pushed version.

        Compare-and-set on ``modified_at``: a note edited after it was read
        for pushing keeps ``synced = False``.

        Returns:
            True if the note is now synced or no longer exists, False if a
            newer version was stored meanwhile.
        """
        async with self._transaction("mark_synced", Collection.NOTES) as session:
            db_note = await session.get(DBNote, note_id)
            if db_note is None:
                return True
            stored = parse_timestamp(db_note.data.get("modified_at"))
            expected = parse_timestamp(expected_modified_at)
            if stored is None or expected is None or stored != expected:
                logger.debug("Note %s changed since push; left unsynced", note_id)
                return False
            # Reassign so the JSON column is flagged as modified
            db_note.data = {**db_note.data, "synced": True}
            return True

    async def count(self, collection: Union[Collection, str]) -> int:
        coll = _collection(collection)
        model = {
            Collection.NOTES: DBNote,
            Collection.FOLDERS: DBFolder,
            Collection.SETTINGS: DBSetting,
        }[coll]
        async with self._transaction(
            "count", coll, ErrorCode.TRANSACTION_READ_FAILED
        ) as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    async def clear_all(self) -> None:
        """Delete every record from every collection in one transaction."""
        async with self._transaction(
            "clear_all", code=ErrorCode.TRANSACTION_DELETE_FAILED
        ) as session:
            for model in (DBNoteTag, DBNote, DBFolder, DBSetting):
                await session.execute(delete(model))
        logger.info("Store cleared")

    async def replace_all(
        self,
        notes: Iterable[Dict[str, Any]],
        folders: Iterable[Dict[str, Any]],
        settings: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Atomically replace the whole store contents.

        Returns:
            Number of records written.
        """
        written = 0
        async with self._transaction("replace_all") as session:
            for model in (DBNoteTag, DBNote, DBFolder, DBSetting):
                await session.execute(delete(model))
            await session.flush()
            for record in folders:
                await self._write_folder(session, record)
                written += 1
            for record in notes:
                await self._write_note(session, record)
                written += 1
            for key, value in (settings or {}).items():
                await self._write_setting(session, key, value)
                written += 1
        logger.info("Store contents replaced with %d records", written)
        return written

    async def health_check(self) -> Dict[str, Any]:
        """Check SQLite integrity and report record counts.

        Never raises: problems are reported in ``issues``.

        Returns:
            Dict with keys healthy, connected, sqlite_ok, schema_version,
            note_count, folder_count and issues.
        """
        issues: List[str] = []
        sqlite_ok = False
        schema_version = None
        note_count = folder_count = 0

        try:
            async with self._transaction(
                "health_check", code=ErrorCode.TRANSACTION_READ_FAILED
            ) as session:
                result = (await session.execute(text("PRAGMA integrity_check"))).fetchone()
                sqlite_ok = result is not None and result[0] == "ok"
                if not sqlite_ok:
                    issues.append(f"SQLite integrity check failed: {result[0] if result else 'no result'}")
                schema_version = (
                    await session.execute(text("PRAGMA user_version"))
                ).scalar()
                note_count = (
                    await session.execute(select(func.count()).select_from(DBNote))
                ).scalar_one()
                folder_count = (
                    await session.execute(select(func.count()).select_from(DBFolder))
                ).scalar_one()
        except NotekeepError as e:
            issues.append(e.message)

        if schema_version is not None and schema_version != SCHEMA_VERSION:
            issues.append(
                f"Schema version {schema_version} differs from expected {SCHEMA_VERSION}"
            )

        return {
            "healthy": sqlite_ok and not issues,
            "connected": self.is_open,
            "sqlite_ok": sqlite_ok,
            "schema_version": schema_version,
            "note_count": note_count,
            "folder_count": folder_count,
            "issues": issues,
        }

    async def get_statistics(self) -> Dict[str, Any]:
        """Record counts per collection plus the database file size."""
        db_path = self.database_path
        return {
            "notes": await self.count(Collection.NOTES),
            "folders": await self.count(Collection.FOLDERS),
            "settings": await self.count(Collection.SETTINGS),
            "database_path": str(db_path),
            "database_size_bytes": db_path.stat().st_size if db_path.exists() else 0,
        }
