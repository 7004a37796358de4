"""SQLAlchemy database models for the notekeep store."""
import logging
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, event, inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Bumped whenever the table layout changes; stored in PRAGMA user_version
SCHEMA_VERSION = 1

# Create base class for SQLAlchemy models
Base = declarative_base()


class Collection(str, Enum):
    """Named record collections held by the store."""

    NOTES = "notes"
    FOLDERS = "folders"
    SETTINGS = "settings"


class DBNote(Base):
    """Database model for a note.

    The full record lives in ``data``; the other columns are secondary
    indexes kept in step with it on every write.
    """
    __tablename__ = "notes"
    id = Column(String(255), primary_key=True)
    title = Column(String(500), nullable=False, default="", index=True)
    # Naive UTC, so range comparisons sort correctly in SQLite
    created_at = Column(DateTime, nullable=False, index=True)
    modified_at = Column(DateTime, nullable=False, index=True)
    folder_id = Column(String(255), nullable=True, index=True)
    data = Column(JSON, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBNoteTag(Base):
    """Multi-entry tag index: one row per (note, tag) pair."""
    __tablename__ = "note_tags"
    note_id = Column(
        String(255), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True
    )
    tag = Column(String(50), primary_key=True, index=True)

    def __repr__(self) -> str:
        return f"<NoteTag(note_id='{self.note_id}', tag='{self.tag}')>"


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(String(255), primary_key=True)
    name = Column(String(500), nullable=False, index=True)
    parent_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, index=True)
    modified_at = Column(DateTime, nullable=False)
    data = Column(JSON, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of folder."""
        return f"<Folder(id='{self.id}', name='{self.name}')>"


class DBSetting(Base):
    """Key/value settings record (search history, filters, last backup)."""
    __tablename__ = "settings"
    key = Column(String(255), primary_key=True)
    value = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Setting(key='{self.key}')>"


def install_pragmas(engine: AsyncEngine) -> None:
    """Apply SQLite hardening PRAGMAs on every new DBAPI connection.

    - WAL journal so a crash mid-write cannot corrupt committed data
    - NORMAL synchronous mode
    - foreign keys on, so tag rows follow their note on delete
    """

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _create_schema(sync_conn) -> None:
    """Create any missing tables and indexes, then stamp the schema version.

    Idempotent: existing tables are kept, and only the indexes they lack
    are added, so a partially initialized database is completed in place.
    """
    inspector = inspect(sync_conn)
    existing = set(inspector.get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing]
    if missing:
        logger.info(
            "Creating tables: %s", ", ".join(table.name for table in missing)
        )
        Base.metadata.create_all(sync_conn, tables=missing)

    for table in Base.metadata.sorted_tables:
        if table.name not in existing:
            continue
        present = {index["name"] for index in inspector.get_indexes(table.name)}
        for index in sorted(table.indexes, key=lambda i: i.name):
            if index.name not in present:
                logger.info("Creating index %s on %s", index.name, table.name)
                index.create(sync_conn, checkfirst=True)

    current = sync_conn.execute(text("PRAGMA user_version")).scalar() or 0
    if current < SCHEMA_VERSION:
        sync_conn.execute(text(f"PRAGMA user_version = {SCHEMA_VERSION}"))
        logger.info("Schema upgraded from version %d to %d", current, SCHEMA_VERSION)


async def init_db(engine: AsyncEngine) -> None:
    """Ensure the schema exists on the given engine."""
    async with engine.begin() as conn:
        await conn.run_sync(_create_schema)
