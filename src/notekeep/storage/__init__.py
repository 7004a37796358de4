"""Storage layer for the notekeep store."""

from notekeep.storage.note_repository import NoteRepository
from notekeep.storage.note_store import NoteStore

__all__ = [
    "NoteRepository",
    "NoteStore",
]
