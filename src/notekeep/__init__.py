"""
notekeep - a local-first personal note store.

This package implements the storage and consistency engine behind a note
organizer: a transactional SQLite-backed store, an in-memory repository that
validates every entity crossing the store boundary, an advanced search engine,
and a best-effort background sync queue.

All I/O runs on a single asyncio event loop.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notekeep")
except PackageNotFoundError:
    __version__ = "0.3.0"
