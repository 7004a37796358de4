"""Background sync of unsynchronized notes to a remote endpoint.

Each cycle reads every stored note, pushes the ones not yet synced one at a
time and flags successes in the store. A failed push leaves the note
unsynced for the next cycle; nothing here raises to the caller.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from notekeep.config import NotekeepConfig
from notekeep.config import config as default_config
from notekeep.exceptions import SyncError
from notekeep.models.db_models import Collection
from notekeep.models.schema import parse_timestamp, utc_now
from notekeep.storage.note_store import NoteStore, run_with_timeout

logger = logging.getLogger(__name__)

SyncedCallback = Callable[[str, datetime], Any]


class SyncState(str, Enum):
    """Per-note position in the sync state machine."""

    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"


class PushOutcome(str, Enum):
    """Result of pushing a single note."""

    SYNCED = "synced"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass
class SyncReport:
    """Outcome of one sync cycle."""

    synced: int = 0
    failed: int = 0
    # accepted by the remote but edited locally meanwhile; still unsynced
    superseded: int = 0
    total: int = 0
    skipped: bool = False  # another cycle was already running
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "superseded": self.superseded,
            "total": self.total,
            "skipped": self.skipped,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class RemoteEndpoint(ABC):
    """Destination for pushed notes."""

    @abstractmethod
    async def push_note(self, note_id: str, record: Dict[str, Any]) -> None:
        """Push one note record.

        Raises:
            SyncError: If the remote rejected or failed to receive the note.
        """


class SimulatedRemote(RemoteEndpoint):
    """Stand-in remote with random latency and random failures."""

    def __init__(
        self,
        min_latency: float = 0.5,
        max_latency: float = 1.5,
        failure_rate: float = 0.1,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()
        self.pushed: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_config(
        cls, config: Optional[NotekeepConfig] = None, rng: Optional[random.Random] = None
    ) -> "SimulatedRemote":
        config = config or default_config
        return cls(
            min_latency=config.sync_min_latency,
            max_latency=config.sync_max_latency,
            failure_rate=config.sync_failure_rate,
            rng=rng,
        )

    async def push_note(self, note_id: str, record: Dict[str, Any]) -> None:
        await asyncio.sleep(self._rng.uniform(self.min_latency, self.max_latency))
        if self._rng.random() < self.failure_rate:
            raise SyncError("Simulated network failure", note_id=note_id)
        self.pushed[note_id] = record


class SyncService:
    """Pushes unsynced notes from the store to a remote endpoint.

    Cycles run on explicit request (``run_cycle`` / ``request_sync``) or
    periodically after ``start``. At most one cycle runs at a time.
    """

    def __init__(
        self,
        store: NoteStore,
        remote: Optional[RemoteEndpoint] = None,
        config: Optional[NotekeepConfig] = None,
        on_synced: Optional[SyncedCallback] = None,
    ) -> None:
        self.config = config or default_config
        self._store = store
        self._remote = remote or SimulatedRemote.from_config(self.config)
        self._on_synced = on_synced
        self._states: Dict[str, SyncState] = {}
        self._running = False
        self._rerun = False
        self._request_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._last_report: Optional[SyncReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    def get_state(self, note_id: str) -> SyncState:
        return self._states.get(note_id, SyncState.UNSYNCED)

    def get_status(self) -> Dict[str, Any]:
        """Get sync status information."""
        counts = {state.value: 0 for state in SyncState}
        for state in self._states.values():
            counts[state.value] += 1
        return {
            "running": self._running,
            "periodic": self._periodic_task is not None and not self._periodic_task.done(),
            "states": counts,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> SyncReport:
        """Run one sync cycle. Never raises.

        Returns:
            The cycle report; ``skipped`` is set if a cycle was already
            running, ``error`` if the cycle could not read the store.
        """
        if self._running:
            logger.debug("Sync cycle already running; skipping")
            return SyncReport(skipped=True, finished_at=utc_now())

        self._running = True
        report = SyncReport()
        try:
            if not self._store.is_open:
                await run_with_timeout(
                    self._store.open(), self.config.open_timeout, "open"
                )
            records = await run_with_timeout(
                self._store.get_all(Collection.NOTES),
                self.config.query_timeout,
                "get_all",
            )
            unsynced = [
                record for record in records
                if isinstance(record, dict) and record.get("id") and not record.get("synced")
            ]
            report.total = len(unsynced)
            for record in unsynced:
                outcome = await self._push(record)
                if outcome is PushOutcome.SYNCED:
                    report.synced += 1
                elif outcome is PushOutcome.SUPERSEDED:
                    report.superseded += 1
                else:
                    report.failed += 1
        except Exception as e:
            report.error = str(e) or type(e).__name__
            logger.error("Sync cycle failed: %s", report.error)
        finally:
            self._running = False
            report.finished_at = utc_now()
            self._last_report = report

        if report.total:
            logger.info(
                "Sync cycle finished: %d synced, %d failed, %d superseded of %d",
                report.synced,
                report.failed,
                report.superseded,
                report.total,
            )
        return report

    async def _push(self, record: Dict[str, Any]) -> PushOutcome:
        """Push one note and flag it synced if it is still the pushed version."""
        note_id = record["id"]
        pushed_version = parse_timestamp(record.get("modified_at"))
        self._states[note_id] = SyncState.SYNCING
        try:
            await self._remote.push_note(note_id, record)
            confirmed = await self._store.mark_synced(note_id, pushed_version)
        except Exception as e:
            self._states[note_id] = SyncState.UNSYNCED
            logger.warning("Push of note %s failed: %s", note_id, e)
            return PushOutcome.FAILED

        # A newer local edit keeps the note queued for the next cycle
        self._states[note_id] = SyncState.SYNCED if confirmed else SyncState.UNSYNCED
        if confirmed and self._on_synced is not None and pushed_version is not None:
            try:
                self._on_synced(note_id, pushed_version)
            except Exception as e:
                logger.error("on_synced callback failed for %s: %s", note_id, e)
        return PushOutcome.SYNCED if confirmed else PushOutcome.SUPERSEDED

    # =========================================================================
    # Scheduling
    # =========================================================================

    def request_sync(self) -> asyncio.Task:
        """Schedule a cycle on the running loop.

        Requests made while a scheduled cycle runs are coalesced into one
        follow-up cycle.

        Raises:
            RuntimeError: If called outside a running event loop.
        """
        if self._request_task is not None and not self._request_task.done():
            self._rerun = True
            return self._request_task
        loop = asyncio.get_running_loop()
        self._request_task = loop.create_task(self._run_requested())
        return self._request_task

    async def _run_requested(self) -> SyncReport:
        while True:
            self._rerun = False
            report = await self.run_cycle()
            if not self._rerun:
                return report

    def start(self, interval: Optional[float] = None) -> None:
        """Run a cycle every interval seconds until ``shutdown``."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._stop.clear()
        self._periodic_task = asyncio.get_running_loop().create_task(
            self._run_periodic(interval or self.config.sync_interval)
        )
        logger.info("Periodic sync started (every %.1fs)", interval or self.config.sync_interval)

    async def _run_periodic(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.run_cycle()

    async def shutdown(self) -> None:
        """Stop periodic syncing and wait for any running cycle to finish."""
        self._stop.set()
        for task in (self._periodic_task, self._request_task):
            if task is not None and not task.done():
                await task
        self._periodic_task = None
        logger.info("SyncService shut down")
