"""Tests for the background sync queue."""
import asyncio
import random

import pytest

from notekeep.exceptions import SyncError
from notekeep.models.db_models import Collection
from notekeep.services.sync_service import (
    SimulatedRemote,
    SyncReport,
    SyncService,
    SyncState,
)
from tests.fakes import FailingStore, FakeRemote, SlowStore


@pytest.mark.anyio
class TestRunCycle:
    """One sync cycle at a time."""

    async def test_pushes_unsynced_notes(self, repository, store, test_config):
        first = repository.create(title="First")
        second = repository.create(title="Second")
        await repository.flush()

        remote = FakeRemote()
        sync = SyncService(store, remote, test_config, on_synced=repository.mark_synced)
        report = await sync.run_cycle()

        assert (report.synced, report.failed, report.total) == (2, 0, 2)
        assert report.ok
        assert remote.pushed == [first.id, second.id]
        assert (await store.get(Collection.NOTES, first.id))["synced"] is True
        assert repository.get_note(first.id).synced is True
        assert sync.get_state(first.id) is SyncState.SYNCED

    async def test_synced_notes_are_not_pushed_again(self, repository, store, test_config):
        repository.create(title="Once")
        await repository.flush()
        remote = FakeRemote()
        sync = SyncService(store, remote, test_config)

        await sync.run_cycle()
        report = await sync.run_cycle()
        assert report.total == 0
        assert len(remote.attempts) == 1

    async def test_partial_failure(self, repository, store, test_config):
        good = repository.create(title="Good")
        bad = repository.create(title="Bad")
        await repository.flush()

        sync = SyncService(store, FakeRemote(fail_ids={bad.id}), test_config)
        report = await sync.run_cycle()

        assert (report.synced, report.failed, report.total) == (1, 1, 2)
        assert not report.ok
        assert report.error is None
        assert (await store.get(Collection.NOTES, good.id))["synced"] is True
        assert (await store.get(Collection.NOTES, bad.id))["synced"] is False
        assert sync.get_state(bad.id) is SyncState.UNSYNCED

        retry = await SyncService(store, FakeRemote(), test_config).run_cycle()
        assert (retry.synced, retry.total) == (1, 1)

    async def test_edit_during_push_stays_unsynced(self, repository, store, test_config):
        note = repository.create(title="Moving target")
        await repository.flush()

        async def edit_while_pushing(note_id, record):
            await asyncio.sleep(0.01)
            await repository.update(
                repository.get_note(note_id).model_copy(update={"title": "Edited"})
            )

        sync = SyncService(
            store,
            FakeRemote(on_push=edit_while_pushing),
            test_config,
            on_synced=repository.mark_synced,
        )
        report = await sync.run_cycle()

        assert (report.synced, report.superseded, report.failed) == (0, 1, 0)
        assert report.to_dict()["superseded"] == 1
        assert (await store.get(Collection.NOTES, note.id))["synced"] is False
        assert repository.get_note(note.id).synced is False
        assert sync.get_state(note.id) is SyncState.UNSYNCED

    async def test_note_deleted_during_push(self, repository, store, test_config):
        note = repository.create(title="Vanishing")
        await repository.flush()

        async def delete_while_pushing(note_id, record):
            await repository.delete(note_id)

        sync = SyncService(store, FakeRemote(on_push=delete_while_pushing), test_config)
        report = await sync.run_cycle()
        assert report.synced == 1
        assert await store.get(Collection.NOTES, note.id) is None

    async def test_concurrent_cycle_is_skipped(self, repository, store, test_config):
        repository.create(title="Slow")
        await repository.flush()

        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold(note_id, record):
            entered.set()
            await release.wait()

        sync = SyncService(store, FakeRemote(on_push=hold), test_config)
        first = asyncio.ensure_future(sync.run_cycle())
        await entered.wait()

        assert sync.is_running
        second = await sync.run_cycle()
        assert second.skipped is True
        assert second.total == 0

        release.set()
        report = await first
        assert report.synced == 1
        assert not sync.is_running

    async def test_store_failure_never_raises(self, store, test_config):
        failing = FailingStore(store, fail_on={"get_all"}, failures=1)
        report = await SyncService(failing, FakeRemote(), test_config).run_cycle()
        assert report.error is not None
        assert "Injected get_all failure" in report.error
        assert report.total == 0

    async def test_slow_read_times_out(self, store, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "query_timeout", 0.05)
        slow = SlowStore(store, slow_on={"get_all"}, delay=0.2)
        report = await SyncService(slow, FakeRemote(), test_config).run_cycle()
        assert report.error is not None
        assert "timed out" in report.error

        # The read itself was not cancelled
        await asyncio.sleep(0.3)
        assert slow.completed == ["get_all"]

    async def test_reopens_closed_store(self, repository, store, test_config):
        repository.create(title="Reopen")
        await repository.flush()
        await store.close()

        report = await SyncService(store, FakeRemote(), test_config).run_cycle()
        assert store.is_open
        assert report.synced == 1

    async def test_callback_failure_is_contained(self, repository, store, test_config):
        repository.create(title="Callback")
        await repository.flush()

        def broken_callback(note_id, modified_at):
            raise RuntimeError("listener exploded")

        sync = SyncService(store, FakeRemote(), test_config, on_synced=broken_callback)
        report = await sync.run_cycle()
        assert report.synced == 1
        assert report.error is None


@pytest.mark.anyio
class TestScheduling:
    """request_sync, start and shutdown."""

    async def test_requests_are_coalesced(self, repository, store, test_config):
        repository.create(title="Queued")
        await repository.flush()
        sync = SyncService(store, FakeRemote(), test_config)

        task = sync.request_sync()
        assert sync.request_sync() is task
        report = await task
        assert isinstance(report, SyncReport)
        assert sync.last_report is not None

    async def test_periodic_sync(self, repository, store, test_config):
        repository.create(title="Periodic")
        await repository.flush()
        remote = FakeRemote()
        sync = SyncService(store, remote, test_config)

        sync.start(interval=0.02)
        assert sync.get_status()["periodic"] is True
        for _ in range(100):
            if remote.pushed:
                break
            await asyncio.sleep(0.01)
        await sync.shutdown()

        assert len(remote.pushed) == 1
        assert sync.get_status()["periodic"] is False
        assert sync.get_status()["states"]["synced"] == 1

    async def test_shutdown_without_start(self, store, test_config):
        sync = SyncService(store, FakeRemote(), test_config)
        await sync.shutdown()
        assert sync.get_status()["running"] is False


@pytest.mark.anyio
class TestSimulatedRemote:
    """The stand-in remote endpoint."""

    async def test_always_fails_at_rate_one(self):
        remote = SimulatedRemote(0.0, 0.0, failure_rate=1.0)
        with pytest.raises(SyncError):
            await remote.push_note("n1", {"id": "n1"})
        assert remote.pushed == {}

    async def test_never_fails_at_rate_zero(self):
        remote = SimulatedRemote(0.0, 0.0, failure_rate=0.0, rng=random.Random(7))
        await remote.push_note("n1", {"id": "n1"})
        assert remote.pushed == {"n1": {"id": "n1"}}

    async def test_from_config(self, test_config):
        remote = SimulatedRemote.from_config(test_config)
        assert remote.failure_rate == test_config.sync_failure_rate
        assert remote.max_latency == test_config.sync_max_latency
