"""
Unit tests for the sync coordinator.

Tests cover:
- Batch validation (pure, no store)
- Sync rounds: apply, skip, delta, cursors
- Commit failure and per-record write failure
- Round deadline and cancellation
"""

import asyncio
import sqlite3
import tempfile

import pytest

from vaultsync.vault_server.clock import ManualClock
from vaultsync.vault_server.errors import (
    BatchTooLargeError,
    EntryNotFoundError,
    StorageError,
    StorageTimeoutError,
)
from vaultsync.vault_server.store.entry_store import EntryStore, UnitOfWork
from vaultsync.vault_server.sync.coordinator import (
    IncomingRecord,
    RoundState,
    SyncCoordinator,
    prepare_batch,
    validate_record,
)

OWNER = "user:alice"


class TestPrepareBatch:
    """Tests for record validation."""

    def test_valid_record_passes(self):
        prepared = validate_record(IncomingRecord("e1", b"data", version=3, deleted=True))
        assert prepared.entry_id == "e1"
        assert prepared.version == 3
        assert prepared.deleted is True

    @pytest.mark.parametrize("version", [0, -5])
    def test_version_below_one_coerced(self, version):
        prepared = validate_record(IncomingRecord("e1", b"data", version=version))
        assert prepared.version == 1

    def test_undecodable_payload_skipped(self):
        plan = prepare_batch(
            [
                IncomingRecord("e1", b"ok", version=1),
                IncomingRecord("e2", None, version=1),
                IncomingRecord("e3", b"ok", version=1),
            ]
        )
        assert [r.entry_id for r in plan.records] == ["e1", "e3"]
        assert plan.skipped == 1
        assert plan.rejected[0][0] == "e2"

    @pytest.mark.parametrize("entry_id", ["", "x" * 37])
    def test_bad_entry_id_skipped(self, entry_id):
        plan = prepare_batch([IncomingRecord(entry_id, b"ok", version=1)])
        assert plan.records == []
        assert plan.skipped == 1

    def test_entry_id_at_limit_accepted(self):
        plan = prepare_batch([IncomingRecord("x" * 36, b"ok", version=1)])
        assert plan.skipped == 0

    def test_empty_payload_accepted(self):
        plan = prepare_batch([IncomingRecord("e1", b"", version=1)])
        assert plan.skipped == 0

    def test_non_integer_version_skipped(self):
        plan = prepare_batch([IncomingRecord("e1", b"ok", version="2")])  # type: ignore[arg-type]
        assert plan.skipped == 1

    def test_version_above_storage_limit_skipped(self):
        plan = prepare_batch([IncomingRecord("e1", b"ok", version=2**63)])
        assert plan.records == []
        assert plan.skipped == 1

    def test_version_at_storage_limit_accepted(self):
        plan = prepare_batch([IncomingRecord("e1", b"ok", version=2**63 - 1)])
        assert plan.skipped == 0


class TestSyncCoordinator:
    """Tests for SyncCoordinator rounds."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    async def store(self, data_dir, clock):
        store = EntryStore(data_dir, clock=clock, wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    def coordinator(self, store):
        return SyncCoordinator(store, max_batch_size=10)

    @pytest.mark.asyncio
    async def test_first_sync_empty_store(self, coordinator):
        result = await coordinator.sync(OWNER, None, [])
        assert result.entries == []
        assert result.skipped == 0
        assert result.state == RoundState.COMPLETED

    @pytest.mark.asyncio
    async def test_stale_rewrite_skipped(self, coordinator, store):
        """v1 then v2 is stored; a later v1 rewrite changes nothing."""
        await coordinator.sync(OWNER, None, [IncomingRecord("E1", b"P1", version=1)])
        await coordinator.sync(OWNER, None, [IncomingRecord("E1", b"P2", version=2)])
        stored = await store.get_by_id(OWNER, "E1")

        result = await coordinator.sync(OWNER, None, [IncomingRecord("E1", b"P1", version=1)])
        assert result.applied == 0
        assert result.skipped == 0

        after = await store.get_by_id(OWNER, "E1")
        assert after == stored
        assert after.version == 2
        assert after.payload == b"P2"

    @pytest.mark.asyncio
    async def test_undecodable_record_skipped(self, coordinator, store):
        """One undecodable record out of three is skipped; the others land."""
        first = await coordinator.sync(OWNER, None, [])

        result = await coordinator.sync(
            OWNER,
            first.synced_at,
            [
                IncomingRecord("a", b"A", version=1),
                IncomingRecord("b", None, version=1),
                IncomingRecord("c", b"C", version=1),
            ],
        )

        assert result.skipped == 1
        assert result.applied == 2
        assert sorted(e.entry_id for e in result.entries) == ["a", "c"]
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id(OWNER, "b")

    @pytest.mark.asyncio
    async def test_full_sync_includes_tombstones(self, coordinator, store):
        """A null cursor returns every entry including soft-deleted ones."""
        await store.upsert(OWNER, "live", b"L", version=1)
        await store.upsert(OWNER, "gone", b"G", version=1)
        await store.soft_delete(OWNER, "gone")
        await store.upsert("user:bob", "other", b"O", version=1)

        result = await coordinator.sync(OWNER, None, [])

        by_id = {e.entry_id: e for e in result.entries}
        assert set(by_id) == {"live", "gone"}
        assert by_id["gone"].deleted is True
        assert by_id["gone"].version == 2
        assert by_id["live"].deleted is False

    @pytest.mark.asyncio
    async def test_soft_delete_visible_to_earlier_cursor(self, coordinator, store):
        await coordinator.sync(OWNER, None, [IncomingRecord("e1", b"P", version=3)])
        before = await coordinator.sync(OWNER, None, [])

        await store.soft_delete(OWNER, "e1")

        result = await coordinator.sync(OWNER, before.synced_at, [])
        assert [(e.entry_id, e.version, e.deleted) for e in result.entries] == [("e1", 4, True)]

        later = await coordinator.sync(OWNER, result.synced_at, [])
        assert later.entries == []

    @pytest.mark.asyncio
    async def test_synced_at_comes_from_store_clock(self, coordinator, clock):
        expected = clock.current_us
        result = await coordinator.sync(OWNER, None, [])
        assert result.synced_at == expected

    @pytest.mark.asyncio
    async def test_synced_at_precedes_round_writes(self, coordinator):
        """Writes made by a round are stamped after its synced_at."""
        result = await coordinator.sync(OWNER, None, [IncomingRecord("e1", b"P", version=1)])
        assert all(e.updated_at > result.synced_at for e in result.entries)

    @pytest.mark.asyncio
    async def test_delta_ordered_by_updated_at(self, coordinator):
        result = await coordinator.sync(
            OWNER,
            None,
            [IncomingRecord(f"e{i}", b"P", version=1) for i in range(5)],
        )
        timestamps = [e.updated_at for e in result.entries]
        assert timestamps == sorted(timestamps)
        assert [e.entry_id for e in result.entries] == [f"e{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_same_key_in_batch_order_independent(self, coordinator, store):
        """v3 then v2 for one key within a batch keeps v3."""
        await coordinator.sync(
            OWNER,
            None,
            [
                IncomingRecord("e1", b"v3", version=3),
                IncomingRecord("e1", b"v2", version=2),
            ],
        )
        entry = await store.get_by_id(OWNER, "e1")
        assert entry.version == 3
        assert entry.payload == b"v3"

    @pytest.mark.asyncio
    async def test_full_history_superset(self, coordinator, store):
        """A zero-cursor sync returns every key ever written."""
        written = set()
        for i in range(3):
            batch = [IncomingRecord(f"k{i}-{j}", b"x", version=1) for j in range(3)]
            written.update(r.entry_id for r in batch)
            await coordinator.sync(OWNER, None, batch)
        await store.soft_delete(OWNER, "k0-0")

        result = await coordinator.sync(OWNER, None, [])
        assert {e.entry_id for e in result.entries} >= written

    @pytest.mark.asyncio
    async def test_out_of_range_version_does_not_abort_round(self, coordinator, store):
        """A version SQLite cannot store is skipped; the rest of the batch lands."""
        result = await coordinator.sync(
            OWNER,
            None,
            [
                IncomingRecord("a", b"A", version=1),
                IncomingRecord("b", b"B", version=2**63),
            ],
        )

        assert result.skipped == 1
        assert result.applied == 1
        assert (await store.get_by_id(OWNER, "a")).payload == b"A"
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id(OWNER, "b")

    @pytest.mark.asyncio
    async def test_batch_too_large_rejected(self, coordinator):
        records = [IncomingRecord(f"e{i}", b"x", version=1) for i in range(11)]
        with pytest.raises(BatchTooLargeError):
            await coordinator.sync(OWNER, None, records)

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back_round(self, coordinator, store, monkeypatch):
        """A failed commit fails the round and leaves the store unchanged."""
        await store.upsert(OWNER, "existing", b"old", version=1)

        def failing_commit(self):
            raise StorageError("commit failed: disk full")

        monkeypatch.setattr(UnitOfWork, "commit", failing_commit)

        with pytest.raises(StorageError):
            await coordinator.sync(
                OWNER,
                None,
                [
                    IncomingRecord("existing", b"new", version=2),
                    IncomingRecord("fresh", b"F", version=1),
                ],
            )

        monkeypatch.undo()
        assert (await store.get_by_id(OWNER, "existing")).payload == b"old"
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id(OWNER, "fresh")

    @pytest.mark.asyncio
    async def test_record_write_failure_counted_as_skipped(self, coordinator, store, monkeypatch):
        """A per-record storage failure skips that record only."""
        original = store._upsert

        def flaky_upsert(conn, owner, entry_id, *args):
            if entry_id == "bad":
                raise sqlite3.OperationalError("disk I/O error")
            return original(conn, owner, entry_id, *args)

        monkeypatch.setattr(store, "_upsert", flaky_upsert)

        result = await coordinator.sync(
            OWNER,
            None,
            [
                IncomingRecord("a", b"A", version=1),
                IncomingRecord("bad", b"B", version=1),
                IncomingRecord("c", b"C", version=1),
            ],
        )

        assert result.skipped == 1
        assert result.applied == 2
        assert sorted(e.entry_id for e in result.entries) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_round_deadline_exceeded(self, store):
        """A round past its deadline is rolled back and reported as a timeout."""
        # Negative timeout: the deadline has passed before the round starts.
        coordinator = SyncCoordinator(store, round_timeout_seconds=-1.0)

        with pytest.raises(StorageTimeoutError):
            await coordinator.sync(OWNER, None, [IncomingRecord("e1", b"P", version=1)])

        with pytest.raises(EntryNotFoundError):
            await store.get_by_id(OWNER, "e1")

    @pytest.mark.asyncio
    async def test_cancel_before_commit_rolls_back(self, store, data_dir):
        """Cancelling a round that is still waiting for the write lock discards it."""
        coordinator = SyncCoordinator(store)

        blocker = sqlite3.connect(str(store.db_path), isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            task = asyncio.create_task(
                coordinator.sync(OWNER, None, [IncomingRecord("e1", b"P", version=1)])
            )
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        # Let the abandoned worker observe the abort and roll back.
        await asyncio.sleep(0.5)
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id(OWNER, "e1")
