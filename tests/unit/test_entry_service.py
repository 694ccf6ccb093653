"""
Unit tests for single-entry operations.
"""

import tempfile

import pytest

from vaultsync.vault_server.clock import ManualClock
from vaultsync.vault_server.errors import EntryNotFoundError, RecordValidationError
from vaultsync.vault_server.store.entry_store import EntryStore
from vaultsync.vault_server.sync.entries import EntryService

OWNER = "user:alice"


class TestEntryService:
    """Tests for EntryService."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = EntryStore(data_dir, clock=ManualClock(), wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    def service(self, store):
        return EntryService(store)

    @pytest.mark.asyncio
    async def test_create_starts_at_version_one(self, service):
        entry = await service.create_entry(OWNER, "e1", b"secret")
        assert entry.version == 1
        assert entry.payload == b"secret"
        assert entry.deleted is False

    @pytest.mark.asyncio
    async def test_create_existing_returns_stored(self, service):
        """Creating an existing key leaves the stored entry in place."""
        await service.create_entry(OWNER, "e1", b"first")
        await service.update_entry(OWNER, "e1", b"second")

        entry = await service.create_entry(OWNER, "e1", b"third")
        assert entry.version == 2
        assert entry.payload == b"second"

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, service):
        await service.create_entry(OWNER, "e1", b"v1")
        updated = await service.update_entry(OWNER, "e1", b"v2")
        assert updated.version == 2
        assert updated.payload == b"v2"

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, service):
        with pytest.raises(EntryNotFoundError):
            await service.update_entry(OWNER, "missing", b"x")

    @pytest.mark.asyncio
    async def test_update_revives_tombstone(self, service):
        await service.create_entry(OWNER, "e1", b"v1")
        await service.delete_entry(OWNER, "e1")

        entry = await service.update_entry(OWNER, "e1", b"v3")
        assert entry.version == 3
        assert entry.deleted is False

    @pytest.mark.asyncio
    async def test_delete_then_get_returns_tombstone(self, service):
        await service.create_entry(OWNER, "e1", b"v1")
        await service.delete_entry(OWNER, "e1")

        entry = await service.get_entry(OWNER, "e1")
        assert entry.deleted is True
        assert entry.version == 2
        assert await service.list_entries(OWNER) == []

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, service):
        with pytest.raises(EntryNotFoundError):
            await service.delete_entry(OWNER, "missing")

    @pytest.mark.asyncio
    async def test_list_is_per_owner(self, service):
        await service.create_entry("user:alice", "a", b"A")
        await service.create_entry("user:bob", "b", b"B")

        entries = await service.list_entries("user:alice")
        assert [e.entry_id for e in entries] == ["a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entry_id", ["", "x" * 37])
    async def test_invalid_entry_id_rejected(self, service, entry_id):
        with pytest.raises(RecordValidationError):
            await service.create_entry(OWNER, entry_id, b"x")
        with pytest.raises(RecordValidationError):
            await service.get_entry(OWNER, entry_id)

    @pytest.mark.asyncio
    async def test_empty_payload_rejected(self, service):
        with pytest.raises(RecordValidationError):
            await service.create_entry(OWNER, "e1", b"")

    @pytest.mark.asyncio
    async def test_update_at_version_limit_rejected(self, service, store):
        await store.upsert(OWNER, "e1", b"P", version=2**63 - 1)

        with pytest.raises(RecordValidationError):
            await service.update_entry(OWNER, "e1", b"next")

        entry = await service.get_entry(OWNER, "e1")
        assert entry.payload == b"P"
