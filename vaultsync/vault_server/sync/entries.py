"""
Single-entry operations for VaultSync.

EntryService backs the per-entry HTTP endpoints (create, fetch, update,
delete, list). All writes go through the same conditional upsert and
soft-delete paths as sync rounds, so the version rules are identical.
"""

from __future__ import annotations

import logging

from ..errors import RecordValidationError
from ..store.entry_store import Entry, EntryStore
from ..store.resolver import MAX_VERSION
from .coordinator import MAX_ENTRY_ID_LENGTH

logger = logging.getLogger(__name__)


def _check_entry_id(entry_id: str) -> None:
    if not entry_id:
        raise RecordValidationError("entry_id is required")
    if len(entry_id) > MAX_ENTRY_ID_LENGTH:
        raise RecordValidationError("invalid entry id", entry_id=entry_id)


class EntryService:
    """Entry CRUD on top of an EntryStore.

    Example:
        >>> service = EntryService(store)
        >>> entry = await service.create_entry("user:42", "e1", b"...")
        >>> entry.version
        1
    """

    def __init__(self, store: EntryStore) -> None:
        self.store = store

    async def create_entry(self, owner: str, entry_id: str, payload: bytes) -> Entry:
        """Create an entry at version 1.

        If the key already exists at version >= 1 the write is ignored and
        the stored entry is returned.

        Raises:
            RecordValidationError: If entry_id or payload is empty
        """
        _check_entry_id(entry_id)
        if not payload:
            raise RecordValidationError("encrypted_data is required", entry_id=entry_id)

        applied = await self.store.upsert(owner, entry_id, payload, version=1, deleted=False)
        if not applied:
            logger.info(
                "Create ignored, entry already exists",
                extra={"owner": owner, "entry_id": entry_id},
            )
        return await self.store.get_by_id(owner, entry_id)

    async def update_entry(self, owner: str, entry_id: str, payload: bytes) -> Entry:
        """Replace an entry's payload with the next version.

        The write carries stored version + 1. If another writer commits a
        newer version first, the conditional upsert rejects this one and the
        winner is returned.

        Raises:
            RecordValidationError: If entry_id or payload is empty, or the
                stored version is already at MAX_VERSION
            EntryNotFoundError: If the entry does not exist
        """
        _check_entry_id(entry_id)
        if not payload:
            raise RecordValidationError("encrypted_data is required", entry_id=entry_id)

        existing = await self.store.get_by_id(owner, entry_id)
        if existing.version >= MAX_VERSION:
            raise RecordValidationError("entry version limit reached", entry_id=entry_id)
        applied = await self.store.upsert(
            owner, entry_id, payload, version=existing.version + 1, deleted=False
        )
        if not applied:
            logger.info(
                "Update lost to a concurrent writer",
                extra={"owner": owner, "entry_id": entry_id, "version": existing.version + 1},
            )
        return await self.store.get_by_id(owner, entry_id)

    async def delete_entry(self, owner: str, entry_id: str) -> None:
        """Tombstone an entry.

        Raises:
            EntryNotFoundError: If the entry does not exist
        """
        _check_entry_id(entry_id)
        await self.store.soft_delete(owner, entry_id)

    async def get_entry(self, owner: str, entry_id: str) -> Entry:
        """Fetch an entry, tombstones included."""
        _check_entry_id(entry_id)
        return await self.store.get_by_id(owner, entry_id)

    async def list_entries(self, owner: str) -> list[Entry]:
        """List non-deleted entries, most recently updated first."""
        return await self.store.list_active(owner)
