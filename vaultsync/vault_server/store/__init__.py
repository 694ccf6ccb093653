"""
Store module for VaultSync - durable versioned entries.

This module handles:
- The SQLite entry table with its unique (owner, entry_id) index
- Atomic conditional upsert (last-write-wins by version)
- Tombstones and change-since queries for delta sync

Invariants:
    - The version guard is evaluated by SQLite inside the upsert statement
    - Rows are never physically removed
    - Stale writes are silent no-ops

How to change safely:
    - Keep resolver.accept() and resolver.ACCEPT_SQL in agreement
    - Use units of work for all multi-record writes
"""

from .entry_store import Entry, EntryStore, OperationGuard, RecordWriteError, UnitOfWork
from .resolver import accept, normalize_version

__all__ = [
    "Entry",
    "EntryStore",
    "OperationGuard",
    "RecordWriteError",
    "UnitOfWork",
    "accept",
    "normalize_version",
]
