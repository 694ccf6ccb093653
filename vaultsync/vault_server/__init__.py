"""
VaultSync Server - versioned storage and delta sync for client-encrypted records.

This package stores opaque records on behalf of many owners and reconciles
concurrent edits made by the devices of a single owner:
- Entries are keyed by (owner, entry_id) and carry a client-supplied version
- A write is accepted only if its version is strictly greater than the stored one
- Deletions are tombstones, never row removals
- A sync round uploads a batch and downloads everything changed since a cursor

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Device    │────▶│  HTTP API   │────▶│ SyncCoordinator │
    │  (client)   │     │  (FastAPI)  │     │  / EntryService │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                                                     ▼
                        ┌─────────────────────────────────────────┐
                        │    EntryStore (SQLite, conditional      │
                        │    upsert on the (owner, entry_id) key) │
                        └─────────────────────────────────────────┘

Invariants:
    - Payloads are never decoded, parsed or compared server-side
    - Versions for a key never decrease; ties keep the stored value
    - Rows are never deleted, so deletions reach devices that were offline
    - Ordering for delta sync uses the server clock only

How to change safely:
    - Any change to the upsert guard must keep the comparison inside one SQL statement
    - Schema changes must keep the (owner, entry_id) unique index
    - Cursor semantics (strictly greater than) are part of the wire contract

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
