"""
Sync module for VaultSync - reconciliation rounds and entry operations.

This module handles:
- Validation of uploaded records (skip-and-continue)
- Applying a batch inside one unit of work
- Computing the outbound delta for a cursor
- Single-entry create/update/delete/list

Invariants:
    - A round is all-or-nothing for the records it tries to write
    - Invalid records are counted, never fatal
    - Only storage failures surface as round errors
"""

from .coordinator import (
    BatchPlan,
    IncomingRecord,
    PreparedRecord,
    RoundState,
    SyncCoordinator,
    SyncResult,
    prepare_batch,
    validate_record,
)
from .entries import EntryService

__all__ = [
    "BatchPlan",
    "EntryService",
    "IncomingRecord",
    "PreparedRecord",
    "RoundState",
    "SyncCoordinator",
    "SyncResult",
    "prepare_batch",
    "validate_record",
]
