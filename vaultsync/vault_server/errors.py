"""
Error types for VaultSync Server.

This module defines the exceptions raised by the store, the sync
coordinator and the entry service:
- VaultError: Base exception
- RecordValidationError: A single incoming record is malformed
- EntryNotFoundError: Lookup or soft delete of a missing key
- BatchTooLargeError: A sync round carries too many records
- StorageError: The backing store failed (round-level)
- StorageTimeoutError: A storage call exceeded its deadline
- RoundAbortedError: A round was cancelled before commit

Invariants:
    - All errors inherit from VaultError
    - Per-record errors are absorbed by the coordinator and counted
    - Only storage errors escape a sync round
"""

from __future__ import annotations

from typing import Any


class VaultError(Exception):
    """Base exception for all VaultSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VAULT_ERROR"
        self.details = details or {}


class RecordValidationError(VaultError):
    """An incoming record is structurally invalid.

    Raised when:
    - entry_id is missing, empty or too long
    - payload could not be decoded by the transport
    - version is not an integer
    - version is beyond what storage can represent
    """

    def __init__(self, message: str, entry_id: str | None = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details={"entry_id": entry_id},
        )
        self.entry_id = entry_id


class EntryNotFoundError(VaultError):
    """No entry exists for the (owner, entry_id) key."""

    def __init__(self, owner: str, entry_id: str) -> None:
        super().__init__(
            f"Vault entry not found: {entry_id}",
            code="NOT_FOUND",
            details={"entry_id": entry_id},
        )
        self.owner = owner
        self.entry_id = entry_id


class BatchTooLargeError(VaultError):
    """A sync round exceeds the maximum batch size."""

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            f"too many entries in sync request (max {max_size})",
            code="BATCH_TOO_LARGE",
            details={"size": size, "max_size": max_size},
        )
        self.size = size
        self.max_size = max_size


class StorageError(VaultError):
    """The backing store failed.

    Raised when:
    - SQLite reports an operational error
    - A commit fails
    - The database is locked beyond the busy timeout
    """

    def __init__(self, message: str, code: str = "STORAGE_FAILURE") -> None:
        super().__init__(message, code=code)


class StorageTimeoutError(StorageError):
    """A storage call ran past its deadline and was rolled back."""

    def __init__(self, message: str = "storage call timed out") -> None:
        super().__init__(message, code="STORAGE_TIMEOUT")


class RoundAbortedError(StorageError):
    """A sync round was aborted by its caller before commit."""

    def __init__(self, message: str = "sync round aborted before commit") -> None:
        super().__init__(message, code="ROUND_ABORTED")
