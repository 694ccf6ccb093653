"""
Sync round coordinator for VaultSync.

The SyncCoordinator runs one request/response round of reconciliation for a
single owner:
1. Validate every incoming record (pure, no storage access)
2. Apply the accepted records through the store's conditional upsert,
   all inside one unit of work
3. Commit
4. Return everything changed since the caller's cursor

Invariants:
    - A malformed record never aborts the round; it is counted as skipped
    - Either every prepared record's write is committed or none is
    - synced_at is read from the store's clock once, after the round holds
      the write lock, so no later commit can carry an earlier timestamp
    - The outbound delta is ordered by updated_at ascending

How to change safely:
    - Keep validation in prepare_batch() so it stays testable without a store
    - Only RecordWriteError may be absorbed inside the unit of work; anything
      else must propagate so the round rolls back
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..clock import EPOCH_US
from ..errors import BatchTooLargeError, RecordValidationError, StorageError
from ..store.entry_store import Entry, EntryStore, OperationGuard, RecordWriteError
from ..store.resolver import MAX_VERSION, normalize_version

logger = logging.getLogger(__name__)

MAX_ENTRY_ID_LENGTH = 36
DEFAULT_MAX_BATCH_SIZE = 1000


class RoundState(Enum):
    """Lifecycle of a sync round."""

    STARTED = "started"
    APPLYING_BATCH = "applying_batch"
    COMMITTED = "committed"
    COMPUTING_DELTA = "computing_delta"
    COMPLETED = "completed"
    COMMIT_FAILED = "commit_failed"


@dataclass
class IncomingRecord:
    """A candidate record uploaded by a device.

    Attributes:
        entry_id: Client-generated identifier
        payload: Decoded payload bytes, or None if the transport could not decode it
        version: Client version (values below 1 are coerced to 1)
        deleted: Tombstone flag
    """

    entry_id: str
    payload: bytes | None
    version: int
    deleted: bool = False


@dataclass(frozen=True)
class PreparedRecord:
    """A validated, normalized record ready to be written."""

    entry_id: str
    payload: bytes
    version: int
    deleted: bool


@dataclass
class BatchPlan:
    """Outcome of validating a batch.

    Attributes:
        records: Records to write, in caller order
        rejected: (entry_id, reason) for each skipped record
    """

    records: list[PreparedRecord] = field(default_factory=list)
    rejected: list[tuple[str | None, str]] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.rejected)


@dataclass
class SyncResult:
    """Result of a completed sync round.

    Attributes:
        synced_at: Server time to use as the next cursor (Unix us)
        entries: Entries changed since the input cursor, oldest first
        skipped: Incoming records that were not written
        applied: Incoming records that replaced or created a stored entry
        state: Final round state
    """

    synced_at: int
    entries: list[Entry]
    skipped: int
    applied: int = 0
    state: RoundState = RoundState.COMPLETED


def validate_record(record: IncomingRecord) -> PreparedRecord:
    """Validate and normalize one incoming record.

    Raises:
        RecordValidationError: If the record is structurally invalid
    """
    entry_id = record.entry_id
    if not isinstance(entry_id, str) or not entry_id:
        raise RecordValidationError("entry_id is required", entry_id=None)
    if len(entry_id) > MAX_ENTRY_ID_LENGTH:
        raise RecordValidationError(
            f"entry_id longer than {MAX_ENTRY_ID_LENGTH} characters", entry_id=entry_id
        )
    if record.payload is None:
        raise RecordValidationError("payload could not be decoded", entry_id=entry_id)
    if not isinstance(record.payload, (bytes, bytearray)):
        raise RecordValidationError("payload must be bytes", entry_id=entry_id)
    if isinstance(record.version, bool) or not isinstance(record.version, int):
        raise RecordValidationError("version must be an integer", entry_id=entry_id)
    if record.version > MAX_VERSION:
        raise RecordValidationError(f"version above {MAX_VERSION}", entry_id=entry_id)

    return PreparedRecord(
        entry_id=entry_id,
        payload=bytes(record.payload),
        version=normalize_version(record.version),
        deleted=bool(record.deleted),
    )


def prepare_batch(incoming: Sequence[IncomingRecord]) -> BatchPlan:
    """Split a batch into writable records and rejected ones."""
    plan = BatchPlan()
    for record in incoming:
        try:
            plan.records.append(validate_record(record))
        except RecordValidationError as e:
            plan.rejected.append((e.entry_id, e.message))
    return plan


class SyncCoordinator:
    """Runs sync rounds against an EntryStore.

    Rounds for any owners, including the same owner, may run concurrently.
    No in-process lock is taken; concurrent writes to one key are settled by
    the store's conditional upsert.

    Example:
        >>> coordinator = SyncCoordinator(store)
        >>> result = await coordinator.sync("user:42", None, [
        ...     IncomingRecord("e1", b"...", version=1),
        ... ])
        >>> result.skipped
        0
    """

    def __init__(
        self,
        store: EntryStore,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        round_timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Entry store to apply rounds to; its clock also stamps synced_at
            max_batch_size: Maximum records accepted per round
            round_timeout_seconds: Deadline for the whole round
        """
        self.store = store
        self.max_batch_size = max_batch_size
        self.round_timeout_seconds = round_timeout_seconds

    async def sync(
        self,
        owner: str,
        cursor: int | None,
        incoming: Sequence[IncomingRecord],
    ) -> SyncResult:
        """Run one sync round.

        Args:
            owner: Authenticated owner identifier
            cursor: synced_at of the caller's previous round, or None for a full sync
            incoming: Records uploaded by the device, in the order to apply them

        Returns:
            SyncResult with the new cursor, the outbound delta and the skip count

        Raises:
            BatchTooLargeError: If the batch exceeds max_batch_size
            StorageError: If the round could not be committed or the delta
                could not be read; StorageTimeoutError on deadline
        """
        if len(incoming) > self.max_batch_size:
            raise BatchTooLargeError(len(incoming), self.max_batch_size)

        deadline = time.monotonic() + self.round_timeout_seconds
        state = RoundState.STARTED

        plan = prepare_batch(incoming)
        for entry_id, reason in plan.rejected:
            logger.warning(
                "Skipping entry: invalid record",
                extra={"owner": owner, "entry_id": entry_id, "reason": reason},
            )

        state = RoundState.APPLYING_BATCH
        try:
            synced_at, applied, write_failures = await self.store.run_blocking(
                self._apply_batch,
                owner,
                plan.records,
                timeout=self.round_timeout_seconds,
            )
        except StorageError as e:
            state = RoundState.COMMIT_FAILED
            logger.error(
                f"Sync round failed: {e}",
                extra={"owner": owner, "state": state.value, "code": e.code},
            )
            raise

        state = RoundState.COMMITTED
        logger.debug(
            "Sync batch committed",
            extra={"owner": owner, "applied": applied, "state": state.value},
        )

        state = RoundState.COMPUTING_DELTA
        since = EPOCH_US if cursor is None else cursor
        entries = await self.store.run_blocking(
            self.store.changed_since_blocking,
            owner,
            since,
            timeout=max(deadline - time.monotonic(), 0.0),
        )

        state = RoundState.COMPLETED
        skipped = plan.skipped + write_failures
        logger.info(
            "Sync round completed",
            extra={
                "owner": owner,
                "incoming": len(incoming),
                "applied": applied,
                "skipped": skipped,
                "outbound": len(entries),
                "full_sync": cursor is None,
            },
        )

        return SyncResult(
            synced_at=synced_at,
            entries=entries,
            skipped=skipped,
            applied=applied,
            state=state,
        )

    def _apply_batch(
        self,
        owner: str,
        records: list[PreparedRecord],
        guard: OperationGuard,
    ) -> tuple[int, int, int]:
        """Write prepared records in one unit of work (blocking).

        Returns:
            (synced_at, applied count, per-record write failures)
        """
        with self.store.unit_of_work(guard) as uow:
            synced_at = self.store.clock.now_us()
            applied = 0
            failures = 0

            for record in records:
                try:
                    if uow.upsert(
                        owner, record.entry_id, record.payload, record.version, record.deleted
                    ):
                        applied += 1
                except RecordWriteError as e:
                    logger.warning(
                        "Skipping entry: upsert failed",
                        extra={"owner": owner, "entry_id": record.entry_id, "error": e.message},
                    )
                    failures += 1

            uow.commit()

        return synced_at, applied, failures
