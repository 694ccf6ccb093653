"""
Versioned entry store for VaultSync.

This module manages the SQLite database that stores every owner's entries:
- Opaque payloads (never decoded server-side)
- Client-supplied versions guarded by last-write-wins
- Tombstones for deleted entries
- Server-assigned timestamps used for delta sync

Invariants:
    - At most one row per (owner, entry_id); rows are never deleted
    - A write is applied only if its version is strictly greater than the
      stored version, decided by the storage engine in one statement
    - A rejected write changes nothing, not even updated_at
    - Every write runs in a BEGIN IMMEDIATE unit of work and reads the clock
      only after the write lock is held, so updated_at follows commit order
    - Every statement is bounded by busy_timeout and the caller's deadline

How to change safely:
    - Keep the version guard inside the upsert statement (see resolver.ACCEPT_SQL)
    - Schema migrations must keep the unique (owner, entry_id) index
    - Never add a code path that DELETEs rows; tombstones carry deletions

Table schema:
    entries:
        - id INTEGER PRIMARY KEY (surrogate)
        - owner TEXT
        - entry_id TEXT (<= 36 chars, client generated)
        - payload BLOB
        - version INTEGER (>= 1)
        - created_at INTEGER (Unix us)
        - updated_at INTEGER (Unix us)
        - deleted INTEGER (0/1)
        - UNIQUE (owner, entry_id)
        - INDEX (owner, updated_at)
        - INDEX (owner, deleted)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from ..clock import EPOCH_US, Clock, SystemClock
from ..errors import (
    EntryNotFoundError,
    RecordValidationError,
    RoundAbortedError,
    StorageError,
    StorageTimeoutError,
)
from .resolver import ACCEPT_SQL, MAX_VERSION

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Number of SQLite VM instructions between deadline checks.
_PROGRESS_INTERVAL = 1000

_UPSERT_SQL = f"""
    INSERT INTO entries (owner, entry_id, payload, version, deleted, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (owner, entry_id) DO UPDATE SET
        payload = excluded.payload,
        version = excluded.version,
        deleted = excluded.deleted,
        updated_at = excluded.updated_at
    WHERE {ACCEPT_SQL}
"""

_ENTRY_COLUMNS = "owner, entry_id, payload, version, created_at, updated_at, deleted"


class RecordWriteError(StorageError):
    """A single write inside a unit of work failed; the unit of work is still usable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="RECORD_WRITE_FAILED")


@dataclass
class Entry:
    """A versioned, opaque record.

    Attributes:
        owner: Account the entry belongs to
        entry_id: Client-generated identifier (UUID-shaped)
        payload: Client-encrypted bytes
        version: Monotonic version number
        created_at: First insert timestamp (Unix us)
        updated_at: Last accepted mutation timestamp (Unix us)
        deleted: Tombstone flag
    """

    owner: str
    entry_id: str
    payload: bytes
    version: int
    created_at: int
    updated_at: int
    deleted: bool = False


class UnitOfWork:
    """One write transaction against the entry store.

    Created by EntryStore.unit_of_work(). Writes are buffered in a
    BEGIN IMMEDIATE transaction and become visible only on commit().
    Each write runs under its own savepoint so a failing record can be
    discarded without losing the rest of the batch.
    """

    def __init__(self, store: EntryStore, conn: sqlite3.Connection, guard: OperationGuard) -> None:
        self._store = store
        self._conn = conn
        self._guard = guard
        self.committed = False

    def upsert(
        self,
        owner: str,
        entry_id: str,
        payload: bytes,
        version: int,
        deleted: bool,
    ) -> bool:
        """Conditionally write one entry inside the transaction.

        Returns:
            True if the write was applied, False if the stored version won

        Raises:
            RecordWriteError: The write failed but the transaction survived
            StorageError: The transaction was lost
            StorageTimeoutError / RoundAbortedError: The deadline passed or the
                caller aborted
        """
        self._guard.check()
        try:
            self._conn.execute("SAVEPOINT record")
            applied = self._store._upsert(self._conn, owner, entry_id, payload, version, deleted)
            self._conn.execute("RELEASE record")
            return applied
        except (sqlite3.Error, OverflowError) as e:
            self._guard.check()
            if not self._conn.in_transaction:
                raise StorageError(f"transaction lost while writing {entry_id}: {e}") from e
            try:
                self._conn.execute("ROLLBACK TO record")
                self._conn.execute("RELEASE record")
            except sqlite3.Error as rollback_error:
                raise StorageError(f"savepoint rollback failed: {rollback_error}") from e
            raise RecordWriteError(f"upsert failed for {entry_id}: {e}") from e

    def soft_delete(self, owner: str, entry_id: str) -> bool:
        """Tombstone an entry inside the transaction.

        Returns:
            True if a row was tombstoned, False if the key does not exist

        Raises:
            RecordValidationError: If the stored version is already at MAX_VERSION
        """
        self._guard.check()
        try:
            return self._store._soft_delete_row(self._conn, owner, entry_id)
        except sqlite3.Error as e:
            self._guard.check()
            raise StorageError(f"soft delete failed for {entry_id}: {e}") from e

    def commit(self) -> None:
        """Commit the transaction.

        Raises:
            StorageError: If the commit fails (the transaction is rolled back)
        """
        self._guard.check()
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._guard.check()
            raise StorageError(f"commit failed: {e}") from e
        self.committed = True


class OperationGuard:
    """Deadline and abort flag shared by a connection's progress handler."""

    def __init__(self, abort: threading.Event | None, deadline: float | None) -> None:
        self.abort = abort
        self.deadline = deadline

    def tripped(self) -> bool:
        if self.abort is not None and self.abort.is_set():
            return True
        return self.deadline is not None and time.monotonic() > self.deadline

    def check(self) -> None:
        if self.abort is not None and self.abort.is_set():
            raise RoundAbortedError()
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise StorageTimeoutError()


class EntryStore:
    """SQLite store for versioned vault entries.

    This class provides:
    - Atomic conditional upsert keyed on (owner, entry_id)
    - Point lookup, active listing and change-since queries
    - Soft delete (tombstone + version bump)
    - Multi-record units of work for sync rounds

    Thread safety:
        A connection is opened per operation. The async methods run the
        blocking SQLite calls in the event loop's default executor.
        SQLite serializes writers; WAL mode lets readers proceed meanwhile.

    Example:
        >>> store = EntryStore("/var/lib/vaultsync")
        >>> await store.initialize()
        >>> await store.upsert("user:42", "e1", b"...", version=1, deleted=False)
        True
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "vault.db",
        clock: Clock | None = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        operation_timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the entry store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            clock: Source of updated_at timestamps
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            operation_timeout_seconds: Deadline for a single store call
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.clock = clock or SystemClock()
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.operation_timeout_seconds = operation_timeout_seconds

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @contextmanager
    def _get_connection(self, guard: OperationGuard | None = None) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Args:
            guard: Optional deadline/abort guard installed as progress handler

        Yields:
            SQLite connection

        Raises:
            StorageError: If the database cannot be opened
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StorageError(f"cannot open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            try:
                conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
                conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
            except sqlite3.Error as e:
                raise StorageError(f"cannot configure {self.db_path}: {e}") from e

            # Installed last so configuration is never interrupted.
            if guard is not None:
                conn.set_progress_handler(guard.tripped, _PROGRESS_INTERVAL)

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Entries table
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner TEXT NOT NULL,
                entry_id TEXT NOT NULL CHECK (length(entry_id) BETWEEN 1 AND 36),
                payload BLOB NOT NULL,
                version INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_owner_entry
                ON entries(owner, entry_id);
            CREATE INDEX IF NOT EXISTS idx_entries_owner_updated
                ON entries(owner, updated_at);
            CREATE INDEX IF NOT EXISTS idx_entries_owner_deleted
                ON entries(owner, deleted);

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        await self.run_blocking(self._initialize)
        logger.info("Initialized entry store", extra={"db_path": str(self.db_path)})

    def _initialize(self, guard: OperationGuard) -> None:
        with self._get_connection(guard) as conn, _translate_errors(guard):
            self._create_schema(conn)

    async def run_blocking(
        self,
        fn: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
    ) -> T:
        """Run a blocking store function in the default executor.

        `fn` receives a guard as its `guard` keyword argument carrying the
        deadline (now + timeout) and an abort flag. If the awaiting task is
        cancelled the flag is set, so work not yet committed is rolled back.

        Args:
            fn: Blocking callable
            *args: Positional arguments for fn
            timeout: Deadline in seconds (defaults to operation_timeout_seconds)

        Returns:
            fn's return value
        """
        timeout = self.operation_timeout_seconds if timeout is None else timeout
        guard = OperationGuard(threading.Event(), time.monotonic() + timeout)
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(fn, *args, guard=guard))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            guard.abort.set()
            future.add_done_callback(_discard_result)
            raise

    def _upsert(
        self,
        conn: sqlite3.Connection,
        owner: str,
        entry_id: str,
        payload: bytes,
        version: int,
        deleted: bool,
    ) -> bool:
        now = self.clock.now_us()
        cursor = conn.execute(
            _UPSERT_SQL,
            (owner, entry_id, payload, version, int(deleted), now, now),
        )
        return cursor.rowcount > 0

    async def upsert(
        self,
        owner: str,
        entry_id: str,
        payload: bytes,
        version: int,
        deleted: bool = False,
    ) -> bool:
        """Insert an entry, or replace it if the incoming version is greater.

        Args:
            owner: Owner identifier
            entry_id: Entry identifier
            payload: Opaque payload bytes
            version: Incoming version
            deleted: Tombstone flag

        Returns:
            True if the write was applied, False if it was ignored as stale
        """
        applied = await self.run_blocking(
            self._upsert_autocommit, owner, entry_id, payload, version, deleted
        )
        logger.debug(
            "Upserted entry",
            extra={"owner": owner, "entry_id": entry_id, "version": version, "applied": applied},
        )
        return applied

    def _upsert_autocommit(
        self,
        owner: str,
        entry_id: str,
        payload: bytes,
        version: int,
        deleted: bool,
        guard: OperationGuard,
    ) -> bool:
        with self.unit_of_work(guard) as uow:
            applied = uow.upsert(owner, entry_id, payload, version, deleted)
            uow.commit()
        return applied

    async def get_by_id(self, owner: str, entry_id: str) -> Entry:
        """Get an entry by key, tombstones included.

        Raises:
            EntryNotFoundError: If no row exists for the key
        """
        entry = await self.run_blocking(self._get_by_id, owner, entry_id)
        if entry is None:
            raise EntryNotFoundError(owner, entry_id)
        return entry

    def _get_by_id(self, owner: str, entry_id: str, guard: OperationGuard) -> Entry | None:
        with self._get_connection(guard) as conn, _translate_errors(guard):
            cursor = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE owner = ? AND entry_id = ?",
                (owner, entry_id),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    async def list_active(self, owner: str) -> list[Entry]:
        """List non-deleted entries, most recently updated first."""
        return await self.run_blocking(self._list_active, owner)

    def _list_active(self, owner: str, guard: OperationGuard) -> list[Entry]:
        with self._get_connection(guard) as conn, _translate_errors(guard):
            cursor = conn.execute(
                f"""
                SELECT {_ENTRY_COLUMNS} FROM entries
                WHERE owner = ? AND deleted = 0
                ORDER BY updated_at DESC
                """,
                (owner,),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]

    async def changed_since(self, owner: str, since: int = EPOCH_US) -> list[Entry]:
        """List entries changed strictly after `since`, oldest change first.

        Tombstones are included. since=EPOCH_US returns the full history.
        """
        return await self.run_blocking(self.changed_since_blocking, owner, since)

    def changed_since_blocking(self, owner: str, since: int, guard: OperationGuard) -> list[Entry]:
        with self._get_connection(guard) as conn, _translate_errors(guard):
            cursor = conn.execute(
                f"""
                SELECT {_ENTRY_COLUMNS} FROM entries
                WHERE owner = ? AND updated_at > ?
                ORDER BY updated_at ASC, id ASC
                """,
                (owner, since),
            )
            return [_row_to_entry(row) for row in cursor.fetchall()]

    async def soft_delete(self, owner: str, entry_id: str) -> bool:
        """Tombstone an entry and bump its version by one.

        Raises:
            EntryNotFoundError: If no row exists for the key
            RecordValidationError: If the stored version cannot be bumped
        """
        applied = await self.run_blocking(self._soft_delete, owner, entry_id)
        if not applied:
            raise EntryNotFoundError(owner, entry_id)
        logger.debug("Soft-deleted entry", extra={"owner": owner, "entry_id": entry_id})
        return applied

    def _soft_delete(self, owner: str, entry_id: str, guard: OperationGuard) -> bool:
        with self.unit_of_work(guard) as uow:
            found = uow.soft_delete(owner, entry_id)
            uow.commit()
        return found

    def _soft_delete_row(self, conn: sqlite3.Connection, owner: str, entry_id: str) -> bool:
        row = conn.execute(
            "SELECT version FROM entries WHERE owner = ? AND entry_id = ?",
            (owner, entry_id),
        ).fetchone()
        if row is None:
            return False
        # version + 1 past this point would be stored as REAL.
        if row["version"] >= MAX_VERSION:
            raise RecordValidationError("entry version limit reached", entry_id=entry_id)

        cursor = conn.execute(
            """
            UPDATE entries SET deleted = 1, version = version + 1, updated_at = ?
            WHERE owner = ? AND entry_id = ?
            """,
            (self.clock.now_us(), owner, entry_id),
        )
        return cursor.rowcount > 0

    @contextmanager
    def unit_of_work(self, guard: OperationGuard | None = None) -> Iterator[UnitOfWork]:
        """Open a write transaction.

        Blocking; call from an executor thread (see run_blocking). The
        transaction takes the database write lock up front, so timestamps
        read from the clock inside it are ordered after every commit that
        precedes it. Leaving the block without commit() rolls back.

        Args:
            guard: Deadline/abort guard handed in by run_blocking

        Yields:
            UnitOfWork
        """
        guard = guard or OperationGuard(None, None)
        with self._get_connection(guard) as conn:
            guard.check()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                guard.check()
                raise StorageError(f"cannot begin transaction: {e}") from e

            uow = UnitOfWork(self, conn, guard)
            try:
                yield uow
            finally:
                if not uow.committed and conn.in_transaction:
                    try:
                        conn.execute("ROLLBACK")
                    except sqlite3.Error as e:
                        logger.error(f"Rollback failed: {e}")

    async def health(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            return await self.run_blocking(self._ping)
        except StorageError as e:
            logger.warning(f"Entry store health check failed: {e}")
            return False

    def _ping(self, guard: OperationGuard) -> bool:
        with self._get_connection(guard) as conn, _translate_errors(guard):
            return conn.execute("SELECT 1").fetchone()[0] == 1


@contextmanager
def _translate_errors(guard: OperationGuard) -> Iterator[None]:
    """Map sqlite3 errors to StorageError (or timeout/abort if the guard tripped)."""
    try:
        yield
    except sqlite3.Error as e:
        guard.check()
        raise StorageError(str(e)) from e


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        owner=row["owner"],
        entry_id=row["entry_id"],
        payload=bytes(row["payload"]),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted=bool(row["deleted"]),
    )


def _discard_result(future: asyncio.Future) -> None:
    # Retrieve the exception of an abandoned call so it isn't reported as unhandled.
    if not future.cancelled():
        future.exception()
