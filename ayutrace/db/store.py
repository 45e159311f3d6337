"""
Ledger Store Abstraction

This module defines the LedgerStore interface and two implementations:
- InMemoryLedgerStore: For development and testing
- PostgresLedgerStore: For production with durability and cross-process locking

The LedgerStore is responsible for:
- Per-lot serialized append (one writer per lot at a time)
- Chain head lookup for a lot
- Atomic visibility of fully formed entries

The LedgerService retains responsibility for:
- Content hashing
- Building entries and linking them to the head

TRANSACTION CONTRACT:
All appends MUST go through the begin_append() context manager:

    with store.begin_append(lot_id) as ctx:
        prev_id, seq = ctx.head.last_transaction_id, ctx.head.next_sequence
        # ... build and hash the entry ...
        ctx.commit(entry)

Head lookup and commit happen under the same per-lot lock (or the same
database transaction), so two writers can never both link to the same
previous entry.
"""

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generator, Iterable, Optional

from ..core.hasher import Hasher
from ..schemas import EventType, LedgerEntry


# ============================================================
# EXCEPTIONS
# ============================================================

class StorageError(Exception):
    """
    Base exception for ledger storage failures.

    Transient by nature: callers may retry with backoff. The ledger itself
    never retries, so an append is never recorded twice.
    """
    retryable = True


class LockTimeoutError(StorageError):
    """Raised when the per-lot append lock could not be acquired in time."""
    pass


class ConcurrencyError(StorageError):
    """Raised when the chain head moved between lookup and commit."""
    pass


class ChainIntegrityError(StorageError):
    """Raised when an entry offered for commit does not extend the head."""
    retryable = False


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current tip of one lot's chain.

    This is what is locked during an append.
    """
    lot_id: str
    last_sequence: int = -1  # -1 means no entries yet
    last_transaction_id: Optional[str] = None
    last_timestamp: Optional[datetime] = None

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one append.

    Holds the lock (or connection) that was taken to read the head, so the
    commit happens under that same lock. All transaction state lives here,
    never on the store, so one store instance can serve many threads.
    """
    head: ChainHead
    _store: "LedgerStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    @property
    def lot_id(self) -> str:
        return self.head.lot_id

    def commit(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist the fully formed entry within this context."""
        if self._committed:
            raise StorageError("Append already committed")
        if self._rolled_back:
            raise StorageError("Append already rolled back")

        result = self._store._do_commit(self, entry)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def head_from_entries(lot_id: str, entries: Iterable[LedgerEntry]) -> ChainHead:
    """The most recent entry by (timestamp, sequence), as a ChainHead."""
    latest = max(entries, key=lambda e: (e.timestamp, e.sequence), default=None)
    if latest is None:
        return ChainHead(lot_id=lot_id)
    return ChainHead(
        lot_id=lot_id,
        last_sequence=latest.sequence,
        last_transaction_id=latest.transaction_id,
        last_timestamp=latest.timestamp,
    )


def check_extends_head(head: ChainHead, entry: LedgerEntry) -> None:
    """
    Validate that an entry is the next link after head.

    Raises ChainIntegrityError otherwise.
    """
    if entry.lot_id != head.lot_id:
        raise ChainIntegrityError(
            f"Entry for lot {entry.lot_id} committed under lock for lot {head.lot_id}"
        )
    if entry.sequence != head.next_sequence:
        raise ChainIntegrityError(
            f"Sequence mismatch for lot {head.lot_id}: "
            f"expected {head.next_sequence}, got {entry.sequence}"
        )
    if entry.previous_transaction_id != head.last_transaction_id:
        raise ChainIntegrityError(
            f"Previous transaction mismatch for lot {head.lot_id}: "
            f"expected {head.last_transaction_id}, got {entry.previous_transaction_id}"
        )
    computed = Hasher.hash_entry(
        entry.event_type.value,
        entry.event_id,
        entry.lot_id,
        entry.previous_transaction_id,
        entry.payload,
        entry.timestamp,
    )
    if computed != entry.content_hash:
        raise ChainIntegrityError(
            f"Hash verification failed: computed {computed[:16]}..., "
            f"claimed {entry.content_hash[:16]}..."
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger storage.

    Implementations must ensure:
    1. Appends to the same lot are serialized
    2. Appends to different lots do not block each other
    3. Readers never observe a partially written entry
    4. Lock waits are bounded; a timeout raises LockTimeoutError
    """

    @contextmanager
    @abstractmethod
    def begin_append(
        self,
        lot_id: str,
        timeout: Optional[float] = None,
    ) -> Generator[AppendContext, None, None]:
        """
        Lock the lot's chain head and yield an AppendContext.

        Args:
            lot_id: Lot whose chain is being extended
            timeout: Seconds to wait for the lock. None uses the store default.

        Raises:
            LockTimeoutError: If the lock is not acquired in time
            StorageError: On any other storage failure
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Internal: commit within current context. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: release without committing. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def list_by_lot(self, lot_id: str) -> list[LedgerEntry]:
        """
        All entries for a lot, in storage order.

        Callers that need chain order must sort by (timestamp, sequence).
        """
        pass

    @abstractmethod
    def get_head(self, lot_id: str) -> ChainHead:
        """Current head of a lot's chain, without locking."""
        pass

    @abstractmethod
    def list_recent(self, limit: int = 50) -> list[LedgerEntry]:
        """Most recent entries across all lots, newest first."""
        pass

    @abstractmethod
    def list_lot_ids(self) -> list[str]:
        """Lots that have at least one entry."""
        pass

    @abstractmethod
    def get_entry_count(self) -> int:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for development, tests and single-process deployments.
    One lock per lot serializes appends; entries are appended to the lot's
    list only once fully built, so readers see all of an entry or none of it.
    """

    LOCK_TIMEOUT_MS = 2000

    def __init__(self, lock_timeout_ms: int = LOCK_TIMEOUT_MS):
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._lock_timeout_ms = lock_timeout_ms

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[LedgerEntry],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
    ) -> "InMemoryLedgerStore":
        """
        Restore a store from previously exported entries.

        Entries are kept in the order given and are NOT validated here;
        run LedgerService.verify() on each lot after a restore.
        """
        store = cls(lock_timeout_ms=lock_timeout_ms)
        for entry in entries:
            store._entries.setdefault(entry.lot_id, []).append(entry)
        return store

    def _lock_for(self, lot_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(lot_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[lot_id] = lock
            return lock

    @contextmanager
    def begin_append(
        self,
        lot_id: str,
        timeout: Optional[float] = None,
    ) -> Generator[AppendContext, None, None]:
        """Begin an append under the lot's thread lock."""
        if timeout is None:
            timeout = self._lock_timeout_ms / 1000

        lock = self._lock_for(lot_id)
        if not lock.acquire(timeout=timeout):
            raise LockTimeoutError(
                f"Ledger busy for lot {lot_id} - could not acquire lock within {timeout}s. Try again."
            )

        ctx = AppendContext(head=self.get_head(lot_id), _store=self, _conn=lock)
        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        if ctx._conn is None:
            raise StorageError("_do_commit called outside begin_append context")

        try:
            check_extends_head(self.get_head(ctx.lot_id), entry)
            self._entries.setdefault(ctx.lot_id, []).append(entry)
            return entry
        finally:
            lock, ctx._conn = ctx._conn, None
            lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            lock, ctx._conn = ctx._conn, None
            lock.release()

    def list_by_lot(self, lot_id: str) -> list[LedgerEntry]:
        return list(self._entries.get(lot_id, ()))

    def get_head(self, lot_id: str) -> ChainHead:
        return head_from_entries(lot_id, self.list_by_lot(lot_id))

    def list_recent(self, limit: int = 50) -> list[LedgerEntry]:
        everything = [e for entries in list(self._entries.values()) for e in entries]
        everything.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        return everything[:limit]

    def list_lot_ids(self) -> list[str]:
        return sorted(lot_id for lot_id, entries in self._entries.items() if entries)

    def get_entry_count(self) -> int:
        return sum(len(entries) for entries in list(self._entries.values()))

    def clear(self) -> None:
        """Clear all entries (for testing only)."""
        with self._registry_lock:
            self._entries.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    transaction_id          TEXT PRIMARY KEY,
    lot_id                  TEXT NOT NULL,
    sequence                INTEGER NOT NULL CHECK (sequence >= 0),
    entry_timestamp         TIMESTAMPTZ NOT NULL,
    event_type              TEXT NOT NULL,
    event_id                TEXT NOT NULL,
    previous_transaction_id TEXT REFERENCES ledger_entries (transaction_id),
    content_hash            CHAR(64) NOT NULL,
    participants            JSONB NOT NULL DEFAULT '[]'::jsonb,
    payload_json            JSONB NOT NULL,
    payload_canon           TEXT NOT NULL,
    canon_version           INTEGER NOT NULL,
    external_flow_id        TEXT,
    UNIQUE (lot_id, sequence)
);

CREATE INDEX IF NOT EXISTS ledger_entries_lot_idx
    ON ledger_entries (lot_id, entry_timestamp, sequence);

CREATE TABLE IF NOT EXISTS ledger_heads (
    lot_id              TEXT PRIMARY KEY,
    last_sequence       INTEGER NOT NULL DEFAULT -1,
    last_transaction_id TEXT,
    last_timestamp      TIMESTAMPTZ
);
"""

_ENTRY_COLUMNS = """
    transaction_id, lot_id, sequence, entry_timestamp, event_type, event_id,
    previous_transaction_id, content_hash, participants, payload_json,
    external_flow_id
"""

# PostgreSQL error codes for lock/statement timeout and duplicate keys
PGCODE_LOCK_NOT_AVAILABLE = "55P03"
PGCODE_QUERY_CANCELED = "57014"
PGCODE_UNIQUE_VIOLATION = "23505"


def pg_timeout_kind(e: Exception) -> Optional[str]:
    """
    Classify a PostgreSQL exception.

    Returns "lock", "statement", "timeout" or None.

    57014 (query_canceled) is raised for lock_timeout and statement_timeout
    alike, so the message decides which one it was.
    """
    pgcode = getattr(e, "pgcode", None)
    err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

    if pgcode == PGCODE_LOCK_NOT_AVAILABLE:
        return "lock"

    if pgcode == PGCODE_QUERY_CANCELED:
        if "lock timeout" in err_msg or "lock_timeout" in err_msg:
            return "lock"
        if "statement timeout" in err_msg or "statement_timeout" in err_msg:
            return "statement"
        return "timeout"

    if "lock" in err_msg and "timeout" in err_msg:
        return "lock"
    if "statement" in err_msg and "timeout" in err_msg:
        return "statement"

    return None


class PostgresLedgerStore(LedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Provides:
    - Durability (entries survive restarts)
    - Per-lot serialization across processes via FOR UPDATE on ledger_heads
    - UNIQUE (lot_id, sequence) as a last line of defense against forks
    - Lock and statement timeouts so no append hangs

    All transaction state (conn, cursor) is stored in AppendContext, NOT on
    the store, so one instance can be shared across threads.

    Usage:
        store = PostgresLedgerStore(lambda: psycopg2.connect(dsn))
        store.ensure_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the lot's head row (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except Exception as e:
            raise StorageError(f"Could not connect to ledger database: {e}") from e

    def ensure_schema(self) -> None:
        """Create tables if they do not exist yet."""
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
        except Exception as e:
            conn.rollback()
            raise StorageError(f"Could not create ledger schema: {e}") from e
        finally:
            conn.close()

    def _as_storage_error(self, e: Exception, lot_id: Optional[str] = None) -> StorageError:
        if isinstance(e, StorageError):
            return e
        where = f" for lot {lot_id}" if lot_id else ""
        if getattr(e, "pgcode", None) == PGCODE_UNIQUE_VIOLATION:
            return ConcurrencyError(
                f"Another append{where} claimed the same position. Try again."
            )
        kind = pg_timeout_kind(e)
        if kind == "lock":
            return LockTimeoutError(
                f"Ledger busy{where} - could not acquire lock. Try again."
            )
        if kind in ("statement", "timeout"):
            return StorageError(f"Ledger query timed out{where}. Try again.")
        return StorageError(f"Ledger storage failure{where}: {e}")

    @contextmanager
    def begin_append(
        self,
        lot_id: str,
        timeout: Optional[float] = None,
    ) -> Generator[AppendContext, None, None]:
        """
        Begin an append holding FOR UPDATE on the lot's head row.

        The connection and transaction are scoped to this context manager,
        so head lookup and commit are ALWAYS on the same connection.
        """
        lock_timeout_ms = self._lock_timeout_ms if timeout is None else int(timeout * 1000)

        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            try:
                cursor.execute("SELECT set_config('lock_timeout', %s, true)", (f"{lock_timeout_ms}ms",))
                cursor.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{self._statement_timeout_ms}ms",),
                )
                cursor.execute("""
                    INSERT INTO ledger_heads (lot_id, last_sequence)
                    VALUES (%s, -1)
                    ON CONFLICT (lot_id) DO NOTHING
                """, (lot_id,))
                cursor.execute("""
                    SELECT last_sequence, last_transaction_id, last_timestamp
                    FROM ledger_heads
                    WHERE lot_id = %s
                    FOR UPDATE
                """, (lot_id,))
                row = cursor.fetchone()
            except Exception as e:
                raise self._as_storage_error(e, lot_id) from e

            head = ChainHead(
                lot_id=lot_id,
                last_sequence=row[0],
                last_transaction_id=row[1],
                last_timestamp=row[2],
            )
            ctx = AppendContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except Exception:
                    pass  # Connection might already be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Insert the entry and move the head, then commit."""
        from psycopg2.extras import Json

        if ctx._cursor is None or ctx._conn is None:
            raise StorageError("_do_commit called outside begin_append context")

        cursor = ctx._cursor
        check_extends_head(ctx.head, entry)

        try:
            cursor.execute(f"""
                INSERT INTO ledger_entries ({_ENTRY_COLUMNS}, payload_canon, canon_version)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                entry.transaction_id,
                entry.lot_id,
                entry.sequence,
                entry.timestamp,
                entry.event_type.value,
                entry.event_id,
                entry.previous_transaction_id,
                entry.content_hash,
                Json(entry.participants),
                Json(entry.payload),
                Hasher.canonicalize(entry.payload),
                Hasher.SERIALIZATION_VERSION,
                entry.external_flow_id,
            ))
            cursor.execute("""
                UPDATE ledger_heads
                SET last_sequence = %s, last_transaction_id = %s, last_timestamp = %s
                WHERE lot_id = %s
            """, (entry.sequence, entry.transaction_id, entry.timestamp, entry.lot_id))
            ctx._conn.commit()
        except Exception as e:
            raise self._as_storage_error(e, entry.lot_id) from e

        return entry

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except Exception:
                pass

    def _query(self, sql: str, params: tuple = (), lot_id: Optional[str] = None) -> list[tuple]:
        """Run one read under the statement timeout, in its own transaction."""
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{self._statement_timeout_ms}ms",),
                )
                cursor.execute(sql, params)
                return cursor.fetchall()
        except Exception as e:
            raise self._as_storage_error(e, lot_id) from e
        finally:
            try:
                conn.rollback()
            except Exception:
                pass  # Connection might already be broken
            conn.close()

    def list_by_lot(self, lot_id: str) -> list[LedgerEntry]:
        rows = self._query(f"""
            SELECT {_ENTRY_COLUMNS}
            FROM ledger_entries
            WHERE lot_id = %s
            ORDER BY sequence
        """, (lot_id,), lot_id=lot_id)
        return [self._row_to_entry(row) for row in rows]

    def get_head(self, lot_id: str) -> ChainHead:
        rows = self._query("""
            SELECT last_sequence, last_transaction_id, last_timestamp
            FROM ledger_heads
            WHERE lot_id = %s
        """, (lot_id,), lot_id=lot_id)
        if not rows:
            return ChainHead(lot_id=lot_id)
        row = rows[0]
        return ChainHead(
            lot_id=lot_id,
            last_sequence=row[0],
            last_transaction_id=row[1],
            last_timestamp=row[2],
        )

    def list_recent(self, limit: int = 50) -> list[LedgerEntry]:
        rows = self._query(f"""
            SELECT {_ENTRY_COLUMNS}
            FROM ledger_entries
            ORDER BY entry_timestamp DESC, sequence DESC
            LIMIT %s
        """, (limit,))
        return [self._row_to_entry(row) for row in rows]

    def list_lot_ids(self) -> list[str]:
        rows = self._query("SELECT DISTINCT lot_id FROM ledger_entries ORDER BY lot_id")
        return [row[0] for row in rows]

    def get_entry_count(self) -> int:
        return self._query("SELECT COUNT(*) FROM ledger_entries")[0][0]

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        # JSONB may come back as str or already decoded depending on driver
        participants = row[8]
        if isinstance(participants, str):
            participants = json.loads(participants)
        payload = row[9]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return LedgerEntry(
            transaction_id=row[0],
            lot_id=row[1],
            sequence=row[2],
            timestamp=row[3],
            event_type=EventType(row[4]),
            event_id=row[5],
            previous_transaction_id=row[6],
            content_hash=row[7].strip(),
            participants=participants,
            payload=payload,
            external_flow_id=row[10],
        )
