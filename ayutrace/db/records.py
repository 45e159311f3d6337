"""
Record Store - Lots, Packs and Event Records

The mutable side of the system. The ledger proves what happened; the
record store holds the current shape of things (lot status, quantities)
and the full event records the ledger entries point to.

Records are pydantic models with an ``id`` field, grouped by model class.
Event records also carry ``lot_id`` and can be listed per lot.

InMemoryRecordStore serves development and tests. PostgresRecordStore
keeps records in the same database as the ledger, so both survive a
restart together.

USAGE:
    records = InMemoryRecordStore()
    records.insert(lot)
    records.update(Lot, lot.id, status=LotStatus.PACKED)
    records.list_by_lot(CollectionEvent, lot.id)
"""

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional, TypeVar

from pydantic import BaseModel

from .store import (
    PGCODE_UNIQUE_VIOLATION,
    LockTimeoutError,
    StorageError,
    pg_timeout_kind,
)


R = TypeVar("R", bound=BaseModel)


class RecordNotFound(KeyError):
    """Raised when updating a record that does not exist."""
    pass


class DuplicateRecord(ValueError):
    """Raised when inserting a record whose id is already taken."""
    pass


class RecordStore(ABC):
    """Keyed storage for lots, packs and event records."""

    @abstractmethod
    def insert(self, record: R) -> R:
        pass

    @abstractmethod
    def get(self, model: type[R], record_id: str) -> Optional[R]:
        pass

    @abstractmethod
    def list_by_lot(self, model: type[R], lot_id: str) -> list[R]:
        """Records of a kind for one lot, in insertion order."""
        pass

    @abstractmethod
    def list_all(self, model: type[R]) -> list[R]:
        """Records of a kind, in insertion order."""
        pass

    @abstractmethod
    def update(self, model: type[R], record_id: str, **fields: Any) -> R:
        """
        Replace a record with a copy carrying the given field values.

        Raises:
            RecordNotFound: If no such record exists
        """
        pass

    @abstractmethod
    def update_with(self, model: type[R], record_id: str, change: Callable[[R], dict[str, Any]]) -> R:
        """
        Read-modify-write a record atomically.

        ``change`` receives the current record and returns the fields to set.
        """
        pass

    @abstractmethod
    def count(self, model: type[R]) -> int:
        pass


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-memory record store.

    Updates swap the whole record under a lock, so readers observe either
    the old record or the new one.
    """

    def __init__(self):
        self._tables: dict[type, dict[str, BaseModel]] = {}
        self._lock = threading.RLock()

    def _table(self, model: type) -> dict[str, BaseModel]:
        return self._tables.setdefault(model, {})

    def insert(self, record: R) -> R:
        with self._lock:
            table = self._table(type(record))
            if record.id in table:
                raise DuplicateRecord(f"{type(record).__name__} {record.id} already exists")
            table[record.id] = record
        return record

    def get(self, model: type[R], record_id: str) -> Optional[R]:
        with self._lock:
            return self._table(model).get(record_id)

    def list_by_lot(self, model: type[R], lot_id: str) -> list[R]:
        with self._lock:
            return [r for r in self._table(model).values() if getattr(r, "lot_id", None) == lot_id]

    def list_all(self, model: type[R]) -> list[R]:
        with self._lock:
            return list(self._table(model).values())

    def update(self, model: type[R], record_id: str, **fields: Any) -> R:
        with self._lock:
            table = self._table(model)
            current = table.get(record_id)
            if current is None:
                raise RecordNotFound(f"{model.__name__} {record_id} not found")
            updated = current.model_copy(update=fields)
            table[record_id] = updated
            return updated

    def update_with(self, model: type[R], record_id: str, change: Callable[[R], dict[str, Any]]) -> R:
        with self._lock:
            current = self.get(model, record_id)
            if current is None:
                raise RecordNotFound(f"{model.__name__} {record_id} not found")
            return self.update(model, record_id, **change(current))

    def count(self, model: type[R]) -> int:
        with self._lock:
            return len(self._table(model))

    def clear(self) -> None:
        """Clear all records (for testing only)."""
        with self._lock:
            self._tables.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

RECORDS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    kind        TEXT NOT NULL,
    record_id   TEXT NOT NULL,
    lot_id      TEXT,
    position    BIGSERIAL,
    body        JSONB NOT NULL,
    PRIMARY KEY (kind, record_id)
);

CREATE INDEX IF NOT EXISTS records_lot_idx
    ON records (kind, lot_id, position);
"""


class PostgresRecordStore(RecordStore):
    """
    PostgreSQL implementation of RecordStore.

    Every record kind shares one table keyed by (model name, id). Records
    are stored as their JSON dump and validated back into the model on
    read.

    Each call runs in its own transaction under statement_timeout and
    lock_timeout. Read-modify-write updates hold FOR UPDATE on the row, so
    concurrent quantity increments on one lot serialize across processes.

    Usage:
        records = PostgresRecordStore(lambda: psycopg2.connect(dsn))
        records.ensure_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except Exception as e:
            raise StorageError(f"Could not connect to record database: {e}") from e

    def ensure_schema(self) -> None:
        with self._transaction() as cursor:
            cursor.execute(RECORDS_SCHEMA_SQL)

    @staticmethod
    def _as_error(e: Exception) -> Exception:
        if isinstance(e, (StorageError, RecordNotFound, DuplicateRecord)):
            return e
        if getattr(e, "pgcode", None) == PGCODE_UNIQUE_VIOLATION:
            return DuplicateRecord("Record already exists")
        kind = pg_timeout_kind(e)
        if kind == "lock":
            return LockTimeoutError("Record store busy - could not acquire lock. Try again.")
        if kind is not None:
            return StorageError("Record store query timed out. Try again.")
        return StorageError(f"Record store failure: {e}")

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """Yield a cursor inside one bounded transaction; commit on success."""
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT set_config('lock_timeout', %s, true)", (f"{self._lock_timeout_ms}ms",))
                cursor.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{self._statement_timeout_ms}ms",),
                )
                yield cursor
            conn.commit()
        except Exception as e:
            try:
                conn.rollback()
            except Exception:
                pass  # Connection might already be broken
            error = self._as_error(e)
            if error is e:
                raise
            raise error from e
        finally:
            conn.close()

    @staticmethod
    def _decode(model: type[R], body: Any) -> R:
        # JSONB may come back as str or already decoded depending on driver
        if isinstance(body, str):
            body = json.loads(body)
        return model.model_validate(body)

    def insert(self, record: R) -> R:
        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO records (kind, record_id, lot_id, body)
                    VALUES (%s, %s, %s, %s::jsonb)
                """, (
                    type(record).__name__,
                    record.id,
                    getattr(record, "lot_id", None),
                    json.dumps(record.model_dump(mode="json")),
                ))
        except DuplicateRecord:
            raise DuplicateRecord(f"{type(record).__name__} {record.id} already exists") from None
        return record

    def get(self, model: type[R], record_id: str) -> Optional[R]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT body FROM records WHERE kind = %s AND record_id = %s",
                (model.__name__, record_id),
            )
            row = cursor.fetchone()
        return None if row is None else self._decode(model, row[0])

    def list_by_lot(self, model: type[R], lot_id: str) -> list[R]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT body FROM records WHERE kind = %s AND lot_id = %s ORDER BY position",
                (model.__name__, lot_id),
            )
            rows = cursor.fetchall()
        return [self._decode(model, row[0]) for row in rows]

    def list_all(self, model: type[R]) -> list[R]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT body FROM records WHERE kind = %s ORDER BY position",
                (model.__name__,),
            )
            rows = cursor.fetchall()
        return [self._decode(model, row[0]) for row in rows]

    def update(self, model: type[R], record_id: str, **fields: Any) -> R:
        return self.update_with(model, record_id, lambda _current: fields)

    def update_with(self, model: type[R], record_id: str, change: Callable[[R], dict[str, Any]]) -> R:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT body FROM records WHERE kind = %s AND record_id = %s FOR UPDATE",
                (model.__name__, record_id),
            )
            row = cursor.fetchone()
            if row is None:
                raise RecordNotFound(f"{model.__name__} {record_id} not found")

            current = self._decode(model, row[0])
            updated = current.model_copy(update=change(current))
            cursor.execute(
                "UPDATE records SET body = %s::jsonb WHERE kind = %s AND record_id = %s",
                (json.dumps(updated.model_dump(mode="json")), model.__name__, record_id),
            )
        return updated

    def count(self, model: type[R]) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM records WHERE kind = %s", (model.__name__,))
            return cursor.fetchone()[0]
