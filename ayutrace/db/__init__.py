"""
Storage Layer for the AyuTrace Ledger

Provides:
- LedgerStore abstraction (InMemory for dev, Postgres for prod)
- Record store for lots, packs and event records
- Threshold store for regulatory limits
- Environment-based configuration
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    PostgresLedgerStore,
    ChainHead,
    StorageError,
    LockTimeoutError,
    ConcurrencyError,
    ChainIntegrityError,
)
from .records import (
    RecordStore,
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordNotFound,
    DuplicateRecord,
)
from .thresholds import ThresholdStore, DEFAULT_THRESHOLDS
from .config import DatabaseConfig, LedgerSettings, get_database_url

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "ChainHead",
    "StorageError",
    "LockTimeoutError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "RecordStore",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "RecordNotFound",
    "DuplicateRecord",
    "ThresholdStore",
    "DEFAULT_THRESHOLDS",
    "DatabaseConfig",
    "LedgerSettings",
    "get_database_url",
]
