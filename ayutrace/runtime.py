"""
Service Wiring

Builds the stores and services the API runs on. Nothing here is a module
global: main.create_app() builds one Runtime and hangs it on app.state.

Store selection is driven by environment variables:
- LEDGERSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: In-memory (default for development)

The record store always follows the ledger store's driver.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .core import (
    ComplianceEvaluator,
    CordaStubLedger,
    ExternalLedger,
    LedgerService,
    NullExternalLedger,
    ProvenanceAggregator,
    SupplyChainService,
)
from .core.ledger import utc_now
from .db.config import (
    DatabaseConfig,
    ExternalLedgerKind,
    LedgerSettings,
    LedgerStoreDriver,
)
from .db.records import InMemoryRecordStore, PostgresRecordStore, RecordStore
from .db.store import InMemoryLedgerStore, LedgerStore, StorageError
from .db.thresholds import ThresholdStore
from .observability import MetricsCollector, get_logger

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Everything a request handler may need."""
    settings: LedgerSettings
    ledger: LedgerService
    records: RecordStore
    thresholds: ThresholdStore
    evaluator: ComplianceEvaluator
    supply_chain: SupplyChainService
    provenance: ProvenanceAggregator
    metrics: MetricsCollector = field(default_factory=MetricsCollector)


def create_ledger_store(settings: LedgerSettings) -> LedgerStore:
    """
    Create the LedgerStore the settings ask for.

    Raises:
        StorageError: If PostgreSQL is selected but cannot be reached
    """
    if settings.driver == LedgerStoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore(lock_timeout_ms=settings.lock_timeout_ms)

    return _create_psycopg2_store(DatabaseConfig.from_env(), settings)


def create_record_store(settings: LedgerSettings) -> RecordStore:
    """
    Create the RecordStore for the same driver as the ledger.

    Raises:
        StorageError: If PostgreSQL is selected but cannot be reached
    """
    if settings.driver == LedgerStoreDriver.MEMORY:
        return InMemoryRecordStore()

    config = DatabaseConfig.from_env()
    records = PostgresRecordStore(
        _psycopg2_connection_factory(config),
        lock_timeout_ms=settings.lock_timeout_ms,
        statement_timeout_ms=settings.statement_timeout_ms,
    )
    try:
        records.ensure_schema()
    except StorageError:
        logger.error("Could not reach PostgreSQL", url=config.to_url(include_password=False))
        raise
    logger.info("PostgreSQL record store ready", host=f"{config.host}:{config.port}/{config.database}")
    return records


def _psycopg2_connection_factory(config: DatabaseConfig) -> Callable[[], Any]:
    import psycopg2

    def connection_factory():
        return psycopg2.connect(**config.connect_kwargs())

    return connection_factory


def _create_psycopg2_store(config: DatabaseConfig, settings: LedgerSettings) -> LedgerStore:
    """Create PostgresLedgerStore with psycopg2 and make sure its tables exist."""
    from .db.store import PostgresLedgerStore

    store = PostgresLedgerStore(
        _psycopg2_connection_factory(config),
        lock_timeout_ms=settings.lock_timeout_ms,
        statement_timeout_ms=settings.statement_timeout_ms,
    )
    try:
        store.ensure_schema()
    except StorageError:
        logger.error("Could not reach PostgreSQL", url=config.to_url(include_password=False))
        raise

    logger.info(
        "PostgreSQL ledger store ready",
        host=f"{config.host}:{config.port}/{config.database}",
    )
    return store


def create_external_ledger(settings: LedgerSettings) -> ExternalLedger:
    if settings.external_ledger == ExternalLedgerKind.CORDA_STUB:
        return CordaStubLedger()
    return NullExternalLedger()


def build_runtime(
    settings: Optional[LedgerSettings] = None,
    ledger_store: Optional[LedgerStore] = None,
    records: Optional[RecordStore] = None,
    thresholds: Optional[ThresholdStore] = None,
    external: Optional[ExternalLedger] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Runtime:
    """
    Wire the services together.

    Anything not passed in is built from settings (or the environment
    when settings are not given).
    """
    settings = settings or LedgerSettings.from_env()
    metrics = MetricsCollector()

    if ledger_store is None:
        ledger_store = create_ledger_store(settings)
    if records is None:
        records = create_record_store(settings)
    if thresholds is None:
        thresholds = ThresholdStore.with_defaults() if settings.seed_thresholds else ThresholdStore()
    if external is None:
        external = create_external_ledger(settings)

    ledger = LedgerService(ledger_store, external=external, clock=clock, metrics=metrics)
    evaluator = ComplianceEvaluator(thresholds)

    return Runtime(
        settings=settings,
        ledger=ledger,
        records=records,
        thresholds=thresholds,
        evaluator=evaluator,
        supply_chain=SupplyChainService(
            ledger, records, evaluator, base_url=settings.base_url, clock=clock
        ),
        provenance=ProvenanceAggregator(ledger, records),
        metrics=metrics,
    )
