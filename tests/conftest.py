"""Shared fixtures: a wired in-memory runtime, payload builders, tampering and a fake PostgreSQL."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ayutrace.db import InMemoryLedgerStore, LedgerSettings
from ayutrace.runtime import build_runtime
from ayutrace.schemas import (
    CollectionPayload,
    GeoLocation,
    LedgerEntry,
    LotCreatePayload,
    PackMintPayload,
    ProcessingPayload,
    QualityTestPayload,
)

HARVEST = datetime(2024, 3, 1, 6, 0, 0, tzinfo=timezone.utc)


class Payloads:
    """Valid payloads with overridable fields."""

    @staticmethod
    def lot(**overrides) -> LotCreatePayload:
        fields = {"name": "Ashwagandha Lot 7", "species": "Withania somnifera", "origin_region": "Madhya Pradesh"}
        fields.update(overrides)
        return LotCreatePayload(**fields)

    @staticmethod
    def collection(lot_id: str, **overrides) -> CollectionPayload:
        fields = {
            "lot_id": lot_id,
            "collector_id": "collector-1",
            "species": "Withania somnifera",
            "common_name": "Ashwagandha",
            "part_used": "root",
            "quantity_kg": Decimal("25.5"),
            "collection_date": HARVEST,
            "location": GeoLocation(lat=Decimal("23.2599"), lng=Decimal("77.4126")),
            "wild_harvested": True,
        }
        fields.update(overrides)
        return CollectionPayload(**fields)

    @staticmethod
    def processing(lot_id: str, **overrides) -> ProcessingPayload:
        fields = {
            "lot_id": lot_id,
            "processor_id": "processor-1",
            "process_type": "drying",
            "process_date": HARVEST + timedelta(days=2),
            "parameters": {"temperature_c": 45},
            "input_quantity_kg": Decimal("25.5"),
            "output_quantity_kg": Decimal("12"),
        }
        fields.update(overrides)
        return ProcessingPayload(**fields)

    @staticmethod
    def quality(lot_id: str, lead: str = "5", **overrides) -> QualityTestPayload:
        fields = {
            "lot_id": lot_id,
            "lab_id": "lab-1",
            "test_date": HARVEST + timedelta(days=5),
            "test_type": "heavy-metals",
            "parameters": {"lead": {"measured": lead, "unit": "ppm"}},
            "certification_number": "NABL-1234",
        }
        fields.update(overrides)
        return QualityTestPayload(**fields)

    @staticmethod
    def pack(lot_id: str, **overrides) -> PackMintPayload:
        fields = {
            "lot_id": lot_id,
            "manufacturer_id": "mfr-1",
            "sku": "ASH-500",
            "product_name": "Ashwagandha Root Powder",
            "batch_number": "B-2024-03",
            "manufacture_date": date(2024, 3, 10),
            "expiry_date": date(2026, 3, 10),
            "net_weight": "500 g",
            "gmp_certified": True,
        }
        fields.update(overrides)
        return PackMintPayload(**fields)


@pytest.fixture
def payloads():
    return Payloads


@pytest.fixture
def ledger_store():
    return InMemoryLedgerStore(lock_timeout_ms=100)


@pytest.fixture
def runtime(ledger_store):
    return build_runtime(settings=LedgerSettings(), ledger_store=ledger_store)


def _overwrite_entry(store: InMemoryLedgerStore, entry: LedgerEntry) -> None:
    """Replace a stored entry by transaction id, bypassing every check."""
    entries = store._entries.get(entry.lot_id, [])
    for i, existing in enumerate(entries):
        if existing.transaction_id == entry.transaction_id:
            entries[i] = entry
            return
    raise KeyError(entry.transaction_id)


@pytest.fixture
def tamper():
    """Simulates someone with raw storage access rewriting an entry."""
    return _overwrite_entry


# ============================================================
# FAKE POSTGRESQL
# ============================================================

class FakePgError(Exception):
    def __init__(self, pgcode, pgerror=""):
        super().__init__(pgerror)
        self.pgcode = pgcode
        self.pgerror = pgerror


class FakeCursor:
    def __init__(self, db: "FakePgDatabase"):
        self._db = db
        self._rows: list = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self._db.statements.append((" ".join(sql.split()), params))
        for fragment, error in self._db.failures:
            if fragment in sql:
                raise error
        self._rows = list(self._db.rows)

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def close(self):
        pass


class FakeConnection:
    autocommit = False

    def __init__(self, db: "FakePgDatabase"):
        self._db = db

    def cursor(self):
        return FakeCursor(self._db)

    def commit(self):
        self._db.commits += 1

    def rollback(self):
        self._db.rollbacks += 1

    def close(self):
        self._db.closed += 1


class FakePgDatabase:
    """
    Records what a store sends to PostgreSQL.

    Every query answers with ``rows``; ``fail_on`` makes any statement
    containing a fragment raise a driver-style error with a pgcode.
    """

    def __init__(self):
        self.statements: list = []
        self.failures: list = []
        self.rows: list = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def connect(self):
        return FakeConnection(self)

    def fail_on(self, fragment: str, pgcode: str, message: str = "") -> None:
        self.failures.append((fragment, FakePgError(pgcode, message)))

    def sql(self) -> list:
        return [statement for statement, _ in self.statements]


@pytest.fixture
def fake_pg():
    return FakePgDatabase()
