"""
Supply Chain Service

Event handlers for the herbal supply chain:
- Lots are created, then collected into, processed, tested and packed
- Every event is appended to the lot's ledger chain before it is recorded
- The lot aggregate is moved forward after the event is recorded

Recording order for every event:
1. The lot must exist (NotFoundError otherwise)
2. Evaluate measurements (quality tests only)
3. Append to the ledger with the acting party as participant
4. Store the event record with its transaction id
5. Apply the lot mutation

If the ledger append fails nothing is recorded and the lot is untouched.
"""

from datetime import datetime
from typing import Callable, Optional, TYPE_CHECKING, TypeVar
from uuid import uuid4

from ..observability import get_logger
from ..schemas import (
    AssayStatus,
    CollectionEvent,
    CollectionPayload,
    ComplianceReport,
    EventType,
    Lot,
    LotCreatePayload,
    LotStatus,
    Pack,
    PackMintPayload,
    ProcessingEvent,
    ProcessingPayload,
    QualityTestEvent,
    QualityTestPayload,
    RECOMMENDED_TESTS,
)
from ..schemas.provenance import (
    CollectionSummary,
    LotCompliance,
    ProcessingSummary,
    QualitySummary,
)
from . import fhir
from .compliance import ComplianceEvaluator
from .ledger import LedgerService, NotFoundError, utc_now

if TYPE_CHECKING:
    from ..db.records import RecordStore

logger = get_logger(__name__)

T = TypeVar("T")


def new_pack_id() -> str:
    return "PACK-" + uuid4().hex[:12].upper()


def _newest_first(records: list[T], key: Callable[[T], datetime]) -> list[T]:
    return sorted(records, key=key, reverse=True)


class SupplyChainService:
    """Records supply-chain events against lots."""

    def __init__(
        self,
        ledger: LedgerService,
        records: "RecordStore",
        evaluator: ComplianceEvaluator,
        base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._records = records
        self._evaluator = evaluator
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    @property
    def ledger(self) -> LedgerService:
        return self._ledger

    @property
    def records(self) -> "RecordStore":
        return self._records

    @property
    def evaluator(self) -> ComplianceEvaluator:
        return self._evaluator

    def provenance_url(self, pack_id: str) -> str:
        return f"{self._base_url}/provenance/{pack_id}"

    # ================================================================
    # LOTS
    # ================================================================

    def create_lot(self, payload: LotCreatePayload) -> Lot:
        now = self._clock()
        lot = Lot(
            id=str(uuid4()),
            name=payload.name,
            species=payload.species,
            origin_region=payload.origin_region,
            status=LotStatus.COLLECTED,
            current_quantity_kg=payload.current_quantity_kg,
            created_at=now,
            updated_at=now,
        )
        self._records.insert(lot)
        logger.info("Lot created", lot_id=lot.id, species=lot.species)
        return lot

    def get_lot(self, lot_id: str) -> Lot:
        lot = self._records.get(Lot, lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot

    def list_lots(self) -> list[Lot]:
        return _newest_first(self._records.list_all(Lot), key=lambda lot: lot.created_at)

    def update_lot_status(self, lot_id: str, status: LotStatus) -> Lot:
        self.get_lot(lot_id)
        lot = self._records.update(Lot, lot_id, status=LotStatus(status), updated_at=self._clock())
        logger.info("Lot status updated", lot_id=lot_id, status=lot.status.value)
        return lot

    # ================================================================
    # EVENTS
    # ================================================================

    def record_collection(self, payload: CollectionPayload) -> CollectionEvent:
        self.get_lot(payload.lot_id)

        event_id = str(uuid4())
        fhir_metadata = fhir.substance(
            event_id, payload.lot_id, payload.wild_harvested, payload.organic_certified
        )
        tx_id = self._ledger.append(
            EventType.COLLECTION,
            event_id,
            payload.lot_id,
            {**payload.model_dump(), "fhir_metadata": fhir_metadata},
            [payload.collector_id],
        )

        event = CollectionEvent(
            id=event_id,
            **payload.model_dump(),
            fhir_metadata=fhir_metadata,
            transaction_id=tx_id,
            created_at=self._clock(),
        )
        self._records.insert(event)

        self._records.update_with(Lot, payload.lot_id, lambda lot: {
            "current_quantity_kg": lot.current_quantity_kg + payload.quantity_kg,
            "status": LotStatus.COLLECTED,
            "updated_at": self._clock(),
        })
        return event

    def record_processing(self, payload: ProcessingPayload) -> ProcessingEvent:
        self.get_lot(payload.lot_id)

        event_id = str(uuid4())
        fhir_metadata = fhir.procedure(event_id, payload.lot_id, payload.process_type)
        tx_id = self._ledger.append(
            EventType.PROCESSING,
            event_id,
            payload.lot_id,
            {**payload.model_dump(), "fhir_metadata": fhir_metadata},
            [payload.processor_id],
        )

        event = ProcessingEvent(
            id=event_id,
            **payload.model_dump(),
            fhir_metadata=fhir_metadata,
            transaction_id=tx_id,
            created_at=self._clock(),
        )
        self._records.insert(event)
        self._records.update(Lot, payload.lot_id, status=LotStatus.PROCESSING, updated_at=self._clock())
        return event

    def record_quality_test(self, payload: QualityTestPayload) -> QualityTestEvent:
        """
        Evaluate and record a lab test.

        Raises:
            NotFoundError: If the lot does not exist
            ValidationError: If a thresholded measurement is not numeric
        """
        self.get_lot(payload.lot_id)

        parameters, overall = self._evaluator.evaluate(payload.test_type, payload.parameters)

        event_id = str(uuid4())
        fhir_metadata = fhir.diagnostic_report(event_id, payload.lot_id, payload.test_type, overall)
        fields = payload.model_dump(exclude={"parameters"})

        tx_id = self._ledger.append(
            EventType.QUALITY_TEST,
            event_id,
            payload.lot_id,
            {
                **fields,
                "parameters": {name: result.model_dump() for name, result in parameters.items()},
                "overall_status": overall,
                "fhir_metadata": fhir_metadata,
            },
            [payload.lab_id],
        )

        event = QualityTestEvent(
            id=event_id,
            **fields,
            parameters=parameters,
            overall_status=overall,
            fhir_metadata=fhir_metadata,
            transaction_id=tx_id,
            created_at=self._clock(),
        )
        self._records.insert(event)

        status = LotStatus.APPROVED if overall == AssayStatus.PASS else LotStatus.REJECTED
        self._records.update(Lot, payload.lot_id, status=status, updated_at=self._clock())

        logger.info(
            "Quality test recorded",
            lot_id=payload.lot_id,
            test_type=payload.test_type,
            overall_status=overall.value,
        )
        return event

    def mint_pack(self, payload: PackMintPayload) -> Pack:
        self.get_lot(payload.lot_id)

        pack_id = new_pack_id()
        provenance_url = self.provenance_url(pack_id)
        fhir_metadata = fhir.medication(
            pack_id,
            payload.sku,
            payload.product_name,
            payload.batch_number,
            payload.expiry_date,
            payload.ayush_license,
        )

        tx_id = self._ledger.append(
            EventType.PACK_MINT,
            pack_id,
            payload.lot_id,
            {
                **payload.model_dump(),
                "pack_id": pack_id,
                "provenance_url": provenance_url,
                "fhir_metadata": fhir_metadata,
            },
            [payload.manufacturer_id],
        )

        pack = Pack(
            id=pack_id,
            **payload.model_dump(),
            provenance_url=provenance_url,
            fhir_metadata=fhir_metadata,
            transaction_id=tx_id,
            created_at=self._clock(),
        )
        self._records.insert(pack)
        self._records.update(Lot, payload.lot_id, status=LotStatus.PACKED, updated_at=self._clock())

        logger.info("Pack minted", pack_id=pack_id, lot_id=payload.lot_id)
        return pack

    # ================================================================
    # QUERIES
    # ================================================================

    def get_pack(self, pack_id: str) -> Pack:
        pack = self._records.get(Pack, pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")
        return pack

    def _list(self, model: type[T], lot_id: Optional[str]) -> list[T]:
        if lot_id is not None:
            return self._records.list_by_lot(model, lot_id)
        return self._records.list_all(model)

    def list_packs(self, lot_id: Optional[str] = None) -> list[Pack]:
        return _newest_first(self._list(Pack, lot_id), key=lambda p: p.created_at)

    def list_collections(self, lot_id: Optional[str] = None) -> list[CollectionEvent]:
        return _newest_first(self._list(CollectionEvent, lot_id), key=lambda e: e.collection_date)

    def list_processing(self, lot_id: Optional[str] = None) -> list[ProcessingEvent]:
        return _newest_first(self._list(ProcessingEvent, lot_id), key=lambda e: e.process_date)

    def list_quality_tests(self, lot_id: Optional[str] = None) -> list[QualityTestEvent]:
        return _newest_first(self._list(QualityTestEvent, lot_id), key=lambda e: e.test_date)

    def compliance_report(self, lot_id: str) -> ComplianceReport:
        """Regulator-facing summary of a lot's events and test coverage."""
        lot = self.get_lot(lot_id)
        collections = self._records.list_by_lot(CollectionEvent, lot_id)
        processing = self._records.list_by_lot(ProcessingEvent, lot_id)
        tests = self._records.list_by_lot(QualityTestEvent, lot_id)

        tested_types = {t.test_type for t in tests}

        return ComplianceReport(
            lot=lot,
            collection=CollectionSummary(
                total_events=len(collections),
                organic_certified=sum(1 for e in collections if e.organic_certified),
                wild_harvested=sum(1 for e in collections if e.wild_harvested),
            ),
            processing=ProcessingSummary(
                total_events=len(processing),
                process_types=sorted({e.process_type.value for e in processing}),
            ),
            quality_tests=QualitySummary(
                total_tests=len(tests),
                passed=sum(1 for t in tests if t.overall_status == AssayStatus.PASS),
                failed=sum(1 for t in tests if t.overall_status == AssayStatus.FAIL),
                conditional=sum(1 for t in tests if t.overall_status == AssayStatus.CONDITIONAL),
                test_types=sorted(tested_types),
            ),
            compliance=LotCompliance(
                is_compliant=bool(tests) and all(t.overall_status != AssayStatus.FAIL for t in tests),
                missing_tests=[t for t in RECOMMENDED_TESTS if t not in tested_types],
            ),
            generated_at=self._clock(),
        )
