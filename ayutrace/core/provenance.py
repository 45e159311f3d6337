"""
Provenance Aggregator

Builds the consumer-facing trace for a pack: everything that happened to
its lot, the ledger path proving it, and a compliance summary derived
from both. Nothing here is stored; every trace is recomputed.
"""

from typing import TYPE_CHECKING

from ..schemas import (
    CheckpointStatus,
    CollectionEvent,
    ComplianceStatus,
    Lot,
    Pack,
    ProcessingEvent,
    ProvenanceTrace,
    QualityTestEvent,
    AssayStatus,
    VerificationResult,
)
from .ledger import LedgerService, NotFoundError

if TYPE_CHECKING:
    from ..db.records import RecordStore


def assess_compliance(
    pack: Pack,
    collections: list[CollectionEvent],
    tests: list[QualityTestEvent],
    verification: VerificationResult,
) -> ComplianceStatus:
    """
    Fold the four checkpoints into one status.

    Precedence: non-compliant > pending > compliant.
    """
    status = ComplianceStatus()

    if collections:
        status.record(
            "Collection Event",
            CheckpointStatus.PASS,
            f"{len(collections)} collection event(s) recorded",
        )
    else:
        status.record("Collection Event", CheckpointStatus.FAIL, "No collection events found")

    failed = [t for t in tests if t.overall_status == AssayStatus.FAIL]
    if not tests:
        status.record("Quality Testing", CheckpointStatus.PENDING, "No quality tests performed")
    elif failed:
        status.record("Quality Testing", CheckpointStatus.FAIL, f"{len(failed)} test(s) failed")
    else:
        status.record("Quality Testing", CheckpointStatus.PASS, f"All {len(tests)} test(s) passed")

    if verification.valid:
        status.record("Ledger Integrity", CheckpointStatus.PASS, verification.message)
    else:
        status.record("Ledger Integrity", CheckpointStatus.FAIL, verification.message)

    if pack.gmp_certified:
        status.record("GMP Certification", CheckpointStatus.PASS, "GMP certified manufacturing")
    else:
        status.record("GMP Certification", CheckpointStatus.PENDING, "GMP certification not found")

    return status


class ProvenanceAggregator:
    def __init__(self, ledger: LedgerService, records: "RecordStore"):
        self._ledger = ledger
        self._records = records

    def trace(self, pack_id: str) -> ProvenanceTrace:
        """
        Assemble the full provenance of a pack.

        Raises:
            NotFoundError: If the pack, or the lot it came from, is unknown
        """
        pack = self._records.get(Pack, pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")

        lot = self._records.get(Lot, pack.lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {pack.lot_id} for pack {pack_id} not found")

        collections = sorted(
            self._records.list_by_lot(CollectionEvent, lot.id), key=lambda e: e.collection_date
        )
        processing = sorted(
            self._records.list_by_lot(ProcessingEvent, lot.id), key=lambda e: e.process_date
        )
        tests = sorted(
            self._records.list_by_lot(QualityTestEvent, lot.id), key=lambda t: t.test_date
        )

        # One read of the chain serves both the path and its verification
        path = self._ledger.chain_for(lot.id)
        verification = self._ledger.verify_chain(lot.id, path)

        return ProvenanceTrace(
            pack=pack,
            lot=lot,
            collection_events=collections,
            processing_events=processing,
            quality_tests=tests,
            ledger_path=path,
            ledger_verification=verification,
            compliance_status=assess_compliance(pack, collections, tests, verification),
        )
