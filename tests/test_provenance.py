"""
Tests for the consumer-facing provenance trace.

Compliance precedence: non-compliant > pending > compliant.
"""

import pytest
from datetime import timedelta

from ayutrace.core import NotFoundError
from ayutrace.db import InMemoryRecordStore, LedgerSettings
from ayutrace.runtime import build_runtime
from ayutrace.schemas import (
    CheckpointStatus,
    ComplianceStatus,
    EventType,
    Lot,
    OverallCompliance,
)


def checkpoints(trace) -> dict:
    return {c.checkpoint: c.status for c in trace.compliance_status.details}


class TestComplianceStatus:

    def test_starts_compliant(self):
        assert ComplianceStatus().overall_status == OverallCompliance.COMPLIANT

    def test_pending_downgrades_compliant(self):
        status = ComplianceStatus()
        status.record("A", CheckpointStatus.PASS, "ok")
        status.record("B", CheckpointStatus.PENDING, "later")
        assert status.overall_status == OverallCompliance.PENDING

    def test_fail_is_sticky(self):
        status = ComplianceStatus()
        status.record("A", CheckpointStatus.FAIL, "bad")
        status.record("B", CheckpointStatus.PENDING, "later")
        status.record("C", CheckpointStatus.PASS, "ok")
        assert status.overall_status == OverallCompliance.NON_COMPLIANT
        assert [c.checkpoint for c in status.details] == ["A", "B", "C"]


class TestProvenanceTrace:

    @pytest.fixture
    def lot(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())
        sc.record_collection(payloads.collection(lot.id))
        sc.record_processing(payloads.processing(lot.id))
        return lot

    def test_fully_compliant_pack(self, runtime, payloads, lot):
        sc = runtime.supply_chain
        sc.record_quality_test(payloads.quality(lot.id, lead="5"))
        pack = sc.mint_pack(payloads.pack(lot.id))

        trace = runtime.provenance.trace(pack.id)

        assert trace.pack.id == pack.id
        assert trace.lot.id == lot.id
        assert trace.lot.status.value == "packed"
        assert len(trace.collection_events) == 1
        assert len(trace.processing_events) == 1
        assert len(trace.quality_tests) == 1
        assert [e.event_type for e in trace.ledger_path] == [
            EventType.COLLECTION, EventType.PROCESSING, EventType.QUALITY_TEST, EventType.PACK_MINT,
        ]
        assert trace.ledger_verification.valid
        assert trace.compliance_status.overall_status == OverallCompliance.COMPLIANT
        assert list(checkpoints(trace)) == [
            "Collection Event", "Quality Testing", "Ledger Integrity", "GMP Certification",
        ]

    def test_untested_lot_is_pending(self, runtime, payloads, lot):
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id))

        trace = runtime.provenance.trace(pack.id)

        assert checkpoints(trace)["Quality Testing"] == CheckpointStatus.PENDING
        assert trace.compliance_status.overall_status == OverallCompliance.PENDING

    def test_missing_gmp_is_pending(self, runtime, payloads, lot):
        runtime.supply_chain.record_quality_test(payloads.quality(lot.id))
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id, gmp_certified=False))

        trace = runtime.provenance.trace(pack.id)

        assert checkpoints(trace)["GMP Certification"] == CheckpointStatus.PENDING
        assert trace.compliance_status.overall_status == OverallCompliance.PENDING

    def test_failed_test_overrides_pending(self, runtime, payloads, lot):
        runtime.supply_chain.record_quality_test(payloads.quality(lot.id, lead="15"))
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id, gmp_certified=False))

        trace = runtime.provenance.trace(pack.id)

        assert checkpoints(trace)["Quality Testing"] == CheckpointStatus.FAIL
        assert trace.compliance_status.overall_status == OverallCompliance.NON_COMPLIANT

    def test_no_collection_fails(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())
        sc.record_quality_test(payloads.quality(lot.id))
        pack = sc.mint_pack(payloads.pack(lot.id))

        trace = runtime.provenance.trace(pack.id)

        assert checkpoints(trace)["Collection Event"] == CheckpointStatus.FAIL
        assert trace.compliance_status.overall_status == OverallCompliance.NON_COMPLIANT

    def test_tampered_ledger_is_non_compliant(self, runtime, payloads, lot, ledger_store, tamper):
        runtime.supply_chain.record_quality_test(payloads.quality(lot.id))
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id))

        victim = runtime.ledger.chain_for(lot.id)[0]
        tamper(ledger_store, victim.model_copy(
            update={"payload": {**victim.payload, "quantity_kg": "2550"}}
        ))

        trace = runtime.provenance.trace(pack.id)

        assert not trace.ledger_verification.valid
        assert trace.ledger_verification.message == f"Hash mismatch at entry {victim.transaction_id}"
        assert checkpoints(trace)["Ledger Integrity"] == CheckpointStatus.FAIL
        assert trace.compliance_status.overall_status == OverallCompliance.NON_COMPLIANT

    def test_tampered_trace_counts_as_failed_verification(self, runtime, payloads, lot, ledger_store, tamper):
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id))
        victim = runtime.ledger.chain_for(lot.id)[0]
        tamper(ledger_store, victim.model_copy(update={"payload": {}}))

        runtime.provenance.trace(pack.id)

        summary = runtime.metrics.get_summary()
        assert summary["verifications"] == 1
        assert summary["verifications_failed"] == 1

    def test_events_in_ascending_order(self, runtime, payloads, lot):
        sc = runtime.supply_chain
        later = payloads.processing(lot.id).process_date + timedelta(days=3)
        sc.record_processing(payloads.processing(lot.id, process_type="grinding", process_date=later))
        pack = sc.mint_pack(payloads.pack(lot.id))

        dates = [e.process_date for e in runtime.provenance.trace(pack.id).processing_events]
        assert dates == sorted(dates)

    def test_trace_is_recomputed(self, runtime, payloads, lot):
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id))
        before = runtime.provenance.trace(pack.id)

        runtime.supply_chain.record_quality_test(payloads.quality(lot.id))
        after = runtime.provenance.trace(pack.id)

        assert before.compliance_status.overall_status == OverallCompliance.PENDING
        assert after.compliance_status.overall_status == OverallCompliance.COMPLIANT

    def test_unknown_pack(self, runtime):
        with pytest.raises(NotFoundError, match="Pack"):
            runtime.provenance.trace("PACK-FFFFFFFFFFFF")

    def test_pack_whose_lot_vanished(self, runtime, payloads, lot):
        pack = runtime.supply_chain.mint_pack(payloads.pack(lot.id))
        runtime.records.clear()
        runtime.records.insert(pack)

        with pytest.raises(NotFoundError, match="Lot"):
            runtime.provenance.trace(pack.id)

        assert runtime.records.get(Lot, lot.id) is None


class TestTraceAcrossRestart:
    """A second runtime over the same stores sees everything the first recorded."""

    def test_trace_survives_runtime_rebuild(self, payloads, ledger_store):
        records = InMemoryRecordStore()
        first = build_runtime(settings=LedgerSettings(), ledger_store=ledger_store, records=records)

        lot = first.supply_chain.create_lot(payloads.lot())
        first.supply_chain.record_collection(payloads.collection(lot.id))
        pack = first.supply_chain.mint_pack(payloads.pack(lot.id))

        second = build_runtime(settings=LedgerSettings(), ledger_store=ledger_store, records=records)
        trace = second.provenance.trace(pack.id)

        assert trace.lot.id == lot.id
        assert len(trace.ledger_path) == 2
        assert trace.ledger_verification.valid
        assert second.supply_chain.compliance_report(lot.id).lot.id == lot.id
