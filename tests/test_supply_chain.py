"""
Tests for supply-chain event recording.

Each event must land in the ledger chain, in the record store and on the
lot aggregate, in that order, or not at all.
"""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ayutrace.core import NotFoundError, ValidationError
from ayutrace.core.supply_chain import new_pack_id
from ayutrace.schemas import (
    AssayStatus,
    CollectionEvent,
    EventType,
    LotStatus,
    ProcessingPayload,
)
from pydantic import ValidationError as SchemaError

HARVEST = datetime(2024, 3, 1, 6, 0, 0, tzinfo=timezone.utc)


class TestLots:

    def test_create_lot(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())

        assert lot.status == LotStatus.COLLECTED
        assert lot.current_quantity_kg == Decimal("0")
        assert runtime.supply_chain.get_lot(lot.id) == lot

    def test_lot_creation_is_not_chained(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())
        assert runtime.ledger.chain_for(lot.id) == []

    def test_missing_lot(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.supply_chain.get_lot("no-such-lot")

    def test_list_newest_first(self, runtime, payloads):
        first = runtime.supply_chain.create_lot(payloads.lot(name="first"))
        second = runtime.supply_chain.create_lot(payloads.lot(name="second"))

        listed = runtime.supply_chain.list_lots()
        assert {lot.id for lot in listed} == {first.id, second.id}
        assert listed[0].created_at >= listed[1].created_at

    def test_manual_status_update(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())
        updated = runtime.supply_chain.update_lot_status(lot.id, LotStatus.TESTED)

        assert updated.status == LotStatus.TESTED
        assert runtime.supply_chain.get_lot(lot.id).status == LotStatus.TESTED

    def test_status_update_on_missing_lot(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.supply_chain.update_lot_status("ghost", LotStatus.APPROVED)


class TestCollection:

    def test_collection_chains_and_bumps_quantity(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        event = sc.record_collection(payloads.collection(lot.id))

        chain = runtime.ledger.chain_for(lot.id)
        assert len(chain) == 1
        assert chain[0].transaction_id == event.transaction_id
        assert chain[0].event_type == EventType.COLLECTION
        assert chain[0].participants == ["collector-1"]
        assert sc.get_lot(lot.id).current_quantity_kg == Decimal("25.5")

    def test_quantities_accumulate(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        sc.record_collection(payloads.collection(lot.id, quantity_kg=Decimal("10")))
        sc.record_collection(payloads.collection(lot.id, quantity_kg=Decimal("2.25")))

        assert sc.get_lot(lot.id).current_quantity_kg == Decimal("12.25")

    def test_concurrent_collections_do_not_lose_quantity(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        def collect():
            for _ in range(5):
                sc.record_collection(payloads.collection(lot.id, quantity_kg=Decimal("1")))

        threads = [threading.Thread(target=collect) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sc.get_lot(lot.id).current_quantity_kg == Decimal("20")
        assert runtime.ledger.verify(lot.id).entry_count == 20

    def test_fhir_substance_attached(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())
        event = runtime.supply_chain.record_collection(payloads.collection(lot.id))

        assert event.fhir_metadata["resourceType"] == "Substance"
        assert runtime.ledger.chain_for(lot.id)[0].payload["fhir_metadata"]["resourceType"] == "Substance"

    def test_unknown_lot_records_nothing(self, runtime, payloads):
        with pytest.raises(NotFoundError):
            runtime.supply_chain.record_collection(payloads.collection("ghost"))

        assert runtime.ledger.get_entry_count() == 0
        assert runtime.records.count(CollectionEvent) == 0


class TestProcessing:

    def test_processing_moves_status(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())
        sc.record_collection(payloads.collection(lot.id))

        event = sc.record_processing(payloads.processing(lot.id))

        assert sc.get_lot(lot.id).status == LotStatus.PROCESSING
        assert event.yield_percentage == Decimal("47.06")
        chain = runtime.ledger.chain_for(lot.id)
        assert chain[-1].previous_transaction_id == chain[0].transaction_id

    def test_output_cannot_exceed_input(self, payloads):
        with pytest.raises(SchemaError):
            payloads.processing("lot", input_quantity_kg=Decimal("1"), output_quantity_kg=Decimal("2"))

    def test_float_parameters_become_decimal(self):
        payload = ProcessingPayload(
            lot_id="lot", processor_id="p", process_type="drying", process_date=HARVEST,
            parameters={"temperature_c": 45.5, "nested": {"humidity": 0.12}},
            input_quantity_kg=Decimal("1"), output_quantity_kg=Decimal("1"),
        )
        assert payload.parameters == {"temperature_c": Decimal("45.5"), "nested": {"humidity": Decimal("0.12")}}


class TestQualityTests:

    def test_failing_test_rejects_lot(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        event = sc.record_quality_test(payloads.quality(lot.id, lead="15"))

        assert event.overall_status == AssayStatus.FAIL
        assert sc.get_lot(lot.id).status == LotStatus.REJECTED
        stored = runtime.ledger.chain_for(lot.id)[0].payload
        assert stored["overall_status"] == "fail"
        assert stored["parameters"]["lead"]["threshold"]["max"] == "10"

    def test_passing_test_approves_lot(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        event = sc.record_quality_test(payloads.quality(lot.id, lead="5"))

        assert event.overall_status == AssayStatus.PASS
        assert sc.get_lot(lot.id).status == LotStatus.APPROVED

    def test_non_numeric_measurement_records_nothing(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        with pytest.raises(ValidationError):
            sc.record_quality_test(payloads.quality(lot.id, lead="trace"))

        assert runtime.ledger.chain_for(lot.id) == []
        assert sc.get_lot(lot.id).status == LotStatus.COLLECTED

    def test_list_newest_first(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())
        sc.record_quality_test(payloads.quality(lot.id))
        sc.record_quality_test(payloads.quality(lot.id, test_date=HARVEST + timedelta(days=30)))

        dates = [t.test_date for t in sc.list_quality_tests(lot.id)]
        assert dates == sorted(dates, reverse=True)
        assert sc.list_quality_tests("other-lot") == []


class TestPacks:

    def test_pack_id_format(self):
        pack_id = new_pack_id()
        assert pack_id.startswith("PACK-")
        assert len(pack_id) == 17
        assert pack_id[5:] == pack_id[5:].upper()

    def test_mint_pack(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())

        pack = sc.mint_pack(payloads.pack(lot.id))

        assert pack.provenance_url == f"http://localhost:8000/provenance/{pack.id}"
        assert sc.get_lot(lot.id).status == LotStatus.PACKED
        assert sc.get_pack(pack.id) == pack
        entry = runtime.ledger.chain_for(lot.id)[0]
        assert entry.event_id == pack.id
        assert entry.event_type == EventType.PACK_MINT
        assert entry.payload["pack_id"] == pack.id

    def test_expiry_must_follow_manufacture(self, payloads):
        from datetime import date

        with pytest.raises(SchemaError):
            payloads.pack("lot", manufacture_date=date(2024, 1, 1), expiry_date=date(2024, 1, 1))

    def test_missing_pack(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.supply_chain.get_pack("PACK-000000000000")


class TestComplianceReport:

    def test_report_summarizes_lot(self, runtime, payloads):
        sc = runtime.supply_chain
        lot = sc.create_lot(payloads.lot())
        sc.record_collection(payloads.collection(lot.id, organic_certified=True))
        sc.record_processing(payloads.processing(lot.id))
        sc.record_processing(payloads.processing(lot.id, process_type="grinding"))
        sc.record_quality_test(payloads.quality(lot.id, lead="5"))

        report = sc.compliance_report(lot.id)

        assert report.collection.total_events == 1
        assert report.collection.organic_certified == 1
        assert report.processing.process_types == ["drying", "grinding"]
        assert report.quality_tests.passed == 1
        assert report.quality_tests.conditional == 0
        assert report.compliance.is_compliant
        assert "heavy-metals" not in report.compliance.missing_tests
        assert "microbial" in report.compliance.missing_tests

    def test_untested_lot_is_not_compliant(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())
        report = runtime.supply_chain.compliance_report(lot.id)

        assert not report.compliance.is_compliant
        assert len(report.compliance.missing_tests) == 5

    def test_failed_test_is_not_compliant(self, runtime, payloads):
        lot = runtime.supply_chain.create_lot(payloads.lot())
        runtime.supply_chain.record_quality_test(payloads.quality(lot.id, lead="50"))

        assert not runtime.supply_chain.compliance_report(lot.id).compliance.is_compliant

    def test_missing_lot(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.supply_chain.compliance_report("ghost")
