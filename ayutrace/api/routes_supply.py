"""
Supply Chain API Routes

Command endpoints (each appends to the lot's ledger chain):
- POST /api/collection           - Record a harvest
- POST /api/processing           - Record a processing step
- POST /api/quality              - Record a lab test (evaluated server-side)
- POST /api/packs                - Mint a consumer pack

Lot endpoints:
- POST /api/lots                 - Create a lot
- GET /api/lots                  - List lots (newest first)
- GET /api/lots/{id}             - Get a lot
- PATCH /api/lots/{id}/status    - Set a lot's status by hand

Query endpoints:
- GET /api/collection|processing|quality|packs   - List records (?lot_id=)
- GET /api/packs/{id}            - Get a pack

Compliance endpoints:
- GET /api/compliance/thresholds         - List thresholds (?test_type=)
- POST /api/compliance/thresholds        - Set a threshold (replaces same key)
- GET /api/compliance/report/{lot_id}    - Lot compliance report
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..runtime import Runtime
from ..schemas import (
    CollectionEvent,
    CollectionPayload,
    ComplianceReport,
    ComplianceThreshold,
    Lot,
    LotCreatePayload,
    LotStatusPayload,
    Pack,
    PackMintPayload,
    ProcessingEvent,
    ProcessingPayload,
    QualityTestEvent,
    QualityTestPayload,
)
from ..observability import get_logger
from .deps import get_runtime, translate_errors

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


# ============================================================
# Lots
# ============================================================

@router.post("/lots", response_model=Lot, status_code=201, tags=["Lots"])
def create_lot(body: LotCreatePayload, runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.create_lot(body)


@router.get("/lots", response_model=list[Lot], tags=["Lots"])
def list_lots(runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.list_lots()


@router.get("/lots/{lot_id}", response_model=Lot, tags=["Lots"])
def get_lot(lot_id: str, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.get_lot(lot_id)


@router.patch("/lots/{lot_id}/status", response_model=Lot, tags=["Lots"])
def update_lot_status(lot_id: str, body: LotStatusPayload, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.update_lot_status(lot_id, body.status)


# ============================================================
# Events
# ============================================================

@router.post("/collection", response_model=CollectionEvent, status_code=201, tags=["Collection"])
def record_collection(body: CollectionPayload, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.record_collection(body)


@router.get("/collection", response_model=list[CollectionEvent], tags=["Collection"])
def list_collections(lot_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.list_collections(lot_id)


@router.post("/processing", response_model=ProcessingEvent, status_code=201, tags=["Processing"])
def record_processing(body: ProcessingPayload, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.record_processing(body)


@router.get("/processing", response_model=list[ProcessingEvent], tags=["Processing"])
def list_processing(lot_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.list_processing(lot_id)


@router.post("/quality", response_model=QualityTestEvent, status_code=201, tags=["Quality"])
def record_quality_test(body: QualityTestPayload, runtime: Runtime = Depends(get_runtime)):
    """
    Record a lab test.

    Pass/fail is computed from the thresholds on record, never submitted.
    """
    with translate_errors():
        return runtime.supply_chain.record_quality_test(body)


@router.get("/quality", response_model=list[QualityTestEvent], tags=["Quality"])
def list_quality_tests(lot_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.list_quality_tests(lot_id)


@router.post("/packs", response_model=Pack, status_code=201, tags=["Packs"])
def mint_pack(body: PackMintPayload, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.mint_pack(body)


@router.get("/packs", response_model=list[Pack], tags=["Packs"])
def list_packs(lot_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.supply_chain.list_packs(lot_id)


@router.get("/packs/{pack_id}", response_model=Pack, tags=["Packs"])
def get_pack(pack_id: str, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.get_pack(pack_id)


# ============================================================
# Compliance
# ============================================================

@router.get("/compliance/thresholds", response_model=list[ComplianceThreshold], tags=["Compliance"])
def list_thresholds(test_type: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return runtime.thresholds.list(test_type)


@router.post("/compliance/thresholds", response_model=ComplianceThreshold, status_code=201, tags=["Compliance"])
def set_threshold(body: ComplianceThreshold, runtime: Runtime = Depends(get_runtime)):
    threshold = runtime.thresholds.set(body)
    logger.info(
        "Compliance threshold set",
        test_type=threshold.test_type,
        parameter=threshold.parameter,
        standard=threshold.standard,
    )
    return threshold


@router.get("/compliance/report/{lot_id}", response_model=ComplianceReport, tags=["Compliance"])
def compliance_report(lot_id: str, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.supply_chain.compliance_report(lot_id)
