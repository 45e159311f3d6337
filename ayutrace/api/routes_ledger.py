"""
Ledger and Provenance API Routes

Read-only endpoints:
- GET /api/ledger/verify/{lot_id}     - Verify a lot's chain
- GET /api/ledger/chain/{lot_id}      - A lot's entries in chain order
- GET /api/ledger/external/flows      - Flows offered by the external ledger
- GET /api/ledger/external/vault      - Query the external ledger's vault
- GET /api/ledger/external/parties/{party_id} - Check a participant with the external ledger
- GET /api/provenance/{pack_id}       - Full provenance trace of a pack

Verification never fails the request: a broken chain is a 200 with
valid=false, because a tampered lot is a business fact, not a server error.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from ..runtime import Runtime
from ..schemas import LedgerEntry, ProvenanceTrace, VerificationResult
from .deps import get_runtime, translate_errors


router = APIRouter(prefix="/api")

# Provenance pages are scanned from packs; a short cache absorbs bursts
CACHE_CONTROL_PUBLIC = "public, max-age=30"


class ExternalFlow(BaseModel):
    name: str
    description: str


class ExternalLedgerInfo(BaseModel):
    ledger: str
    flows: list[ExternalFlow]


class PartyVerification(BaseModel):
    ledger: str
    party_id: str
    verified: bool


@router.get("/ledger/verify/{lot_id}", response_model=VerificationResult, tags=["Ledger"])
def verify_lot(lot_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Verify a lot's chain.

    Recomputes every hash and checks every link, stopping at the first
    problem. An unknown lot has an empty chain, which is valid.
    """
    with translate_errors():
        return runtime.ledger.verify(lot_id)


@router.get("/ledger/chain/{lot_id}", response_model=list[LedgerEntry], tags=["Ledger"])
def chain_for_lot(lot_id: str, runtime: Runtime = Depends(get_runtime)):
    with translate_errors():
        return runtime.ledger.chain_for(lot_id)


@router.get("/ledger/external/flows", response_model=ExternalLedgerInfo, tags=["Ledger"])
def external_flows(runtime: Runtime = Depends(get_runtime)):
    external = runtime.ledger.external
    return ExternalLedgerInfo(
        ledger=external.name,
        flows=[ExternalFlow(**flow) for flow in external.flows()],
    )


@router.get("/ledger/external/vault", tags=["Ledger"])
def external_vault(
    lot_id: Optional[str] = None,
    flow_name: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
):
    query = {k: v for k, v in (("lot_id", lot_id), ("flow_name", flow_name)) if v is not None}
    return {
        "ledger": runtime.ledger.external.name,
        "query": query,
        "states": runtime.ledger.external.query_vault(query),
    }


@router.get("/ledger/external/parties/{party_id}", response_model=PartyVerification, tags=["Ledger"])
def external_party(party_id: str, runtime: Runtime = Depends(get_runtime)):
    """Ask the external ledger whether it recognizes a participant."""
    external = runtime.ledger.external
    return PartyVerification(
        ledger=external.name,
        party_id=party_id,
        verified=external.verify_party(party_id),
    )


@router.get("/provenance/{pack_id}", response_model=ProvenanceTrace, tags=["Provenance"])
def provenance(pack_id: str, response: Response, runtime: Runtime = Depends(get_runtime)):
    """
    Everything a consumer sees after scanning a pack.

    Compliance problems show up as checkpoints in the trace, not as errors.
    """
    with translate_errors():
        trace = runtime.provenance.trace(pack_id)
    response.headers["Cache-Control"] = CACHE_CONTROL_PUBLIC
    return trace
