"""
Provenance Schemas

Derived views. Recomputed on every read, never persisted.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .ledger import LedgerEntry, VerificationResult
from .lot import CollectionEvent, Lot, ProcessingEvent
from .pack import Pack
from .quality import QualityTestEvent


class CheckpointStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


class OverallCompliance(str, Enum):
    """Precedence: NON_COMPLIANT > PENDING > COMPLIANT."""
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non-compliant"
    PENDING = "pending"


class Checkpoint(BaseModel):
    checkpoint: str
    status: CheckpointStatus
    message: str


class ComplianceStatus(BaseModel):
    overall_status: OverallCompliance = OverallCompliance.COMPLIANT
    details: list[Checkpoint] = Field(default_factory=list)

    def record(self, checkpoint: str, status: CheckpointStatus, message: str) -> None:
        """
        Append a checkpoint and fold it into the overall status.

        A failure is sticky. A pending checkpoint only downgrades a
        status that is still compliant.
        """
        self.details.append(Checkpoint(checkpoint=checkpoint, status=status, message=message))

        if status == CheckpointStatus.FAIL:
            self.overall_status = OverallCompliance.NON_COMPLIANT
        elif (
            status == CheckpointStatus.PENDING
            and self.overall_status != OverallCompliance.NON_COMPLIANT
        ):
            self.overall_status = OverallCompliance.PENDING


class ProvenanceTrace(BaseModel):
    """Everything a consumer sees after scanning a pack."""
    pack: Pack
    lot: Lot
    collection_events: list[CollectionEvent]
    processing_events: list[ProcessingEvent]
    quality_tests: list[QualityTestEvent]
    ledger_path: list[LedgerEntry]
    ledger_verification: VerificationResult
    compliance_status: ComplianceStatus


class CollectionSummary(BaseModel):
    total_events: int
    organic_certified: int
    wild_harvested: int


class ProcessingSummary(BaseModel):
    total_events: int
    process_types: list[str]


class QualitySummary(BaseModel):
    total_tests: int
    passed: int
    failed: int
    conditional: int
    test_types: list[str]


class LotCompliance(BaseModel):
    is_compliant: bool
    missing_tests: list[str]


class ComplianceReport(BaseModel):
    """Regulator-facing summary of one lot."""
    lot: Lot
    collection: CollectionSummary
    processing: ProcessingSummary
    quality_tests: QualitySummary
    compliance: LotCompliance
    generated_at: datetime
