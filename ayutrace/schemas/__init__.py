# Canonical Schemas for the AyuTrace ledger
# These define the contract every supply-chain record must obey.

from .ledger import EventType, LedgerEntry, VerificationResult
from .lot import (
    CollectionEvent,
    GeoLocation,
    Lot,
    LotStatus,
    ProcessingEvent,
    ProcessType,
)
from .quality import (
    AssayStatus,
    AssayType,
    ComplianceThreshold,
    MeasuredParameter,
    ParameterResult,
    ParameterStatus,
    QualityTestEvent,
    RECOMMENDED_TESTS,
    ThresholdSnapshot,
)
from .pack import Ingredient, Pack
from .events import (
    CollectionPayload,
    LotCreatePayload,
    LotStatusPayload,
    PackMintPayload,
    ProcessingPayload,
    QualityTestPayload,
)
from .provenance import (
    Checkpoint,
    CheckpointStatus,
    ComplianceReport,
    ComplianceStatus,
    OverallCompliance,
    ProvenanceTrace,
)

__all__ = [
    # Ledger
    "EventType",
    "LedgerEntry",
    "VerificationResult",
    # Lot
    "CollectionEvent",
    "GeoLocation",
    "Lot",
    "LotStatus",
    "ProcessingEvent",
    "ProcessType",
    # Quality
    "AssayStatus",
    "AssayType",
    "ComplianceThreshold",
    "MeasuredParameter",
    "ParameterResult",
    "ParameterStatus",
    "QualityTestEvent",
    "RECOMMENDED_TESTS",
    "ThresholdSnapshot",
    # Pack
    "Ingredient",
    "Pack",
    # Payloads
    "CollectionPayload",
    "LotCreatePayload",
    "LotStatusPayload",
    "PackMintPayload",
    "ProcessingPayload",
    "QualityTestPayload",
    # Provenance
    "Checkpoint",
    "CheckpointStatus",
    "ComplianceReport",
    "ComplianceStatus",
    "OverallCompliance",
    "ProvenanceTrace",
]
