# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .ledger import (
    LedgerService,
    LedgerError,
    ValidationError,
    NotFoundError,
    chain_order,
)
from .compliance import ComplianceEvaluator
from .external import ExternalLedger, NullExternalLedger, CordaStubLedger
from .supply_chain import SupplyChainService
from .provenance import ProvenanceAggregator, assess_compliance

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "LedgerService",
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "chain_order",
    "ComplianceEvaluator",
    "ExternalLedger",
    "NullExternalLedger",
    "CordaStubLedger",
    "SupplyChainService",
    "ProvenanceAggregator",
    "assess_compliance",
]
