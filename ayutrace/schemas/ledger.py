"""
Ledger Entry Schema

This is an append-only, per-lot hash chain.
Nothing is "edited". Things happen.

Each entry:
- Records exactly one supply-chain event
- Is hashed over its content
- Is linked to the previous entry for the same lot
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """
    Supply-chain events that are recorded on the ledger.
    You can add more later, never remove.
    """
    COLLECTION = "collection"
    PROCESSING = "processing"
    QUALITY_TEST = "quality-test"
    PACK_MINT = "pack-mint"


class LedgerEntry(BaseModel):
    """
    One immutable ledger transaction.

    Chain Integrity Rules:
    - For a lot, entries ordered by (timestamp, sequence) form a linked list
    - previous_transaction_id is None ONLY for the first entry of a lot
    - content_hash is verifiable from event_type, event_id, lot_id,
      previous_transaction_id, payload and timestamp
    """
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(
        ...,
        description="Unique identifier assigned at append time"
    )
    timestamp: datetime = Field(
        ...,
        description="When the entry was appended (UTC)"
    )

    # Per-lot ordering tie-break. Not part of the content hash.
    sequence: int = Field(
        ...,
        ge=0,
        description="Monotonically increasing per-lot sequence number (0 for the first entry)"
    )

    event_type: EventType
    event_id: str = Field(..., description="Id of the recorded event record")
    lot_id: str

    previous_transaction_id: Optional[str] = Field(
        default=None,
        description="Transaction id of the previous entry for this lot. None for the first entry."
    )
    content_hash: str = Field(
        ...,
        description="SHA-256 of the canonical hash input"
    )

    participants: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(
        ...,
        description="Canonical JSON-compatible event payload"
    )

    external_flow_id: Optional[str] = Field(
        default=None,
        description="Reference returned by the external ledger hook, if any"
    )

    @property
    def is_first(self) -> bool:
        return self.sequence == 0


class VerificationResult(BaseModel):
    """
    Outcome of verifying a lot's chain.

    Corruption is data, not an exceptional condition: a broken chain is
    reported here with valid=False rather than raised.
    """
    valid: bool
    message: str
    lot_id: str
    entry_count: int = 0
    failed_transaction_id: Optional[str] = None
