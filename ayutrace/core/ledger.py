"""
Ledger Service - The Heart of the System

This is an append-only, per-lot hash chain.
Nothing is "edited". Things happen.

The ledger:
- Accepts supply-chain events for a lot
- Normalizes and hashes their payloads
- Links each entry to the lot's previous entry
- Verifies a lot's chain on demand

Storage is delegated to a LedgerStore:
- LedgerService: canonical hashing, linkage, verification
- LedgerStore: per-lot locking, atomic append, durability

The LedgerService reads the chain head INSIDE the store's append context,
so the previous transaction id it hashes is the one it commits against.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TYPE_CHECKING
from uuid import uuid4

from ..observability import get_logger
from ..schemas import EventType, LedgerEntry, VerificationResult
from .external import ExternalLedger, NullExternalLedger
from .hasher import CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore
    from ..observability import MetricsCollector

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when an event is malformed. Nothing is appended."""
    pass


class NotFoundError(LedgerError):
    """Raised when a lot, pack or record does not exist."""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def chain_order(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """Entries in chain order: ascending timestamp, then sequence."""
    return sorted(entries, key=lambda e: (e.timestamp, e.sequence))


class LedgerService:
    """
    The core ledger service.

    CHAIN INTEGRITY GUARANTEES:
    - Entries of a lot ordered by (timestamp, sequence) form a linked list
    - previous_transaction_id is None ONLY for the first entry of a lot
    - A new entry's timestamp is never earlier than the lot's head
    - The content hash covers event type, event id, lot id, previous
      transaction id, payload and timestamp

    CONCURRENCY GUARANTEES (with LedgerStore):
    - Appends to the same lot are serialized by the store
    - The head is read and the entry committed under the same lock
    - Appends to different lots proceed in parallel
    """

    def __init__(
        self,
        store: Optional["LedgerStore"] = None,
        external: Optional[ExternalLedger] = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional["MetricsCollector"] = None,
    ):
        """
        Initialize LedgerService.

        Args:
            store: LedgerStore implementation. If None, an InMemoryLedgerStore.
            external: External ledger hook. If None, nothing is forwarded.
            clock: Returns the current time as an aware datetime.
            metrics: Collector for append latency and verification counts.
        """
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryLedgerStore
            store = InMemoryLedgerStore()

        self._store = store
        self._external = external or NullExternalLedger()
        self._clock = clock
        self._metrics = metrics

    @property
    def store(self) -> "LedgerStore":
        return self._store

    @property
    def external(self) -> ExternalLedger:
        return self._external

    # ================================================================
    # APPEND
    # ================================================================

    def append(
        self,
        event_type: EventType | str,
        event_id: str,
        lot_id: str,
        payload: dict,
        participants: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Append an event and return its transaction id."""
        return self.append_entry(
            event_type, event_id, lot_id, payload, participants, timeout
        ).transaction_id

    def append_entry(
        self,
        event_type: EventType | str,
        event_id: str,
        lot_id: str,
        payload: dict,
        participants: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> LedgerEntry:
        """
        Append an event to the lot's chain.

        This is APPEND ONLY. No updates. No deletes. Ever.

        Flow (inside the store's per-lot append context):
        1. Read the lot's chain head
        2. Timestamp the entry, never earlier than the head
        3. Hash the normalized payload together with the linkage
        4. Forward to the external ledger hook, if any
        5. Commit the fully formed entry

        Raises:
            ValidationError: If the payload cannot be canonically serialized
            StorageError: If the store fails or the lock times out
        """
        try:
            event_type = EventType(event_type)
        except ValueError:
            raise ValidationError(f"Unknown event type: {event_type}")

        if not lot_id:
            raise ValidationError("lot_id is required")
        if not event_id:
            raise ValidationError("event_id is required")

        try:
            normalized = Hasher.normalize(payload)
        except CanonicalSerializationError as e:
            raise ValidationError(f"Payload is not serializable: {e}") from e

        parties = sorted({p for p in (participants or ()) if p})

        start = time.perf_counter()

        with self._store.begin_append(lot_id, timeout=timeout) as ctx:
            head = ctx.head

            timestamp = self._clock()
            if timestamp.tzinfo is None:
                raise ValidationError("Ledger clock must return timezone-aware datetimes")
            if head.last_timestamp is not None and timestamp < head.last_timestamp:
                timestamp = head.last_timestamp

            content_hash = Hasher.hash_entry(
                event_type.value,
                event_id,
                lot_id,
                head.last_transaction_id,
                normalized,
                timestamp,
            )

            entry = LedgerEntry(
                transaction_id=str(uuid4()),
                timestamp=timestamp,
                sequence=head.next_sequence,
                event_type=event_type,
                event_id=event_id,
                lot_id=lot_id,
                previous_transaction_id=head.last_transaction_id,
                content_hash=content_hash,
                participants=parties,
                payload=normalized,
                external_flow_id=self._start_external_flow(event_type, event_id, lot_id, content_hash),
            )

            ctx.commit(entry)

        latency_ms = (time.perf_counter() - start) * 1000
        if self._metrics is not None:
            self._metrics.record_append(latency_ms)

        logger.info(
            "Ledger entry appended",
            transaction_id=entry.transaction_id,
            lot_id=lot_id,
            event_type=event_type.value,
            sequence=entry.sequence,
            duration_ms=round(latency_ms, 2),
        )
        return entry

    def _start_external_flow(
        self,
        event_type: EventType,
        event_id: str,
        lot_id: str,
        content_hash: str,
    ) -> Optional[str]:
        # The hash chain stands on its own; a failing hook only loses the reference.
        try:
            return self._external.start_flow(
                event_type.value,
                {"event_id": event_id, "lot_id": lot_id, "content_hash": content_hash},
            )
        except Exception as e:
            logger.warning(
                "External ledger flow failed",
                lot_id=lot_id,
                event_type=event_type.value,
                error=str(e),
            )
            return None

    # ================================================================
    # READ
    # ================================================================

    def chain_for(self, lot_id: str) -> list[LedgerEntry]:
        """The lot's entries in chain order."""
        return chain_order(self._store.list_by_lot(lot_id))

    def get_entry_count(self) -> int:
        return self._store.get_entry_count()

    # ================================================================
    # VERIFY
    # ================================================================

    def verify(self, lot_id: str) -> VerificationResult:
        """
        Verify a lot's chain.

        Recomputes every hash and checks every link, in chain order, and
        stops at the first problem. Corruption is reported, never raised.
        Pure read: running it twice on the same data gives the same answer.
        """
        return self.verify_chain(lot_id, self.chain_for(lot_id))

    def verify_chain(self, lot_id: str, entries: list[LedgerEntry]) -> VerificationResult:
        """
        Verify entries already read in chain order, and record the outcome.

        For callers that need the entries as well as the verdict, so the
        chain is read once. Metrics and failure logging match verify().
        """
        result = self.verify_entries(lot_id, entries)

        if self._metrics is not None:
            self._metrics.record_verification(result.valid)

        if not result.valid:
            logger.warning(
                "Ledger verification failed",
                lot_id=lot_id,
                failed_transaction_id=result.failed_transaction_id,
                reason=result.message,
            )
        return result

    @staticmethod
    def verify_entries(lot_id: str, entries: list[LedgerEntry]) -> VerificationResult:
        """Verify entries that are already in chain order."""
        if not entries:
            return VerificationResult(
                valid=True,
                message="No ledger entries found",
                lot_id=lot_id,
            )

        previous: Optional[LedgerEntry] = None
        for entry in entries:
            computed = Hasher.hash_entry(
                entry.event_type.value,
                entry.event_id,
                entry.lot_id,
                entry.previous_transaction_id,
                entry.payload,
                entry.timestamp,
            )
            if not Hasher.constant_time_compare(computed, entry.content_hash):
                return VerificationResult(
                    valid=False,
                    message=f"Hash mismatch at entry {entry.transaction_id}",
                    lot_id=lot_id,
                    entry_count=len(entries),
                    failed_transaction_id=entry.transaction_id,
                )

            expected_previous = previous.transaction_id if previous else None
            if entry.previous_transaction_id != expected_previous:
                return VerificationResult(
                    valid=False,
                    message=f"Chain break at entry {entry.transaction_id}",
                    lot_id=lot_id,
                    entry_count=len(entries),
                    failed_transaction_id=entry.transaction_id,
                )

            previous = entry

        return VerificationResult(
            valid=True,
            message="Ledger verified successfully",
            lot_id=lot_id,
            entry_count=len(entries),
        )
