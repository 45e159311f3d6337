"""
External Ledger Hook

Optional forwarding of appended entries to an external distributed ledger.
The hash chain in LedgerStore is always the source of truth; an external
ledger only receives a copy and hands back a reference.

Implementations:
- NullExternalLedger: does nothing (default)
- CordaStubLedger: mints Corda-style flow references without a network
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

from ..observability import get_logger

logger = get_logger(__name__)


class ExternalLedger(ABC):
    """Interface for an external distributed ledger."""

    name = "external"

    @abstractmethod
    def start_flow(self, flow_name: str, params: dict[str, Any]) -> Optional[str]:
        """Start a flow for one appended entry. Returns a reference, if any."""
        pass

    @abstractmethod
    def query_vault(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def verify_party(self, party_id: str) -> bool:
        """Whether the ledger network knows this participant."""
        pass

    @abstractmethod
    def flows(self) -> list[dict[str, str]]:
        """Flows this ledger supports, for discovery."""
        pass


class NullExternalLedger(ExternalLedger):
    name = "none"

    def start_flow(self, flow_name: str, params: dict[str, Any]) -> Optional[str]:
        return None

    def query_vault(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        return []

    def verify_party(self, party_id: str) -> bool:
        return True

    def flows(self) -> list[dict[str, str]]:
        return []


class CordaStubLedger(ExternalLedger):
    """
    Stand-in for a Corda node.

    Produces references of the form ``corda.flow.<event-type>.<millis>``
    and keeps the most recent flows it "started" so the vault query has
    something to return. Older flows fall off once max_flows is reached.
    """

    name = "corda-stub"

    FLOWS = {
        "collection": "Record a herb collection with geo-tag",
        "processing": "Record a processing step",
        "quality-test": "Record a laboratory test result",
        "pack-mint": "Mint a consumer pack",
    }

    MAX_FLOWS_KEPT = 10000

    def __init__(self, clock=time.time, max_flows: int = MAX_FLOWS_KEPT):
        self._clock = clock
        self._started: deque[dict[str, Any]] = deque(maxlen=max_flows)

    def start_flow(self, flow_name: str, params: dict[str, Any]) -> Optional[str]:
        flow_id = f"corda.flow.{flow_name}.{int(self._clock() * 1000)}"
        self._started.append({"flow_id": flow_id, "flow_name": flow_name, **params})
        logger.info("Corda flow started", flow_id=flow_id, flow_name=flow_name)
        return flow_id

    def query_vault(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        results = [
            state for state in list(self._started)
            if all(state.get(key) == value for key, value in query.items())
        ]
        logger.debug("Corda vault queried", query=query, results=len(results))
        return results

    def verify_party(self, party_id: str) -> bool:
        verified = bool(party_id.strip())
        logger.info("Corda party verified", party_id=party_id, verified=verified)
        return verified

    def flows(self) -> list[dict[str, str]]:
        return [
            {"name": name, "description": description}
            for name, description in self.FLOWS.items()
        ]
