"""
Threshold Store

Regulatory limits keyed by (test_type, parameter). At most one threshold
exists per key; setting one for an existing key replaces it.
"""

import threading
from decimal import Decimal
from typing import Optional

from ..schemas import AssayType, ComplianceThreshold


# Limits the service ships with. Sources: AYUSH Ayurvedic Pharmacopoeia
# (Appendix 2/3) and FSSAI residue limits.
DEFAULT_THRESHOLDS = [
    ComplianceThreshold(
        test_type=AssayType.MICROBIAL.value,
        parameter="total_aerobic_count",
        max=Decimal("100000"),
        unit="CFU/g",
        regulatory_body="AYUSH",
        standard="AS 3.6.1",
    ),
    ComplianceThreshold(
        test_type=AssayType.HEAVY_METALS.value,
        parameter="lead",
        max=Decimal("10"),
        unit="ppm",
        regulatory_body="AYUSH",
        standard="AS 2.3.13",
    ),
    ComplianceThreshold(
        test_type=AssayType.PESTICIDE.value,
        parameter="organophosphates",
        max=Decimal("0.1"),
        unit="ppm",
        regulatory_body="FSSAI",
        standard="PFA-1954",
    ),
]


class ThresholdStore:
    """Thread-safe threshold registry."""

    def __init__(self, thresholds: Optional[list[ComplianceThreshold]] = None):
        self._thresholds: dict[tuple[str, str], ComplianceThreshold] = {}
        self._lock = threading.Lock()
        for threshold in thresholds or []:
            self.set(threshold)

    @classmethod
    def with_defaults(cls) -> "ThresholdStore":
        return cls(DEFAULT_THRESHOLDS)

    def set(self, threshold: ComplianceThreshold) -> ComplianceThreshold:
        """Insert or replace the threshold for its (test_type, parameter)."""
        with self._lock:
            self._thresholds[threshold.key] = threshold
        return threshold

    def get(self, test_type: str, parameter: str) -> Optional[ComplianceThreshold]:
        with self._lock:
            return self._thresholds.get((test_type, parameter))

    def list(self, test_type: Optional[str] = None) -> list[ComplianceThreshold]:
        with self._lock:
            items = list(self._thresholds.values())
        if test_type is not None:
            items = [t for t in items if t.test_type == test_type]
        return sorted(items, key=lambda t: t.key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._thresholds)
