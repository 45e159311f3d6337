"""
Quality Testing and Compliance Threshold Schemas

Thresholds are regulator-defined ranges per (test type, parameter).
Test results carry the threshold snapshot they were evaluated against,
and that snapshot is hashed into the ledger with the rest of the payload.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, model_validator


class AssayType(str, Enum):
    MICROBIAL = "microbial"
    HEAVY_METALS = "heavy-metals"
    PESTICIDE = "pesticide"
    POTENCY = "potency"
    AUTHENTICITY = "authenticity"


# Test types every lot should eventually have on record
RECOMMENDED_TESTS = [t.value for t in AssayType]


class ParameterStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    # Reserved for advisory ranges; never produced by the evaluator today
    WARNING = "warning"


class AssayStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    # Reserved for soft thresholds; never produced by the evaluator today
    CONDITIONAL = "conditional"


class ComplianceThreshold(BaseModel):
    """Acceptable range for one measured parameter of one test type."""
    test_type: str
    parameter: str
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None
    unit: str
    regulatory_body: str
    standard: str = Field(..., description='e.g. "AS 2.3.13", "PFA-1954"')

    @model_validator(mode="after")
    def _check_range(self) -> "ComplianceThreshold":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min ({self.min}) must not exceed max ({self.max})")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.test_type, self.parameter)


class ThresholdSnapshot(BaseModel):
    """The part of a threshold a result was judged against."""
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None
    unit: str
    regulatory_body: Optional[str] = None
    standard: Optional[str] = None


class MeasuredParameter(BaseModel):
    """A raw lab measurement as submitted."""
    measured: Union[Decimal, str]
    unit: str


class ParameterResult(BaseModel):
    """A measurement after evaluation."""
    measured: Union[Decimal, str]
    unit: str
    threshold: Optional[ThresholdSnapshot] = None
    status: ParameterStatus


class QualityTestEvent(BaseModel):
    """A lab test on a lot. overall_status is derived, never input."""
    id: str
    lot_id: str
    lab_id: str
    test_date: datetime
    test_type: str
    parameters: dict[str, ParameterResult]
    overall_status: AssayStatus
    certification_number: Optional[str] = None
    certification_body: Optional[str] = None
    lab_accreditation: Optional[str] = None
    fhir_metadata: dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    created_at: datetime
