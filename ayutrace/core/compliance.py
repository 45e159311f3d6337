"""
Compliance Evaluator

Judges lab measurements against regulatory thresholds.

Rules:
- A parameter with no threshold on record passes, with no snapshot
- A measurement above max or below min fails
- A test fails if any of its parameters failed, otherwise it passes
- Comparison needs a number; a non-numeric measurement against a
  threshold with a min or max is a ValidationError

WARNING (parameter) and CONDITIONAL (test) are reserved statuses and are
not produced here.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, TYPE_CHECKING, Union

from ..schemas import (
    AssayStatus,
    ComplianceThreshold,
    MeasuredParameter,
    ParameterResult,
    ParameterStatus,
    ThresholdSnapshot,
)
from .ledger import ValidationError

if TYPE_CHECKING:
    from ..db.thresholds import ThresholdStore


def to_decimal(value: Union[Decimal, int, str]) -> Optional[Decimal]:
    """Parse a measured value. None if it is not a finite number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def snapshot(threshold: ComplianceThreshold) -> ThresholdSnapshot:
    return ThresholdSnapshot(
        min=threshold.min,
        max=threshold.max,
        unit=threshold.unit,
        regulatory_body=threshold.regulatory_body,
        standard=threshold.standard,
    )


class ComplianceEvaluator:
    """Evaluates measured parameters against a ThresholdStore."""

    def __init__(self, thresholds: "ThresholdStore"):
        self._thresholds = thresholds

    @property
    def thresholds(self) -> "ThresholdStore":
        return self._thresholds

    def evaluate_parameter(
        self,
        test_type: str,
        name: str,
        measurement: MeasuredParameter,
    ) -> ParameterResult:
        threshold = self._thresholds.get(test_type, name)
        if threshold is None:
            return ParameterResult(
                measured=measurement.measured,
                unit=measurement.unit,
                threshold=None,
                status=ParameterStatus.PASS,
            )

        status = ParameterStatus.PASS
        if threshold.min is not None or threshold.max is not None:
            value = to_decimal(measurement.measured)
            if value is None:
                raise ValidationError(
                    f"Parameter '{name}' of {test_type} test must be numeric, "
                    f"got {measurement.measured!r}"
                )
            if threshold.max is not None and value > threshold.max:
                status = ParameterStatus.FAIL
            if threshold.min is not None and value < threshold.min:
                status = ParameterStatus.FAIL

        return ParameterResult(
            measured=measurement.measured,
            unit=measurement.unit,
            threshold=snapshot(threshold),
            status=status,
        )

    def evaluate(
        self,
        test_type: str,
        parameters: dict[str, MeasuredParameter],
    ) -> tuple[dict[str, ParameterResult], AssayStatus]:
        """
        Evaluate every parameter of one test.

        Returns:
            (enriched parameters, overall test status)

        Raises:
            ValidationError: If a thresholded parameter is not numeric
        """
        results = {
            name: self.evaluate_parameter(test_type, name, MeasuredParameter.model_validate(measurement))
            for name, measurement in parameters.items()
        }

        failed = any(r.status == ParameterStatus.FAIL for r in results.values())
        overall = AssayStatus.FAIL if failed else AssayStatus.PASS
        return results, overall
