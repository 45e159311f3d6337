"""
Tests for threshold evaluation.

Lab results are judged server-side; the submitted values are never
trusted to carry their own pass/fail.
"""

import pytest
from decimal import Decimal

from ayutrace.core import ComplianceEvaluator, ValidationError
from ayutrace.core.compliance import to_decimal
from ayutrace.db import DEFAULT_THRESHOLDS, ThresholdStore
from ayutrace.schemas import (
    AssayStatus,
    ComplianceThreshold,
    MeasuredParameter,
    ParameterStatus,
)


def lead(measured) -> dict:
    return {"lead": MeasuredParameter(measured=measured, unit="ppm")}


class TestThresholdStore:

    def test_defaults_seeded(self):
        store = ThresholdStore.with_defaults()

        assert len(store) == len(DEFAULT_THRESHOLDS) == 3
        lead_limit = store.get("heavy-metals", "lead")
        assert lead_limit.max == Decimal("10")
        assert lead_limit.standard == "AS 2.3.13"

    def test_empty_store(self):
        assert ThresholdStore().get("heavy-metals", "lead") is None

    def test_set_replaces_same_key(self):
        store = ThresholdStore.with_defaults()
        store.set(ComplianceThreshold(
            test_type="heavy-metals", parameter="lead", max=Decimal("5"),
            unit="ppm", regulatory_body="AYUSH", standard="AS 2.3.13",
        ))

        assert len(store) == 3
        assert store.get("heavy-metals", "lead").max == Decimal("5")

    def test_list_filters_by_test_type(self):
        store = ThresholdStore.with_defaults()

        assert [t.parameter for t in store.list("pesticide")] == ["organophosphates"]
        assert len(store.list()) == 3

    def test_min_above_max_rejected(self):
        with pytest.raises(ValueError):
            ComplianceThreshold(
                test_type="potency", parameter="withanolides", min=Decimal("5"), max=Decimal("1"),
                unit="%", regulatory_body="AYUSH", standard="API",
            )


class TestComplianceEvaluator:

    @pytest.fixture
    def evaluator(self):
        return ComplianceEvaluator(ThresholdStore.with_defaults())

    def test_above_max_fails(self, evaluator):
        results, overall = evaluator.evaluate("heavy-metals", lead(Decimal("15")))

        assert results["lead"].status == ParameterStatus.FAIL
        assert overall == AssayStatus.FAIL

    def test_within_limit_passes(self, evaluator):
        results, overall = evaluator.evaluate("heavy-metals", lead(Decimal("5")))

        assert results["lead"].status == ParameterStatus.PASS
        assert overall == AssayStatus.PASS

    def test_limit_itself_passes(self, evaluator):
        _, overall = evaluator.evaluate("heavy-metals", lead(Decimal("10")))
        assert overall == AssayStatus.PASS

    def test_snapshot_attached(self, evaluator):
        results, _ = evaluator.evaluate("heavy-metals", lead(Decimal("5")))

        snap = results["lead"].threshold
        assert snap.max == Decimal("10")
        assert snap.unit == "ppm"
        assert snap.regulatory_body == "AYUSH"

    def test_unknown_parameter_passes_without_snapshot(self, evaluator):
        results, overall = evaluator.evaluate(
            "heavy-metals", {"arsenic": MeasuredParameter(measured=Decimal("900"), unit="ppm")}
        )

        assert results["arsenic"].status == ParameterStatus.PASS
        assert results["arsenic"].threshold is None
        assert overall == AssayStatus.PASS

    def test_unknown_test_type_passes(self, evaluator):
        results, overall = evaluator.evaluate(
            "authenticity", {"dna_match": MeasuredParameter(measured="positive", unit="")}
        )
        assert results["dna_match"].status == ParameterStatus.PASS
        assert overall == AssayStatus.PASS

    def test_numeric_string_is_compared(self, evaluator):
        results, _ = evaluator.evaluate("heavy-metals", lead(" 12.5 "))

        assert results["lead"].status == ParameterStatus.FAIL
        assert results["lead"].measured == " 12.5 "

    def test_non_numeric_against_threshold_rejected(self, evaluator):
        with pytest.raises(ValidationError, match="must be numeric"):
            evaluator.evaluate("heavy-metals", lead("not detected"))

    def test_any_failure_fails_the_test(self, evaluator):
        evaluator.thresholds.set(ComplianceThreshold(
            test_type="heavy-metals", parameter="cadmium", max=Decimal("0.3"),
            unit="ppm", regulatory_body="AYUSH", standard="AS 2.3.13",
        ))
        results, overall = evaluator.evaluate("heavy-metals", {
            **lead(Decimal("1")),
            "cadmium": MeasuredParameter(measured=Decimal("0.5"), unit="ppm"),
        })

        assert results["lead"].status == ParameterStatus.PASS
        assert results["cadmium"].status == ParameterStatus.FAIL
        assert overall == AssayStatus.FAIL

    def test_below_min_fails(self, evaluator):
        evaluator.thresholds.set(ComplianceThreshold(
            test_type="potency", parameter="withanolides", min=Decimal("0.3"),
            unit="%", regulatory_body="AYUSH", standard="API Part I",
        ))

        low, low_overall = evaluator.evaluate(
            "potency", {"withanolides": MeasuredParameter(measured=Decimal("0.1"), unit="%")}
        )
        ok, ok_overall = evaluator.evaluate(
            "potency", {"withanolides": MeasuredParameter(measured=Decimal("0.4"), unit="%")}
        )

        assert low_overall == AssayStatus.FAIL
        assert ok_overall == AssayStatus.PASS

    def test_updated_threshold_applies_to_later_tests(self, evaluator):
        _, before = evaluator.evaluate("heavy-metals", lead(Decimal("7")))
        evaluator.thresholds.set(ComplianceThreshold(
            test_type="heavy-metals", parameter="lead", max=Decimal("5"),
            unit="ppm", regulatory_body="AYUSH", standard="AS 2.3.13",
        ))
        _, after = evaluator.evaluate("heavy-metals", lead(Decimal("7")))

        assert before == AssayStatus.PASS
        assert after == AssayStatus.FAIL

    def test_reserved_statuses_never_produced(self, evaluator):
        for value in ("0", "5", "10", "11", "1000"):
            results, overall = evaluator.evaluate("heavy-metals", lead(value))
            assert results["lead"].status != ParameterStatus.WARNING
            assert overall != AssayStatus.CONDITIONAL


class TestToDecimal:

    def test_parses_numbers(self):
        assert to_decimal("1.50") == Decimal("1.50")
        assert to_decimal(3) == Decimal(3)
        assert to_decimal(Decimal("2")) == Decimal("2")

    def test_rejects_non_numbers(self):
        assert to_decimal("abc") is None
        assert to_decimal("NaN") is None
        assert to_decimal("Infinity") is None
        assert to_decimal(True) is None
