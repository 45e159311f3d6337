"""
FHIR metadata builders.

Each recorded event carries a minimal FHIR R4 resource so health-system
integrations can consume it: Substance for a collection, Procedure for a
processing step, DiagnosticReport for a lab test and Medication for a pack.
"""

from datetime import date
from typing import Any, Optional

from ..schemas import AssayStatus, ProcessType

AYUSH_FHIR = "http://ayush.gov.in/fhir"


def substance(event_id: str, lot_id: str, wild_harvested: bool, organic_certified: bool) -> dict[str, Any]:
    return {
        "resourceType": "Substance",
        "id": f"substance-{event_id}",
        "identifier": [{"system": "urn:ayurveda:lot", "value": lot_id}],
        "extension": [
            {
                "url": f"{AYUSH_FHIR}/collection-method",
                "valueString": "wild-harvested" if wild_harvested else "cultivated",
            },
            {
                "url": f"{AYUSH_FHIR}/organic-certified",
                "valueString": "yes" if organic_certified else "no",
            },
        ],
    }


def procedure(event_id: str, lot_id: str, process_type: ProcessType) -> dict[str, Any]:
    return {
        "resourceType": "Procedure",
        "id": f"procedure-{event_id}",
        "identifier": [
            {"system": "urn:ayurveda:processing", "value": f"{lot_id}-{process_type.value}"},
        ],
        "status": "completed",
        "code": {
            "coding": [{
                "system": f"{AYUSH_FHIR}/processing",
                "code": process_type.value,
                "display": process_type.value.upper(),
            }],
        },
    }


def diagnostic_report(event_id: str, lot_id: str, test_type: str, overall: AssayStatus) -> dict[str, Any]:
    passed = overall == AssayStatus.PASS
    return {
        "resourceType": "DiagnosticReport",
        "id": f"diagnostic-{event_id}",
        "identifier": [
            {"system": "urn:ayurveda:quality-test", "value": f"{lot_id}-{test_type}"},
        ],
        "status": "final" if passed else "amended",
        "conclusion": (
            "All parameters within acceptable limits" if passed
            else "Some parameters out of range"
        ),
    }


def medication(
    pack_id: str,
    sku: str,
    product_name: str,
    batch_number: str,
    expiry_date: date,
    ayush_license: Optional[str],
) -> dict[str, Any]:
    return {
        "resourceType": "Medication",
        "id": f"medication-{pack_id}",
        "identifier": [
            {"system": "urn:ayurveda:pack", "value": pack_id},
            {"system": "urn:ayush:license", "value": ayush_license or "N/A"},
        ],
        "code": {
            "coding": [{
                "system": f"{AYUSH_FHIR}/medication",
                "code": sku,
                "display": product_name,
            }],
        },
        "batch": {
            "lotNumber": batch_number,
            "expirationDate": expiry_date.isoformat(),
        },
    }
