"""
Event Payload Schemas

These are the structured inputs for each supply-chain action.
Validated payloads are what get enriched, hashed and chained.
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from .lot import GeoLocation, LotStatus, ProcessType
from .pack import Ingredient
from .quality import MeasuredParameter


def _decimalize(value: Any) -> Any:
    """Replace floats with Decimals, recursively. JSON numbers arrive as float."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _decimalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decimalize(v) for v in value]
    return value


class LotCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    species: str = Field(..., min_length=1)
    origin_region: str = Field(..., min_length=1)
    current_quantity_kg: Decimal = Field(default=Decimal("0"), ge=0)


class LotStatusPayload(BaseModel):
    status: LotStatus


class CollectionPayload(BaseModel):
    """Harvest recorded by a collector in the field."""
    lot_id: str
    collector_id: str
    species: str
    common_name: str
    part_used: str
    quantity_kg: Decimal = Field(..., gt=0)
    collection_date: AwareDatetime
    location: GeoLocation
    weather_conditions: Optional[str] = None
    soil_type: Optional[str] = None
    wild_harvested: bool = False
    organic_certified: bool = False


class ProcessingPayload(BaseModel):
    """A processing step. Output can never exceed input."""
    lot_id: str
    processor_id: str
    process_type: ProcessType
    process_date: AwareDatetime
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_quantity_kg: Decimal = Field(..., gt=0)
    output_quantity_kg: Decimal = Field(..., ge=0)
    yield_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    equipment_id: Optional[str] = None
    operator_id: Optional[str] = None

    @field_validator("parameters", mode="before")
    @classmethod
    def _no_floats(cls, value: Any) -> Any:
        return _decimalize(value)

    @model_validator(mode="after")
    def _check_quantities(self) -> "ProcessingPayload":
        if self.output_quantity_kg > self.input_quantity_kg:
            raise ValueError(
                f"output_quantity_kg ({self.output_quantity_kg}) exceeds "
                f"input_quantity_kg ({self.input_quantity_kg})"
            )
        if self.yield_percentage is None:
            ratio = self.output_quantity_kg / self.input_quantity_kg * 100
            self.yield_percentage = ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return self


class QualityTestPayload(BaseModel):
    """Raw lab results. Pass/fail is computed, not submitted."""
    lot_id: str
    lab_id: str
    test_date: AwareDatetime
    test_type: str = Field(..., min_length=1)
    parameters: dict[str, MeasuredParameter] = Field(..., min_length=1)
    certification_number: Optional[str] = None
    certification_body: Optional[str] = None
    lab_accreditation: Optional[str] = None


class PackMintPayload(BaseModel):
    """A finished product unit leaving the manufacturer."""
    lot_id: str
    manufacturer_id: str
    sku: str
    product_name: str
    batch_number: str
    manufacture_date: date
    expiry_date: date
    net_weight: str
    ingredients: list[Ingredient] = Field(default_factory=list)
    dosage: Optional[str] = None
    storage: Optional[str] = None
    ayush_license: Optional[str] = None
    gmp_certified: bool = False

    @model_validator(mode="after")
    def _check_dates(self) -> "PackMintPayload":
        if self.expiry_date <= self.manufacture_date:
            raise ValueError("expiry_date must be after manufacture_date")
        return self
