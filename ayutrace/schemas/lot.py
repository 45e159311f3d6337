"""
Lot and Field Event Schemas

A Lot is a traceable batch of raw material from a single collection origin.
Collection and processing events accumulate against it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AwareDatetime, BaseModel, Field


class LotStatus(str, Enum):
    """Where a lot currently is in the supply chain."""
    COLLECTED = "collected"
    PROCESSING = "processing"
    TESTED = "tested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PACKED = "packed"


class ProcessType(str, Enum):
    CLEANING = "cleaning"
    DRYING = "drying"
    GRINDING = "grinding"
    EXTRACTION = "extraction"
    DECOCTION = "decoction"


class GeoLocation(BaseModel):
    """GPS fix captured in the field. Coordinates are Decimal, never float."""
    lat: Decimal = Field(..., ge=-90, le=90)
    lng: Decimal = Field(..., ge=-180, le=180)
    accuracy: Optional[Decimal] = Field(default=None, ge=0)
    altitude: Optional[Decimal] = None
    timestamp: Optional[AwareDatetime] = None


class Lot(BaseModel):
    """
    Shared mutable aggregate keyed by id.

    Event handlers bump the quantity on collection and move the status
    forward on processing, testing and packing.
    """
    id: str
    name: str
    species: str
    origin_region: str
    status: LotStatus = LotStatus.COLLECTED
    current_quantity_kg: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime


class CollectionEvent(BaseModel):
    """A harvest of raw material into a lot."""
    id: str
    lot_id: str
    collector_id: str
    species: str = Field(..., description="Botanical name")
    common_name: str
    part_used: str = Field(..., description="root, leaf, flower, bark, ...")
    quantity_kg: Decimal
    collection_date: datetime
    location: GeoLocation
    weather_conditions: Optional[str] = None
    soil_type: Optional[str] = None
    wild_harvested: bool = False
    organic_certified: bool = False
    fhir_metadata: dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    created_at: datetime


class ProcessingEvent(BaseModel):
    """A processing step applied to a lot."""
    id: str
    lot_id: str
    processor_id: str
    process_type: ProcessType
    process_date: datetime
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_quantity_kg: Decimal
    output_quantity_kg: Decimal
    yield_percentage: Optional[Decimal] = None
    equipment_id: Optional[str] = None
    operator_id: Optional[str] = None
    fhir_metadata: dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    created_at: datetime
