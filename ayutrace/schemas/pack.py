"""
Pack Schema

A Pack is the consumer-facing product unit. Its id is what the QR code on
the label resolves to.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


class Ingredient(BaseModel):
    name: str
    percentage: Decimal = Field(..., ge=0, le=100)
    lot_id: Optional[str] = None


class Pack(BaseModel):
    id: str = Field(..., description="Scannable pack id (PACK-...)")
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
    provenance_url: str
    fhir_metadata: dict[str, Any] = Field(default_factory=dict)
    transaction_id: Optional[str] = None
    created_at: datetime
