# vehicle_registry/schemas.py
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FuelType(str, Enum):
    PETROL = "Petrol"
    DIESEL = "Diesel"
    CNG = "CNG"
    ELECTRIC = "Electric"
    HYBRID = "Hybrid"
    OTHER = "Other"


class VehicleAttributes(BaseModel):
    """Vehicle details captured at inspection submission."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    make: str = Field(min_length=1)
    model: str = Field(min_length=1)
    variant: Optional[str] = None
    vehicle_type: str = Field(min_length=1)
    fuel_type: FuelType
    engine_capacity: int = Field(ge=0)
    manufacturing_year: int
    engine_number: str = Field(min_length=1)
    chassis_number: str = Field(min_length=1)
    color: str = Field(min_length=1)

    @field_validator("manufacturing_year")
    @classmethod
    def _year_in_range(cls, v: int) -> int:
        latest = date.today().year + 1
        if not 1900 <= v <= latest:
            raise ValueError(f"manufacturing_year must be between 1900 and {latest}")
        return v


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_fee: int
    surcharge: int
    annual_tax: int = 0
    total_fee: int


class SlotOut(BaseModel):
    id: str
    scheduled_at: datetime
    status: str


class SubmitInspectionIn(BaseModel):
    inspection_id: str = Field(min_length=1)
    slot_id: str = Field(min_length=1)
    vehicle: VehicleAttributes


class InspectionOut(BaseModel):
    inspection_id: str
    wallet_identity: str
    bound_slot_id: str
    status: str
    fee: Optional[FeeBreakdown] = None
    chain_registration_number: Optional[str] = None
    chain_tx_reference: Optional[str] = None


class PaymentQuote(BaseModel):
    inspection_id: str
    amount_due: int
    registration_number: Optional[str] = None


class PaymentShortfall(BaseModel):
    inspection_id: str
    amount_paid: int
    total_fee: int
    remaining: int


class PaymentConfirmationIn(BaseModel):
    tx_reference: Optional[str] = None


class StatusOut(BaseModel):
    inspection_id: str
    status: str
    issuance_allowed: bool
    chain_registration_number: Optional[str] = None
    chain_tx_reference: Optional[str] = None


class RegistrationNumberOut(BaseModel):
    registration_number: str
    exists: bool
    inspection_id: Optional[str] = None
    status: Optional[str] = None


class WorkflowEventOut(BaseModel):
    from_status: Optional[str]
    to_status: str
    actor: str
    detail: Optional[str]
    created_at: datetime
