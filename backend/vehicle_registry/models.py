# vehicle_registry/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from .schemas import FeeBreakdown, FuelType, VehicleAttributes


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values read back from SQLite are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SlotStatus(str, Enum):
    FREE = "Free"
    BOOKED = "Booked"


class WorkflowStatus(str, Enum):
    SUBMITTED = "Submitted"
    FEE_COMPUTED = "FeeComputed"
    PAYMENT_PENDING = "PaymentPending"
    REGISTERED = "Registered"


class Slot(SQLModel, table=True):
    id: str = Field(primary_key=True)
    scheduled_at: datetime = Field(index=True)
    status: str = Field(default=SlotStatus.FREE.value, index=True)
    booked_by: Optional[str] = None
    booked_at: Optional[datetime] = None


class InspectionRecord(SQLModel, table=True):
    inspection_id: str = Field(primary_key=True)
    wallet_identity: str = Field(index=True)

    make: str
    model: str
    variant: Optional[str] = None
    vehicle_type: str
    fuel_type: str
    engine_capacity: int
    manufacturing_year: int
    engine_number: str = Field(unique=True)
    chassis_number: str = Field(unique=True)
    color: str

    bound_slot_id: str = Field(foreign_key="slot.id", unique=True)
    status: str = Field(default=WorkflowStatus.SUBMITTED.value, index=True)

    base_fee: Optional[int] = None
    surcharge: Optional[int] = None
    annual_tax: Optional[int] = None
    total_fee: Optional[int] = None

    proposed_registration_number: Optional[str] = None
    submission_started_at: Optional[datetime] = None
    submission_tx_reference: Optional[str] = None

    chain_registration_number: Optional[str] = Field(default=None, unique=True)
    chain_tx_reference: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def workflow_status(self) -> WorkflowStatus:
        return WorkflowStatus(self.status)

    @property
    def attributes(self) -> VehicleAttributes:
        return VehicleAttributes(
            make=self.make,
            model=self.model,
            variant=self.variant,
            vehicle_type=self.vehicle_type,
            fuel_type=FuelType(self.fuel_type),
            engine_capacity=self.engine_capacity,
            manufacturing_year=self.manufacturing_year,
            engine_number=self.engine_number,
            chassis_number=self.chassis_number,
            color=self.color,
        )

    @property
    def fee_breakdown(self) -> Optional[FeeBreakdown]:
        if self.total_fee is None:
            return None
        return FeeBreakdown(
            base_fee=self.base_fee,
            surcharge=self.surcharge,
            annual_tax=self.annual_tax or 0,
            total_fee=self.total_fee,
        )


class WorkflowEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    inspection_id: str = Field(index=True, foreign_key="inspectionrecord.inspection_id")
    from_status: Optional[str] = None
    to_status: str
    actor: str
    detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
