# vehicle_registry/fees.py
"""
Registration fee and annual tax computation.

Everything here is a pure function of its arguments over fixed tables, so the
same vehicle always produces the same FeeBreakdown. The amount a chain payment
must cover is the breakdown's total_fee.
"""
from typing import Dict, NamedTuple

from .schemas import FeeBreakdown

DEFAULT_TIER = "default"


class FeeTier(NamedTuple):
    base_fee: int
    capacity_threshold: int
    surcharge: int


# keys are lower-cased vehicle types
FEE_TABLE: Dict[str, FeeTier] = {
    "car": FeeTier(5000, 2000, 2000),
    "sedan": FeeTier(5000, 2000, 2000),
    "hatchback": FeeTier(4500, 1600, 1500),
    "motorcycle": FeeTier(2000, 600, 1000),
    "scooter": FeeTier(2000, 600, 1000),
    "truck": FeeTier(8000, 3000, 3000),
    "bus": FeeTier(10000, 5000, 4000),
    "van": FeeTier(6000, 2500, 1500),
    "suv": FeeTier(7000, 3000, 2500),
    DEFAULT_TIER: FeeTier(4000, 2000, 1000),
}


def fee_tier(vehicle_type: str) -> FeeTier:
    """Tier for a vehicle type; unknown types fall back to the default tier."""
    key = (vehicle_type or "").strip().lower()
    return FEE_TABLE.get(key, FEE_TABLE[DEFAULT_TIER])


def compute_fee(vehicle_type: str, engine_capacity: int, annual_tax: int = 0) -> FeeBreakdown:
    """
    Registration fee for a vehicle.

    The capacity surcharge applies only when engine_capacity is strictly above
    the tier threshold. annual_tax is an optional additive term; it is 0 while
    the tax component is disabled.
    """
    tier = fee_tier(vehicle_type)
    surcharge = tier.surcharge if engine_capacity > tier.capacity_threshold else 0
    return FeeBreakdown(
        base_fee=tier.base_fee,
        surcharge=surcharge,
        annual_tax=annual_tax,
        total_fee=tier.base_fee + surcharge + annual_tax,
    )


# ---------- ANNUAL TAX ----------
ANNUAL_TAX_RATES: Dict[str, int] = {
    "sedan": 3000,
    "car": 3000,
    "hatchback": 2500,
    "suv": 8000,
    "muv": 6000,
    "coupe": 4000,
    "van": 4000,
    "bus": 15000,
    "truck": 12000,
    "motorcycle": 800,
    "scooter": 500,
    "other": 1000,
    DEFAULT_TIER: 2000,
}

_CAR_TYPES = {"car", "sedan", "hatchback"}
_TWO_WHEELERS = {"motorcycle", "scooter"}
_COMMERCIAL = {"bus", "truck", "van"}

_CAR_MULTIPLIERS = ((1000, 1.0), (1600, 1.5), (2000, 2.0), (3000, 3.0))
_TWO_WHEELER_MULTIPLIERS = ((125, 1.0), (250, 1.5))


def _capacity_multiplier(bands, engine_capacity: int, above: float) -> float:
    for limit, multiplier in bands:
        if engine_capacity <= limit:
            return multiplier
    return above


def annual_tax(vehicle_type: str, engine_capacity: int, vehicle_age: int = 0) -> int:
    """Annual vehicle tax: base rate, capacity band, age discount, commercial loading."""
    key = (vehicle_type or "").strip().lower()
    tax = float(ANNUAL_TAX_RATES.get(key, ANNUAL_TAX_RATES[DEFAULT_TIER]))

    if key in _CAR_TYPES:
        tax *= _capacity_multiplier(_CAR_MULTIPLIERS, engine_capacity, 4.0)
    elif key in _TWO_WHEELERS:
        tax *= _capacity_multiplier(_TWO_WHEELER_MULTIPLIERS, engine_capacity, 2.0)

    if vehicle_age > 10:
        tax *= 0.7
    elif vehicle_age > 5:
        tax *= 0.8

    if key in _COMMERCIAL:
        tax *= 1.2

    return int(round(tax))
