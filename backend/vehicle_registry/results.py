# vehicle_registry/results.py
"""
Explicit outcome values returned along the workflow call chain.

Ledgers, the chain gateway and the coordinator never raise for domain
conditions (a booked slot, an out-of-order transition, an underpaid
registration). They return a Result carrying an Outcome; only infrastructure
faults (database or programming errors) propagate as exceptions.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class Outcome(str, Enum):
    OK = "ok"

    # conflicts: reported to the caller, never retried by the engine
    CONFLICT = "conflict"
    DUPLICATE_ID = "duplicate_id"
    DUPLICATE_VEHICLE = "duplicate_vehicle"
    ALREADY_CONFIRMED = "already_confirmed"

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INVALID_ATTRIBUTES = "invalid_attributes"
    UNAUTHORIZED = "unauthorized"

    # payment evidence
    NOT_PAID = "not_paid"
    NOT_FOUND_ON_CHAIN = "not_found_on_chain"
    AMOUNT_MISMATCH = "amount_mismatch"
    IDENTITY_MISMATCH = "identity_mismatch"

    # chain errors
    CHAIN_RETRYABLE = "chain_retryable"
    CHAIN_REJECTED = "chain_rejected"
    CHAIN_ALREADY_REGISTERED = "chain_already_registered"
    PAYMENT_IN_FLIGHT = "payment_in_flight"


RETRYABLE_OUTCOMES = frozenset({Outcome.CHAIN_RETRYABLE, Outcome.PAYMENT_IN_FLIGHT})


@dataclass(frozen=True)
class Result(Generic[T]):
    outcome: Outcome
    value: Optional[T] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @property
    def is_retryable(self) -> bool:
        return self.outcome in RETRYABLE_OUTCOMES

    @classmethod
    def success(cls, value: Any = None, detail: str = "") -> "Result":
        return cls(Outcome.OK, value, detail)

    @classmethod
    def failure(cls, outcome: Outcome, detail: str = "", value: Any = None) -> "Result":
        if outcome is Outcome.OK:
            raise ValueError("failure() requires a non-OK outcome")
        return cls(outcome, value, detail)

