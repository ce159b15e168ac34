"""
Shared fixtures: in-memory store, ledgers, and a scriptable chain gateway.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from vehicle_registry.capability import for_admin, for_wallet
from vehicle_registry.chain import ChainGateway, ChainPaymentRecord
from vehicle_registry.coordinator import ReconciliationCoordinator
from vehicle_registry.database import init_db, make_engine
from vehicle_registry.inspections import InspectionLedger
from vehicle_registry.results import Outcome, Result
from vehicle_registry.schemas import VehicleAttributes
from vehicle_registry.slots import SlotLedger

OWNER = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"


def make_tx(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeChainGateway(ChainGateway):
    """
    In-memory stand-in for the registry contract.

    By default a submission pays the full amount and returns a tx reference.
    `next_submit` overrides the returned result of the next submission; with
    `lands_anyway` the payment is still recorded on chain (lost acknowledgement).
    """

    def __init__(self):
        self.records = {}
        self.submissions = []
        self.status_queries = 0
        self.next_submit = None
        self.lands_anyway = False
        self.status_failure = None

    def pay(self, identity, amount, owner=OWNER, tx_reference=None, registration_number="XYZ-0001", paid=True):
        self.records[identity] = ChainPaymentRecord(
            identity=identity,
            amount_paid=amount,
            paid=paid,
            tx_reference=tx_reference or make_tx(len(self.records) + 1000),
            owner=owner,
            registration_number=registration_number,
        )

    def submit_registration(self, identity, attrs, registration_number, amount, owner):
        self.submissions.append((identity, registration_number, amount, owner))
        tx = make_tx(len(self.submissions))
        if self.next_submit is not None:
            res, self.next_submit = self.next_submit, None
            if self.lands_anyway:
                self.pay(identity, amount, owner, tx, registration_number)
            return res
        if identity in self.records:
            return Result.failure(Outcome.CHAIN_ALREADY_REGISTERED, "Vehicle already registered")
        self.pay(identity, amount, owner, tx, registration_number)
        return Result.success(tx)

    def get_payment_status(self, identity):
        self.status_queries += 1
        if self.status_failure is not None:
            return self.status_failure
        rec = self.records.get(identity)
        if rec is None:
            return Result.failure(Outcome.NOT_FOUND_ON_CHAIN, f"{identity} unknown")
        return Result.success(rec)


class Clock:
    def __init__(self, start=datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def engine():
    """Fresh in-memory database with all tables"""
    eng = make_engine("sqlite://", poolclass=StaticPool)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def slot_ledger(engine):
    ledger = SlotLedger(engine)
    base = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)
    ledger.seed([
        ("S123", base),
        ("S124", base + timedelta(hours=2)),
        ("S125", base + timedelta(days=1)),
    ])
    return ledger


@pytest.fixture
def inspection_ledger(engine):
    return InspectionLedger(engine)


@pytest.fixture
def gateway():
    return FakeChainGateway()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def coordinator(slot_ledger, inspection_ledger, gateway, clock):
    return ReconciliationCoordinator(
        slot_ledger,
        inspection_ledger,
        gateway,
        submission_grace=timedelta(minutes=15),
        rng=random.Random(7),
        clock=clock,
    )


@pytest.fixture
def owner():
    return for_wallet(OWNER)


@pytest.fixture
def stranger():
    return for_wallet(OTHER)


@pytest.fixture
def admin():
    return for_admin()


def vehicle(**overrides) -> VehicleAttributes:
    data = {
        "make": "Toyota",
        "model": "Corolla",
        "variant": "GLI",
        "vehicle_type": "Sedan",
        "fuel_type": "Petrol",
        "engine_capacity": 1800,
        "manufacturing_year": 2022,
        "engine_number": "ENG12345",
        "chassis_number": "CHS12345",
        "color": "White",
    }
    data.update(overrides)
    return VehicleAttributes(**data)


def truck(**overrides) -> VehicleAttributes:
    data = {
        "make": "Hino",
        "model": "500",
        "vehicle_type": "Truck",
        "fuel_type": "Diesel",
        "engine_capacity": 3500,
        "manufacturing_year": 2021,
        "engine_number": "ENG-TRK-1",
        "chassis_number": "CHS-TRK-1",
        "color": "Blue",
    }
    data.update(overrides)
    return VehicleAttributes(**data)
