"""
Inspection Ledger Tests

Record creation, uniqueness, and status-gated field-group updates.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER, OWNER, make_tx, vehicle
from vehicle_registry.database import init_db, make_engine
from vehicle_registry.fees import compute_fee
from vehicle_registry.inspections import InspectionLedger
from vehicle_registry.models import WorkflowStatus, as_utc, utcnow
from vehicle_registry.results import Outcome
from vehicle_registry.slots import SlotLedger


@pytest.fixture
def submitted(slot_ledger, inspection_ledger):
    slot_ledger.claim("S123", OWNER)
    res = inspection_ledger.create("INSP-1", OWNER, vehicle(), "S123")
    assert res.ok
    return res.value


def _to_payment_pending(ledger, inspection_id="INSP-1"):
    assert ledger.update_fee(inspection_id, compute_fee("Sedan", 1800)).ok
    assert ledger.mark_payment_pending(inspection_id, "ABC-1234").ok


class TestCreate:

    def test_create_sets_submitted(self, submitted):
        assert submitted.workflow_status is WorkflowStatus.SUBMITTED
        assert submitted.bound_slot_id == "S123"
        assert submitted.fee_breakdown is None
        assert submitted.chain_registration_number is None

    def test_duplicate_id(self, submitted, inspection_ledger):
        res = inspection_ledger.create(
            "INSP-1", OWNER, vehicle(engine_number="E2", chassis_number="C2"), "S124"
        )
        assert res.outcome is Outcome.DUPLICATE_ID

    def test_duplicate_vehicle(self, submitted, inspection_ledger):
        res = inspection_ledger.create("INSP-2", OWNER, vehicle(chassis_number="OTHER"), "S124")
        assert res.outcome is Outcome.DUPLICATE_VEHICLE

    def test_slot_already_bound(self, submitted, inspection_ledger):
        res = inspection_ledger.create(
            "INSP-2", OWNER, vehicle(engine_number="E2", chassis_number="C2"), "S123"
        )
        assert res.outcome is Outcome.CONFLICT

    def test_attribute_mapping_is_validated(self, inspection_ledger):
        res = inspection_ledger.create("INSP-9", OWNER, {"make": "Toyota"}, "S124")
        assert res.outcome is Outcome.INVALID_ATTRIBUTES

    def test_get_missing(self, inspection_ledger):
        assert inspection_ledger.get("nope").outcome is Outcome.NOT_FOUND

    def test_attributes_round_trip(self, submitted):
        assert submitted.attributes == vehicle()


class TestTransitions:

    def test_update_fee(self, submitted, inspection_ledger):
        res = inspection_ledger.update_fee("INSP-1", compute_fee("Sedan", 1800))
        assert res.ok
        assert res.value.workflow_status is WorkflowStatus.FEE_COMPUTED
        assert res.value.total_fee == 5000

    def test_update_fee_twice_is_invalid(self, submitted, inspection_ledger):
        assert inspection_ledger.update_fee("INSP-1", compute_fee("Sedan", 1800)).ok
        res = inspection_ledger.update_fee("INSP-1", compute_fee("Truck", 3500))
        assert res.outcome is Outcome.INVALID_STATE
        assert inspection_ledger.get("INSP-1").value.total_fee == 5000

    def test_payment_pending_requires_fee(self, submitted, inspection_ledger):
        res = inspection_ledger.mark_payment_pending("INSP-1")
        assert res.outcome is Outcome.INVALID_STATE
        assert res.value.workflow_status is WorkflowStatus.SUBMITTED

    def test_confirm_requires_payment_pending(self, submitted, inspection_ledger):
        res = inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))
        assert res.outcome is Outcome.INVALID_STATE

    def test_unknown_record(self, inspection_ledger):
        res = inspection_ledger.update_fee("nope", compute_fee("Sedan", 1800))
        assert res.outcome is Outcome.NOT_FOUND

    def test_confirm_registration(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        res = inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))
        assert res.ok
        assert res.value.workflow_status is WorkflowStatus.REGISTERED
        assert res.value.chain_tx_reference == make_tx(1)
        assert res.value.chain_registration_number == "ABC-1234"

    def test_confirm_same_tx_is_idempotent(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        assert inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1)).ok
        before = len(inspection_ledger.history("INSP-1"))

        again = inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))
        assert again.ok
        assert len(inspection_ledger.history("INSP-1")) == before

    def test_confirm_different_tx_is_rejected(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        assert inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1)).ok

        res = inspection_ledger.confirm_registration("INSP-1", "ZZZ-9999", make_tx(2))
        assert res.outcome is Outcome.ALREADY_CONFIRMED
        rec = inspection_ledger.get("INSP-1").value
        assert rec.chain_tx_reference == make_tx(1)
        assert rec.chain_registration_number == "ABC-1234"

    def test_registration_number_unique(self, submitted, slot_ledger, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        assert inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1)).ok

        slot_ledger.claim("S124", OWNER)
        inspection_ledger.create("INSP-2", OWNER, vehicle(engine_number="E2", chassis_number="C2"), "S124")
        _to_payment_pending(inspection_ledger, "INSP-2")
        res = inspection_ledger.confirm_registration("INSP-2", "ABC-1234", make_tx(2))
        assert res.outcome is Outcome.CONFLICT
        assert inspection_ledger.get("INSP-2").value.workflow_status is WorkflowStatus.PAYMENT_PENDING

    def test_registered_cannot_regress(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))

        assert inspection_ledger.update_fee("INSP-1", compute_fee("Sedan", 1800)).outcome is Outcome.INVALID_STATE
        assert inspection_ledger.mark_payment_pending("INSP-1").outcome is Outcome.INVALID_STATE
        assert inspection_ledger.begin_submission("INSP-1", submitted.created_at).outcome is Outcome.INVALID_STATE
        assert inspection_ledger.get("INSP-1").value.workflow_status is WorkflowStatus.REGISTERED

    def test_history_records_each_transition(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))
        steps = [(e.from_status, e.to_status) for e in inspection_ledger.history("INSP-1")]
        assert steps == [
            (None, "Submitted"),
            ("Submitted", "FeeComputed"),
            ("FeeComputed", "PaymentPending"),
            ("PaymentPending", "Registered"),
        ]

    def test_registration_number_in_use(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        assert inspection_ledger.registration_number_in_use("ABC-1234")
        assert not inspection_ledger.registration_number_in_use("ABC-9999")

    def test_begin_submission_requires_the_attempt_read(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        first = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        assert inspection_ledger.begin_submission("INSP-1", first).ok

        # a caller that also read "no attempt" lost the race
        res = inspection_ledger.begin_submission("INSP-1", first + timedelta(seconds=1))
        assert res.outcome is Outcome.PAYMENT_IN_FLIGHT

        stale = inspection_ledger.get("INSP-1").value.submission_started_at
        later = first + timedelta(minutes=20)
        assert inspection_ledger.begin_submission("INSP-1", later, previous_started_at=stale).ok
        res = inspection_ledger.begin_submission("INSP-1", later + timedelta(seconds=1), previous_started_at=stale)
        assert res.outcome is Outcome.PAYMENT_IN_FLIGHT
        assert as_utc(inspection_ledger.get("INSP-1").value.submission_started_at) == later


# ============================================
# Queries
# ============================================

class TestQueries:

    def test_list_by_wallet(self, submitted, slot_ledger, inspection_ledger):
        slot_ledger.claim("S124", OTHER)
        inspection_ledger.create("INSP-2", OTHER, vehicle(engine_number="E2", chassis_number="C2"), "S124")

        assert [r.inspection_id for r in inspection_ledger.list_by_wallet(OWNER)] == ["INSP-1"]
        # wallet addresses compare case-insensitively
        assert [r.inspection_id for r in inspection_ledger.list_by_wallet(OTHER.upper())] == ["INSP-2"]
        assert inspection_ledger.list_by_wallet("0x" + "3" * 40) == []

    def test_list_by_status(self, submitted, slot_ledger, inspection_ledger):
        slot_ledger.claim("S124", OWNER)
        inspection_ledger.create("INSP-2", OWNER, vehicle(engine_number="E2", chassis_number="C2"), "S124")
        _to_payment_pending(inspection_ledger, "INSP-2")

        pending = inspection_ledger.list_by_status(WorkflowStatus.PAYMENT_PENDING)
        assert [r.inspection_id for r in pending] == ["INSP-2"]
        assert {r.inspection_id for r in inspection_ledger.list_by_status()} == {"INSP-1", "INSP-2"}
        assert len(inspection_ledger.list_by_status(limit=1)) == 1

    def test_find_by_registration_number(self, submitted, inspection_ledger):
        _to_payment_pending(inspection_ledger)
        # a proposed number is not an assignment
        assert inspection_ledger.find_by_registration_number("ABC-1234").outcome is Outcome.NOT_FOUND

        inspection_ledger.confirm_registration("INSP-1", "ABC-1234", make_tx(1))
        res = inspection_ledger.find_by_registration_number("ABC-1234")
        assert res.ok
        assert res.value.inspection_id == "INSP-1"

    def test_timestamps_read_back_as_utc(self, submitted, inspection_ledger):
        created = as_utc(submitted.created_at)
        assert created.tzinfo is not None
        assert abs(utcnow() - created) < timedelta(minutes=1)
        assert as_utc(inspection_ledger.get("INSP-1").value.created_at) == created


# ============================================
# Concurrency
# ============================================

class TestConcurrentCreate:

    def test_concurrent_creates_single_winner(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'inspections.db'}")
        init_db(engine)
        callers = 8
        base = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)
        SlotLedger(engine).seed([(f"S{n}", base + timedelta(hours=n)) for n in range(callers)])
        ledger = InspectionLedger(engine)

        barrier = threading.Barrier(callers)
        results = []
        lock = threading.Lock()

        def create(n):
            # half reuse one id, all reuse one vehicle, each on its own slot
            inspection_id = "INSP-RACE" if n % 2 == 0 else f"INSP-{n}"
            barrier.wait()
            res = ledger.create(inspection_id, f"0x{n:040x}", vehicle(), f"S{n}")
            with lock:
                results.append(res)

        threads = [threading.Thread(target=create, args=(n,)) for n in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        outcomes = [r.outcome for r in results]
        assert len(outcomes) == callers
        assert outcomes.count(Outcome.OK) == 1
        assert set(outcomes) - {Outcome.OK} <= {Outcome.DUPLICATE_ID, Outcome.DUPLICATE_VEHICLE}
        assert len(ledger.list_by_status()) == 1
        engine.dispose()
