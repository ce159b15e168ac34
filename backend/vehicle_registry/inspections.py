# vehicle_registry/inspections.py
"""
Inspection records and their workflow field groups.

Each mutation is a compare-and-swap against the status the caller expects the
record to be in, and writes its WorkflowEvent in the same transaction, so a
retried request can never apply a transition twice or move a record backwards.
"""
import logging
from datetime import datetime
from typing import List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .models import InspectionRecord, WorkflowEvent, WorkflowStatus, utcnow
from .results import Outcome, Result
from .schemas import FeeBreakdown, VehicleAttributes

log = logging.getLogger("inspections")


class InspectionLedger:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ---------- READS ----------
    def get(self, inspection_id: str) -> Result:
        with Session(self.engine) as s:
            rec = s.get(InspectionRecord, inspection_id)
        if rec is None:
            return Result.failure(Outcome.NOT_FOUND, f"inspection {inspection_id} not found")
        return Result.success(rec)

    def list_by_status(self, status: Optional[WorkflowStatus] = None, limit: int = 100) -> List[InspectionRecord]:
        """Oldest-updated first; every status when status is None."""
        with Session(self.engine) as s:
            q = select(InspectionRecord)
            if status is not None:
                q = q.where(InspectionRecord.status == status.value)
            q = q.order_by(InspectionRecord.updated_at, InspectionRecord.inspection_id).limit(limit)
            return s.exec(q).all()

    def list_by_wallet(self, wallet_identity: str) -> List[InspectionRecord]:
        with Session(self.engine) as s:
            q = (
                select(InspectionRecord)
                .where(func.lower(InspectionRecord.wallet_identity) == wallet_identity.lower())
                .order_by(InspectionRecord.created_at, InspectionRecord.inspection_id)
            )
            return s.exec(q).all()

    def find_by_registration_number(self, number: str) -> Result:
        with Session(self.engine) as s:
            q = select(InspectionRecord).where(InspectionRecord.chain_registration_number == number)
            rec = s.exec(q).first()
        if rec is None:
            return Result.failure(Outcome.NOT_FOUND, f"registration number {number} is not assigned")
        return Result.success(rec)

    def registration_number_in_use(self, number: str) -> bool:
        with Session(self.engine) as s:
            q = select(InspectionRecord.inspection_id).where(
                or_(
                    InspectionRecord.chain_registration_number == number,
                    InspectionRecord.proposed_registration_number == number,
                )
            )
            return s.exec(q).first() is not None

    def history(self, inspection_id: str) -> List[WorkflowEvent]:
        with Session(self.engine) as s:
            q = (
                select(WorkflowEvent)
                .where(WorkflowEvent.inspection_id == inspection_id)
                .order_by(WorkflowEvent.id)
            )
            return s.exec(q).all()

    # ---------- CREATE ----------
    def create(
        self,
        inspection_id: str,
        wallet_identity: str,
        attrs: Union[VehicleAttributes, Mapping],
        bound_slot_id: str,
        actor: Optional[str] = None,
    ) -> Result:
        """Create a Submitted record bound to an already-claimed slot."""
        if not isinstance(attrs, VehicleAttributes):
            try:
                attrs = VehicleAttributes.model_validate(attrs)
            except ValidationError as e:
                return Result.failure(Outcome.INVALID_ATTRIBUTES, str(e))

        with Session(self.engine) as s:
            conflict = self._find_conflict(s, inspection_id, attrs, bound_slot_id)
            if conflict is not None:
                return conflict

            rec = InspectionRecord(
                inspection_id=inspection_id,
                wallet_identity=wallet_identity,
                make=attrs.make,
                model=attrs.model,
                variant=attrs.variant,
                vehicle_type=attrs.vehicle_type,
                fuel_type=attrs.fuel_type.value,
                engine_capacity=attrs.engine_capacity,
                manufacturing_year=attrs.manufacturing_year,
                engine_number=attrs.engine_number,
                chassis_number=attrs.chassis_number,
                color=attrs.color,
                bound_slot_id=bound_slot_id,
            )
            s.add(rec)
            s.add(WorkflowEvent(
                inspection_id=inspection_id,
                from_status=None,
                to_status=WorkflowStatus.SUBMITTED.value,
                actor=actor or wallet_identity,
                detail=f"slot {bound_slot_id}",
            ))
            try:
                s.commit()
            except IntegrityError:
                # lost a race against a concurrent create; report what collided
                s.rollback()
                return self._find_conflict(s, inspection_id, attrs, bound_slot_id) or Result.failure(
                    Outcome.CONFLICT, f"inspection {inspection_id} collides with an existing record"
                )
            s.refresh(rec)

        log.info("Inspection %s submitted by %s on slot %s", inspection_id, wallet_identity, bound_slot_id)
        return Result.success(rec)

    def precheck(self, inspection_id: str, attrs: VehicleAttributes, bound_slot_id: Optional[str] = None) -> Result:
        """Report whether create() would collide with an existing record."""
        with Session(self.engine) as s:
            conflict = self._find_conflict(s, inspection_id, attrs, bound_slot_id)
        return conflict or Result.success()

    @staticmethod
    def _find_conflict(s: Session, inspection_id, attrs: VehicleAttributes, bound_slot_id=None) -> Optional[Result]:
        if s.get(InspectionRecord, inspection_id) is not None:
            return Result.failure(Outcome.DUPLICATE_ID, f"inspection {inspection_id} already exists")

        q = select(InspectionRecord.inspection_id).where(
            or_(
                InspectionRecord.engine_number == attrs.engine_number,
                InspectionRecord.chassis_number == attrs.chassis_number,
            )
        )
        existing = s.exec(q).first()
        if existing is not None:
            return Result.failure(
                Outcome.DUPLICATE_VEHICLE,
                f"engine/chassis number already submitted under inspection {existing}",
            )

        if bound_slot_id is not None:
            q = select(InspectionRecord.inspection_id).where(InspectionRecord.bound_slot_id == bound_slot_id)
            holder = s.exec(q).first()
            if holder is not None:
                return Result.failure(Outcome.CONFLICT, f"slot {bound_slot_id} is held by inspection {holder}")
        return None

    # ---------- TRANSITIONS ----------
    def _transition(
        self,
        inspection_id: str,
        expected: WorkflowStatus,
        target: WorkflowStatus,
        values: dict,
        actor: str,
        detail: Optional[str] = None,
        guard: Sequence = (),
    ) -> Result:
        stmt = (
            update(InspectionRecord)
            .where(
                InspectionRecord.inspection_id == inspection_id,
                InspectionRecord.status == expected.value,
                *guard,
            )
            .values(status=target.value, updated_at=utcnow(), **values)
        )
        with Session(self.engine) as s:
            try:
                applied = s.connection().execute(stmt).rowcount == 1
                if applied:
                    s.add(WorkflowEvent(
                        inspection_id=inspection_id,
                        from_status=expected.value,
                        to_status=target.value,
                        actor=actor,
                        detail=detail,
                    ))
                s.commit()
            except IntegrityError as e:
                s.rollback()
                log.warning("Transition %s -> %s for %s violated a constraint: %s",
                            expected.value, target.value, inspection_id, e.orig)
                return Result.failure(Outcome.CONFLICT, f"constraint violated: {e.orig}")
            rec = s.get(InspectionRecord, inspection_id)

        if rec is None:
            return Result.failure(Outcome.NOT_FOUND, f"inspection {inspection_id} not found")
        if not applied:
            return Result.failure(
                Outcome.INVALID_STATE,
                f"inspection {inspection_id} is {rec.status}, expected {expected.value}",
                rec,
            )
        if expected is not target:
            log.info("Inspection %s: %s -> %s (%s)", inspection_id, expected.value, target.value, actor)
        return Result.success(rec)

    def update_fee(self, inspection_id: str, breakdown: FeeBreakdown, actor: str = "system") -> Result:
        return self._transition(
            inspection_id,
            WorkflowStatus.SUBMITTED,
            WorkflowStatus.FEE_COMPUTED,
            {
                "base_fee": breakdown.base_fee,
                "surcharge": breakdown.surcharge,
                "annual_tax": breakdown.annual_tax,
                "total_fee": breakdown.total_fee,
            },
            actor,
            detail=f"total fee {breakdown.total_fee}",
        )

    def mark_payment_pending(
        self,
        inspection_id: str,
        proposed_registration_number: Optional[str] = None,
        actor: str = "system",
    ) -> Result:
        return self._transition(
            inspection_id,
            WorkflowStatus.FEE_COMPUTED,
            WorkflowStatus.PAYMENT_PENDING,
            {"proposed_registration_number": proposed_registration_number},
            actor,
        )

    def confirm_registration(
        self,
        inspection_id: str,
        reg_number: str,
        tx_ref: str,
        actor: str = "system",
    ) -> Result:
        """
        PaymentPending -> Registered.

        Repeating the call with the same tx_ref is a no-op returning OK. A
        different tx_ref after a successful confirmation is conflicting
        evidence and yields ALREADY_CONFIRMED; the stored values are kept.
        """
        res = self._transition(
            inspection_id,
            WorkflowStatus.PAYMENT_PENDING,
            WorkflowStatus.REGISTERED,
            {"chain_registration_number": reg_number, "chain_tx_reference": tx_ref},
            actor,
            detail=f"tx {tx_ref}",
        )
        if res.outcome is not Outcome.INVALID_STATE:
            return res

        rec = res.value
        if rec.workflow_status is not WorkflowStatus.REGISTERED:
            return res
        if rec.chain_tx_reference == tx_ref:
            return Result.success(rec, "already registered with this transaction")
        log.warning(
            "Conflicting confirmation for %s: stored tx %s, offered tx %s",
            inspection_id, rec.chain_tx_reference, tx_ref,
        )
        return Result.failure(
            Outcome.ALREADY_CONFIRMED,
            f"inspection {inspection_id} already confirmed by {rec.chain_tx_reference}",
            rec,
        )

    # ---------- PAYMENT ATTEMPT ----------
    def begin_submission(
        self,
        inspection_id: str,
        started_at: datetime,
        previous_started_at: Optional[datetime] = None,
        actor: str = "system",
    ) -> Result:
        """
        Stamp a new payment attempt.

        Only applies while the stored attempt is still the one the caller read
        (none, or the stale one it is replacing). A concurrent caller that got
        there first makes this return PAYMENT_IN_FLIGHT.
        """
        if previous_started_at is None:
            guard = (InspectionRecord.submission_started_at.is_(None),)
        else:
            guard = (InspectionRecord.submission_started_at == previous_started_at,)
        res = self._transition(
            inspection_id,
            WorkflowStatus.PAYMENT_PENDING,
            WorkflowStatus.PAYMENT_PENDING,
            {"submission_started_at": started_at, "submission_tx_reference": None},
            actor,
            detail="payment submission started",
            guard=guard,
        )
        if res.outcome is Outcome.INVALID_STATE and res.value.workflow_status is WorkflowStatus.PAYMENT_PENDING:
            return Result.failure(
                Outcome.PAYMENT_IN_FLIGHT,
                f"another payment attempt for {inspection_id} started at {res.value.submission_started_at}",
                res.value.submission_tx_reference,
            )
        return res

    def record_submission(self, inspection_id: str, tx_ref: str, actor: str = "system") -> Result:
        return self._transition(
            inspection_id,
            WorkflowStatus.PAYMENT_PENDING,
            WorkflowStatus.PAYMENT_PENDING,
            {"submission_tx_reference": tx_ref},
            actor,
            detail=f"payment submitted in tx {tx_ref}",
        )

    def clear_submission(self, inspection_id: str, reason: str, actor: str = "system") -> Result:
        return self._transition(
            inspection_id,
            WorkflowStatus.PAYMENT_PENDING,
            WorkflowStatus.PAYMENT_PENDING,
            {"submission_started_at": None, "submission_tx_reference": None},
            actor,
            detail=f"payment submission cleared: {reason}",
        )
