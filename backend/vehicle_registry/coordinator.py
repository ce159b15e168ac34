# vehicle_registry/coordinator.py
"""
Registration workflow and payment reconciliation.

The coordinator is the only component that advances an inspection through
Submitted -> FeeComputed -> PaymentPending -> Registered. It treats the chain
as the source of truth for payment and the store as the source of truth for
workflow status; whenever the two may disagree it re-reads the chain with
get_payment_status and only moves a record forward on positive confirmation
from that read. A financial submission is never sent without first
establishing what the chain already holds for the inspection.
"""
import logging
import random
import string
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Union

from pydantic import ValidationError

from . import capability
from .capability import Capability
from .chain import ChainGateway, SubmissionFailure
from .fees import annual_tax, compute_fee
from .inspections import InspectionLedger
from .models import InspectionRecord, WorkflowStatus, as_utc, utcnow
from .results import Outcome, Result
from .schemas import PaymentQuote, PaymentShortfall, RegistrationNumberOut, StatusOut, VehicleAttributes
from .slots import SlotLedger

log = logging.getLogger("coordinator")

MAX_REGISTRATION_NUMBER_ATTEMPTS = 10


def generate_registration_number(rng: random.Random) -> str:
    """ABC-1234: three letters, a dash and four digits."""
    letters = "".join(rng.choice(string.ascii_uppercase) for _ in range(3))
    digits = "".join(rng.choice(string.digits) for _ in range(4))
    return f"{letters}-{digits}"


class ReconciliationCoordinator:
    def __init__(
        self,
        slots: SlotLedger,
        inspections: InspectionLedger,
        gateway: ChainGateway,
        tax_enabled: bool = False,
        submission_grace: timedelta = timedelta(minutes=15),
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.slots = slots
        self.inspections = inspections
        self.gateway = gateway
        self.tax_enabled = tax_enabled
        self.submission_grace = submission_grace
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    # ---------- helpers ----------
    def _load(self, cap: Capability, inspection_id: str, scope: str, owner_only: bool = True) -> Result:
        if not cap.allows(scope):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} lacks {scope}")
        res = self.inspections.get(inspection_id)
        if not res.ok:
            return res
        if owner_only and not cap.owns(res.value.wallet_identity):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} does not own inspection {inspection_id}")
        return res

    @staticmethod
    def _require(rec: InspectionRecord, *allowed: WorkflowStatus) -> Optional[Result]:
        if rec.workflow_status in allowed:
            return None
        expected = " or ".join(s.value for s in allowed)
        return Result.failure(
            Outcome.INVALID_STATE,
            f"inspection {rec.inspection_id} is {rec.status}, expected {expected}",
            rec,
        )

    def _new_registration_number(self) -> Optional[str]:
        for _ in range(MAX_REGISTRATION_NUMBER_ATTEMPTS):
            candidate = generate_registration_number(self.rng)
            if not self.inspections.registration_number_in_use(candidate):
                return candidate
        return None

    # ---------- Submitted ----------
    def submit_for_inspection(
        self,
        cap: Capability,
        inspection_id: str,
        attrs: Union[VehicleAttributes, Mapping],
        slot_id: str,
        wallet_identity: Optional[str] = None,
    ) -> Result:
        """Claim the appointment slot and open the inspection record."""
        if not cap.allows(capability.SUBMIT):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} lacks {capability.SUBMIT}")
        wallet_identity = wallet_identity or cap.holder
        if not cap.owns(wallet_identity):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} cannot submit for {wallet_identity}")

        if not isinstance(attrs, VehicleAttributes):
            try:
                attrs = VehicleAttributes.model_validate(attrs)
            except ValidationError as e:
                return Result.failure(Outcome.INVALID_ATTRIBUTES, str(e))

        # refuse known duplicates before a slot is consumed
        pre = self.inspections.precheck(inspection_id, attrs)
        if not pre.ok:
            return pre

        claim = self.slots.claim(slot_id, wallet_identity)
        if not claim.ok:
            return claim

        created = self.inspections.create(inspection_id, wallet_identity, attrs, slot_id, actor=cap.holder)
        if not created.ok:
            log.warning(
                "Inspection %s not created (%s); slot %s stays booked",
                inspection_id, created.outcome.value, slot_id,
            )
        return created

    # ---------- Submitted -> FeeComputed ----------
    def compute_fee(self, cap: Capability, inspection_id: str) -> Result:
        res = self._load(cap, inspection_id, capability.SUBMIT)
        if not res.ok:
            return res
        rec = res.value

        tax = 0
        if self.tax_enabled:
            age = max(0, self.clock().year - rec.manufacturing_year)
            tax = annual_tax(rec.vehicle_type, rec.engine_capacity, age)
        breakdown = compute_fee(rec.vehicle_type, rec.engine_capacity, annual_tax=tax)

        updated = self.inspections.update_fee(inspection_id, breakdown, actor=cap.holder)
        if not updated.ok:
            return updated
        return Result.success(breakdown)

    def fee_quote(self, cap: Capability, inspection_id: str) -> Result:
        res = self._load(cap, inspection_id, capability.READ, owner_only=False)
        if not res.ok:
            return res
        rec = res.value
        if rec.workflow_status is WorkflowStatus.SUBMITTED:
            return Result.failure(Outcome.INVALID_STATE, f"fee for {inspection_id} has not been computed", rec)
        return Result.success(rec.fee_breakdown)

    # ---------- FeeComputed -> PaymentPending ----------
    def request_payment(self, cap: Capability, inspection_id: str) -> Result:
        """Move to PaymentPending and hand back the amount the chain payment must cover."""
        res = self._load(cap, inspection_id, capability.PAY)
        if not res.ok:
            return res
        rec = res.value
        invalid = self._require(rec, WorkflowStatus.FEE_COMPUTED)
        if invalid:
            return invalid

        number = self._new_registration_number()
        if number is None:
            return Result.failure(Outcome.CONFLICT, "could not allocate an unused registration number")

        updated = self.inspections.mark_payment_pending(inspection_id, number, actor=cap.holder)
        if not updated.ok:
            return updated
        rec = updated.value
        return Result.success(PaymentQuote(
            inspection_id=inspection_id,
            amount_due=rec.total_fee,
            registration_number=number,
        ))

    # ---------- PaymentPending -> Registered ----------
    def submit_payment(self, cap: Capability, inspection_id: str) -> Result:
        """
        Pay through the chain gateway.

        Chain state is read before anything is sent: an inspection that is
        already paid is reconciled instead. While an earlier submission's
        outcome is unknown no new submission is made until the grace window
        has passed without the chain reporting a payment.
        """
        res = self._load(cap, inspection_id, capability.PAY)
        if not res.ok:
            return res
        rec = res.value
        invalid = self._require(rec, WorkflowStatus.PAYMENT_PENDING)
        if invalid:
            return invalid

        before = self._reconcile(rec, cap.holder)
        if before.outcome is not Outcome.NOT_PAID:
            return before

        now = as_utc(self.clock())
        started = as_utc(rec.submission_started_at)
        if started is not None:
            if now - started < self.submission_grace:
                return Result.failure(
                    Outcome.PAYMENT_IN_FLIGHT,
                    f"payment for {inspection_id} submitted at {started} is unresolved",
                    rec.submission_tx_reference,
                )
            log.warning(
                "Payment attempt for %s from %s never reached the chain; allowing a new submission",
                inspection_id, started,
            )

        # fails if another caller stamped an attempt since rec was read
        begun = self.inspections.begin_submission(
            inspection_id, now, previous_started_at=rec.submission_started_at, actor=cap.holder
        )
        if not begun.ok:
            return begun

        sub = self.gateway.submit_registration(
            inspection_id,
            rec.attributes,
            rec.proposed_registration_number,
            rec.total_fee,
            rec.wallet_identity,
        )
        self._record_attempt(inspection_id, sub, cap.holder)

        after = self._reconcile(self.inspections.get(inspection_id).value, cap.holder,
                                claimed_tx=sub.value if sub.ok else None)
        if after.outcome is not Outcome.NOT_PAID:
            return after
        if sub.ok:
            return Result.failure(
                Outcome.PAYMENT_IN_FLIGHT,
                f"transaction {sub.value} mined but the chain does not report payment yet",
                sub.value,
            )
        return sub

    def _record_attempt(self, inspection_id: str, sub: Result, actor: str):
        if sub.ok:
            self.inspections.record_submission(inspection_id, sub.value, actor=actor)
            return
        failure = sub.value if isinstance(sub.value, SubmissionFailure) else None
        if failure is None or not failure.broadcast or sub.outcome is Outcome.CHAIN_REJECTED:
            # definitely not paid: signer rejection, revert, or never broadcast
            self.inspections.clear_submission(inspection_id, sub.outcome.value, actor=actor)
        elif failure.tx_reference:
            self.inspections.record_submission(inspection_id, failure.tx_reference, actor=actor)

    def confirm_payment(self, cap: Capability, inspection_id: str, tx_reference: Optional[str] = None) -> Result:
        """
        Payment-confirmed hook. Idempotent.

        tx_reference is the caller's claim; it is compared against, never
        substituted for, what the chain reports.
        """
        res = self._load(cap, inspection_id, capability.CONFIRM)
        if not res.ok:
            return res
        rec = res.value
        invalid = self._require(rec, WorkflowStatus.PAYMENT_PENDING, WorkflowStatus.REGISTERED)
        if invalid:
            return invalid
        if rec.workflow_status is WorkflowStatus.REGISTERED and (
            tx_reference is None or tx_reference.lower() == (rec.chain_tx_reference or "").lower()
        ):
            return Result.success(rec, "already registered")
        return self._reconcile(rec, cap.holder, claimed_tx=tx_reference)

    def _reconcile(self, rec: InspectionRecord, actor: str, claimed_tx: Optional[str] = None) -> Result:
        status = self.gateway.get_payment_status(rec.inspection_id)
        if status.outcome is Outcome.NOT_FOUND_ON_CHAIN:
            return Result.failure(Outcome.NOT_PAID, f"no payment recorded on chain for {rec.inspection_id}")
        if not status.ok:
            return status
        chain = status.value

        if chain.identity != rec.inspection_id or (
            chain.owner and chain.owner.lower() != rec.wallet_identity.lower()
        ):
            log.warning(
                "Chain record for %s does not match: identity %s owner %s, expected owner %s",
                rec.inspection_id, chain.identity, chain.owner, rec.wallet_identity,
            )
            return Result.failure(Outcome.IDENTITY_MISMATCH, "chain payment belongs to a different identity", chain)

        if not chain.paid:
            return Result.failure(Outcome.NOT_PAID, f"chain reports {rec.inspection_id} unpaid", chain)

        if chain.amount_paid < rec.total_fee:
            shortfall = PaymentShortfall(
                inspection_id=rec.inspection_id,
                amount_paid=chain.amount_paid,
                total_fee=rec.total_fee,
                remaining=rec.total_fee - chain.amount_paid,
            )
            log.warning("Underpayment for %s: paid %d of %d", rec.inspection_id, chain.amount_paid, rec.total_fee)
            return Result.failure(
                Outcome.AMOUNT_MISMATCH,
                f"paid {chain.amount_paid} of {rec.total_fee}, {shortfall.remaining} remaining",
                shortfall,
            )

        tx_ref = chain.tx_reference or rec.submission_tx_reference
        if claimed_tx and tx_ref and claimed_tx.lower() != tx_ref.lower():
            log.warning(
                "Confirmation for %s claims tx %s but the chain reports %s; using the chain's",
                rec.inspection_id, claimed_tx, tx_ref,
            )
        if tx_ref is None:
            return Result.failure(
                Outcome.CHAIN_RETRYABLE,
                f"payment for {rec.inspection_id} confirmed but its transaction is not indexed yet",
                chain,
            )

        reg_number = chain.registration_number or rec.proposed_registration_number
        if reg_number is None:
            reg_number = self._new_registration_number()
        return self.inspections.confirm_registration(rec.inspection_id, reg_number, tx_ref, actor=actor)

    # ---------- status / recovery ----------
    def status(self, cap: Capability, inspection_id: str) -> Result:
        """Current workflow state; certificate issuance is only allowed once Registered."""
        res = self._load(cap, inspection_id, capability.READ, owner_only=False)
        if not res.ok:
            return res
        rec = res.value
        return Result.success(StatusOut(
            inspection_id=rec.inspection_id,
            status=rec.status,
            issuance_allowed=rec.workflow_status is WorkflowStatus.REGISTERED,
            chain_registration_number=rec.chain_registration_number,
            chain_tx_reference=rec.chain_tx_reference,
        ))

    def history(self, cap: Capability, inspection_id: str) -> Result:
        res = self._load(cap, inspection_id, capability.READ, owner_only=False)
        if not res.ok:
            return res
        return Result.success(self.inspections.history(inspection_id))

    def list_inspections(
        self, cap: Capability, status: Optional[WorkflowStatus] = None, limit: int = 100
    ) -> Result:
        if not cap.is_admin:
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} cannot list all inspections")
        return Result.success(self.inspections.list_by_status(status, limit=limit))

    def wallet_inspections(self, cap: Capability, wallet_identity: str) -> Result:
        """Inspections opened by a wallet; visible to that wallet and to admins."""
        if not cap.allows(capability.READ) or not cap.owns(wallet_identity):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} cannot list inspections of {wallet_identity}")
        return Result.success(self.inspections.list_by_wallet(wallet_identity))

    def registration_lookup(self, cap: Capability, number: str) -> Result:
        """Whether a registration number is taken, and by which inspection once confirmed."""
        if not cap.allows(capability.READ):
            return Result.failure(Outcome.UNAUTHORIZED, f"{cap.holder} lacks {capability.READ}")
        found = self.inspections.find_by_registration_number(number)
        if found.ok:
            return Result.success(RegistrationNumberOut(
                registration_number=number,
                exists=True,
                inspection_id=found.value.inspection_id,
                status=found.value.status,
            ))
        return Result.success(RegistrationNumberOut(
            registration_number=number,
            exists=self.inspections.registration_number_in_use(number),
        ))

    def reconcile_pending(self, cap: Capability = capability.SYSTEM, limit: int = 100) -> dict:
        """Re-read chain truth for every PaymentPending inspection; resumes flows after a restart."""
        if not cap.is_admin:
            return {Outcome.UNAUTHORIZED.value: 1}
        summary = Counter()
        for rec in self.inspections.list_by_status(WorkflowStatus.PAYMENT_PENDING, limit=limit):
            try:
                res = self._reconcile(rec, cap.holder)
            except Exception:
                log.exception("Reconciliation of %s failed", rec.inspection_id)
                summary["error"] += 1
                continue
            summary[res.outcome.value] += 1
        if summary:
            log.info("Reconciliation sweep: %s", dict(summary))
        return dict(summary)
