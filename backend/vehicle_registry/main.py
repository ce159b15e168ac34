# backend/vehicle_registry/main.py
import hmac
import logging
from typing import List, Optional

from apscheduler.schedulers import SchedulerAlreadyRunningError, SchedulerNotRunningError
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel

from . import capability
from .capability import Capability
from .coordinator import ReconciliationCoordinator
from .database import engine, init_db
from .dependencies import get_coordinator
from .models import InspectionRecord, WorkflowStatus
from .provisioning import CalendarProvisioningError, load_calendar
from .results import Outcome, Result
from .schemas import (
    FeeBreakdown,
    InspectionOut,
    PaymentConfirmationIn,
    PaymentQuote,
    RegistrationNumberOut,
    SlotOut,
    StatusOut,
    SubmitInspectionIn,
    WorkflowEventOut,
)
from .settings import settings
from .slots import SlotLedger
from .tasks import scheduler

log = logging.getLogger("api")

app = FastAPI(title="Vehicle Registration Backend")

# seconds a client should wait before retrying an ambiguous chain outcome
RETRY_AFTER_SECONDS = 30

HTTP_STATUS = {
    Outcome.NOT_FOUND: 404,
    Outcome.UNAUTHORIZED: 403,
    Outcome.INVALID_ATTRIBUTES: 422,
    Outcome.CONFLICT: 409,
    Outcome.DUPLICATE_ID: 409,
    Outcome.DUPLICATE_VEHICLE: 409,
    Outcome.ALREADY_CONFIRMED: 409,
    Outcome.INVALID_STATE: 409,
    Outcome.IDENTITY_MISMATCH: 409,
    Outcome.CHAIN_ALREADY_REGISTERED: 409,
    Outcome.NOT_PAID: 402,
    Outcome.NOT_FOUND_ON_CHAIN: 402,
    Outcome.AMOUNT_MISMATCH: 402,
    Outcome.CHAIN_REJECTED: 400,
    Outcome.PAYMENT_IN_FLIGHT: 202,
    Outcome.CHAIN_RETRYABLE: 503,
}


@app.on_event("startup")
def startup():
    # create tables, seed the appointment calendar, start the reconciliation job
    init_db()
    try:
        SlotLedger(engine).seed(load_calendar())
    except CalendarProvisioningError:
        log.exception("Slot calendar could not be provisioned; serving existing slots only")
    try:
        scheduler.start()
    except SchedulerAlreadyRunningError:
        # dev reload starts the app twice
        pass


@app.on_event("shutdown")
def shutdown():
    try:
        scheduler.shutdown(wait=False)
    except SchedulerNotRunningError:
        pass


def get_capability(
    x_wallet_address: Optional[str] = Header(None),
    x_wallet_signature: Optional[str] = Header(None),
    x_admin_key: Optional[str] = Header(None),
) -> Capability:
    """Build the caller's capability from request headers."""
    if x_admin_key is not None:
        if settings.ADMIN_API_KEY and hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
            return capability.for_admin()
        raise HTTPException(status_code=401, detail="Invalid admin key")

    if x_wallet_address is None:
        return capability.ANONYMOUS

    if settings.REQUIRE_WALLET_SIGNATURE:
        cap = None
        if x_wallet_signature:
            try:
                cap = capability.wallet_from_signature(x_wallet_address, x_wallet_signature)
            except ValueError:
                cap = None
        if cap is None:
            raise HTTPException(status_code=401, detail="Wallet signature verification failed")
        return cap

    try:
        return capability.for_wallet(x_wallet_address)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid wallet address")


def _unwrap(res: Result):
    """Return the value of an OK result, otherwise raise the matching HTTP error."""
    if res.ok:
        return res.value
    detail = {"outcome": res.outcome.value, "message": res.detail}
    if isinstance(res.value, BaseModel):
        detail["data"] = res.value.model_dump(mode="json")
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if res.is_retryable else None
    raise HTTPException(status_code=HTTP_STATUS.get(res.outcome, 400), detail=detail, headers=headers)


def _inspection_out(rec: InspectionRecord) -> InspectionOut:
    return InspectionOut(
        inspection_id=rec.inspection_id,
        wallet_identity=rec.wallet_identity,
        bound_slot_id=rec.bound_slot_id,
        status=rec.status,
        fee=rec.fee_breakdown,
        chain_registration_number=rec.chain_registration_number,
        chain_tx_reference=rec.chain_tx_reference,
    )


@app.get("/slots/free", response_model=List[SlotOut])
def free_slots(coordinator: ReconciliationCoordinator = Depends(get_coordinator)):
    return [SlotOut(id=s.id, scheduled_at=s.scheduled_at, status=s.status) for s in coordinator.slots.list_free()]


@app.post("/inspections", response_model=InspectionOut, status_code=201)
def submit_inspection(
    payload: SubmitInspectionIn,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Book the chosen slot and open an inspection for the calling wallet.
    """
    res = coordinator.submit_for_inspection(cap, payload.inspection_id, payload.vehicle, payload.slot_id)
    return _inspection_out(_unwrap(res))


@app.post("/inspections/{inspection_id}/fee", response_model=FeeBreakdown)
def compute_fee(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return _unwrap(coordinator.compute_fee(cap, inspection_id))


@app.get("/inspections/{inspection_id}/fee", response_model=FeeBreakdown)
def fee_quote(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return _unwrap(coordinator.fee_quote(cap, inspection_id))


@app.post("/inspections/{inspection_id}/payment-request", response_model=PaymentQuote)
def request_payment(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return _unwrap(coordinator.request_payment(cap, inspection_id))


@app.post("/inspections/{inspection_id}/payment", response_model=InspectionOut)
def submit_payment(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Pay the registration fee on chain and reconcile the result.
    """
    return _inspection_out(_unwrap(coordinator.submit_payment(cap, inspection_id)))


@app.post("/inspections/{inspection_id}/payment-confirmation", response_model=InspectionOut)
def confirm_payment(
    inspection_id: str,
    payload: PaymentConfirmationIn,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Payment-confirmed hook. Safe to call repeatedly; a pending record is reconciled against the chain.
    """
    res = coordinator.confirm_payment(cap, inspection_id, payload.tx_reference)
    return _inspection_out(_unwrap(res))


@app.get("/inspections", response_model=List[InspectionOut])
def list_inspections(
    status: Optional[WorkflowStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Admin listing, optionally filtered by workflow status.
    """
    return [_inspection_out(r) for r in _unwrap(coordinator.list_inspections(cap, status, limit))]


@app.get("/inspections/wallet/{address}", response_model=List[InspectionOut])
def wallet_inspections(
    address: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return [_inspection_out(r) for r in _unwrap(coordinator.wallet_inspections(cap, address))]


@app.get("/registrations/{registration_number}", response_model=RegistrationNumberOut)
def registration_lookup(
    registration_number: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return _unwrap(coordinator.registration_lookup(cap, registration_number))


@app.get("/inspections/{inspection_id}/status", response_model=StatusOut)
def inspection_status(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return _unwrap(coordinator.status(cap, inspection_id))


@app.get("/inspections/{inspection_id}/history", response_model=List[WorkflowEventOut])
def inspection_history(
    inspection_id: str,
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    events = _unwrap(coordinator.history(cap, inspection_id))
    return [
        WorkflowEventOut(
            from_status=e.from_status,
            to_status=e.to_status,
            actor=e.actor,
            detail=e.detail,
            created_at=e.created_at,
        )
        for e in events
    ]


@app.post("/reconcile")
def reconcile(
    cap: Capability = Depends(get_capability),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    if not cap.is_admin:
        raise HTTPException(status_code=403, detail="Admin capability required")
    return coordinator.reconcile_pending(cap)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
