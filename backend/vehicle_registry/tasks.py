# vehicle_registry/tasks.py
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .capability import SYSTEM
from .dependencies import get_coordinator
from .settings import settings

log = logging.getLogger("tasks")


def reconcile_pending_payments():
    """Resume every PaymentPending flow from chain truth."""
    log.info("Running payment reconciliation...")
    try:
        summary = get_coordinator().reconcile_pending(SYSTEM)
    except Exception:
        log.exception("Payment reconciliation sweep failed")
        return None
    log.info("Payment reconciliation finished: %s", summary)
    return summary


scheduler = BackgroundScheduler()
scheduler.add_job(
    reconcile_pending_payments,
    "interval",
    minutes=settings.RECONCILE_INTERVAL_MINUTES,
    id="reconcile_pending_payments",
    max_instances=1,
    coalesce=True,
)
