# vehicle_registry/dependencies.py
from datetime import timedelta
from functools import lru_cache

from .chain import Web3ChainGateway
from .coordinator import ReconciliationCoordinator
from .database import engine
from .inspections import InspectionLedger
from .settings import settings
from .slots import SlotLedger


@lru_cache(maxsize=1)
def get_coordinator() -> ReconciliationCoordinator:
    """Process-wide coordinator wired from settings."""
    return ReconciliationCoordinator(
        SlotLedger(engine),
        InspectionLedger(engine),
        Web3ChainGateway.from_settings(settings),
        tax_enabled=settings.ANNUAL_TAX_ENABLED,
        submission_grace=timedelta(seconds=settings.SUBMISSION_GRACE_SECONDS),
    )
