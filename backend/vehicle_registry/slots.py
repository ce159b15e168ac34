# vehicle_registry/slots.py
import logging
from datetime import datetime
from typing import Iterable, Iterator, Tuple

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .models import Slot, SlotStatus, utcnow
from .results import Outcome, Result

log = logging.getLogger("slots")


class SlotLedger:
    """Appointment slots. A slot only ever moves Free -> Booked."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def seed(self, slots: Iterable[Tuple[str, datetime]]) -> int:
        """Insert provisioned slots that are not known yet; existing slots are left untouched."""
        added = 0
        with Session(self.engine) as s:
            for slot_id, scheduled_at in slots:
                if s.get(Slot, slot_id) is None:
                    s.add(Slot(id=slot_id, scheduled_at=scheduled_at))
                    added += 1
            s.commit()
        if added:
            log.info("Seeded %d appointment slots", added)
        return added

    def list_free(self) -> Iterator[Slot]:
        with Session(self.engine) as s:
            q = select(Slot).where(Slot.status == SlotStatus.FREE.value).order_by(Slot.scheduled_at, Slot.id)
            snapshot = s.exec(q).all()
        yield from snapshot

    def get(self, slot_id: str) -> Result:
        with Session(self.engine) as s:
            slot = s.get(Slot, slot_id)
        if slot is None:
            return Result.failure(Outcome.NOT_FOUND, f"slot {slot_id} does not exist")
        return Result.success(slot)

    def claim(self, slot_id: str, requester_token: str) -> Result:
        """
        Book a slot for requester_token.

        The conditional UPDATE is the compare-and-swap: the row only changes
        when it is still Free, so of any number of concurrent callers exactly
        one sees a matched row. Everyone else gets CONFLICT.
        """
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == SlotStatus.FREE.value)
            .values(status=SlotStatus.BOOKED.value, booked_by=requester_token, booked_at=utcnow())
        )
        with Session(self.engine) as s:
            claimed = s.connection().execute(stmt).rowcount == 1
            s.commit()
            slot = s.get(Slot, slot_id)

        if slot is None:
            return Result.failure(Outcome.NOT_FOUND, f"slot {slot_id} does not exist")
        if not claimed:
            log.info("Slot %s already booked, claim by %s refused", slot_id, requester_token)
            return Result.failure(Outcome.CONFLICT, f"slot {slot_id} is already booked", slot)
        log.info("Slot %s booked by %s", slot_id, requester_token)
        return Result.success(slot)
