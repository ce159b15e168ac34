# vehicle_registry/provisioning.py
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from .models import as_utc
from .settings import settings

log = logging.getLogger("provisioning")


class CalendarProvisioningError(Exception):
    pass


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def slot_id_for(scheduled_at: datetime) -> str:
    return "S" + scheduled_at.strftime("%Y%m%d%H%M")


def default_calendar(days: int, times: Iterable[str], start: Optional[date] = None) -> List[Tuple[str, datetime]]:
    """One UTC slot per configured time of day for each of the next `days` days, starting tomorrow."""
    start = start or date.today()
    parsed = [time.fromisoformat(t) for t in times]
    slots = []
    for offset in range(1, days + 1):
        day = start + timedelta(days=offset)
        for t in parsed:
            when = datetime.combine(day, t, tzinfo=timezone.utc)
            slots.append((slot_id_for(when), when))
    return slots


def fetch_calendar(url: str, token: Optional[str] = None, timeout: int = 30) -> List[Tuple[str, datetime]]:
    """
    Read the slot calendar from the provisioning service.

    Expects a JSON list of {"id": ..., "scheduledAt": ISO-8601}; timestamps
    without an offset are taken as UTC.
    """
    try:
        res = requests.get(url, headers=_auth_headers(token), timeout=timeout)
        res.raise_for_status()
        payload = res.json()
    except (requests.RequestException, ValueError) as e:
        raise CalendarProvisioningError(f"Calendar fetch failed: {e}") from e

    slots = []
    for entry in payload:
        try:
            scheduled = entry.get("scheduledAt") or entry["scheduled_at"]
            slots.append((str(entry["id"]), as_utc(datetime.fromisoformat(scheduled))))
        except (KeyError, TypeError, ValueError) as e:
            raise CalendarProvisioningError(f"Malformed calendar entry {entry!r}: {e}") from e
    return slots


def load_calendar(config=settings) -> List[Tuple[str, datetime]]:
    if config.CALENDAR_URL:
        slots = fetch_calendar(config.CALENDAR_URL, config.CALENDAR_TOKEN)
        log.info("Loaded %d slots from %s", len(slots), config.CALENDAR_URL)
        return slots
    return default_calendar(config.SLOT_CALENDAR_DAYS, config.SLOT_TIMES)
