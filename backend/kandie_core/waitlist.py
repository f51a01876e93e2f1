from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

from .store import RegistrationStore


@dataclass
class WaitlistEntry:
    id: str
    event_id: int
    ride_level: str
    waitlist_joined_at: Optional[str]
    user_id: Optional[str]


def load_waitlist(
    store: RegistrationStore,
    event_id: Any = None,
    ride_level: Optional[str] = None,
) -> List[WaitlistEntry]:
    """Active waitlisted registrations, earliest joiner first.

    Both filters are optional; an event id that is not an integer is ignored
    rather than rejected.
    """

    store.require_configured()
    try:
        event_filter = int(str(event_id).strip()) if event_id is not None else None
    except ValueError:
        event_filter = None

    entries: List[WaitlistEntry] = []
    for row in store.fetch_waitlist(event_id=event_filter, ride_level=ride_level or None):
        try:
            row_event_id = int(row.get("event_id") or 0)
        except (TypeError, ValueError):
            row_event_id = 0
        entries.append(
            WaitlistEntry(
                id=str(row.get("id") or ""),
                event_id=row_event_id,
                ride_level=str(row.get("ride_level") or ""),
                waitlist_joined_at=row.get("waitlist_joined_at"),
                user_id=str(row.get("user_id") or "").strip() or None,
            )
        )
    return entries
