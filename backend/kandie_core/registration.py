from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import errors

DEFAULT_RIDE_LEVEL = "workshop"


class RegistrationState(str, enum.Enum):
    ACTIVE_CONFIRMED = "active_confirmed"
    ACTIVE_WAITLISTED = "active_waitlisted"
    CANCELLED_CONFIRMED = "cancelled_confirmed"
    CANCELLED_WAITLISTED = "cancelled_waitlisted"


@dataclass
class Registration:
    """A rider's signup for one ride level of an event.

    Rows are soft-cancelled only; ``cancelled_at`` being ``None`` means the
    registration is active. Guest signups carry their own ``email`` and have
    no ``user_id``.
    """

    id: str
    event_id: int
    ride_level: str
    user_id: Optional[str] = None
    is_waitlist: bool = False
    waitlist_joined_at: Optional[str] = None
    waitlist_promoted_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Registration":
        try:
            event_id = int(row.get("event_id") or 0)
        except (TypeError, ValueError):
            event_id = 0
        user_id = str(row.get("user_id") or "").strip() or None
        email = str(row.get("email") or "").strip() or None
        return cls(
            id=str(row.get("id") or ""),
            event_id=event_id,
            ride_level=str(row.get("ride_level") or ""),
            user_id=user_id,
            is_waitlist=bool(row.get("is_waitlist")),
            waitlist_joined_at=row.get("waitlist_joined_at"),
            waitlist_promoted_at=row.get("waitlist_promoted_at"),
            cancelled_at=row.get("cancelled_at"),
            email=email,
        )

    @property
    def is_active(self) -> bool:
        return self.cancelled_at is None

    @property
    def state(self) -> RegistrationState:
        if self.is_active:
            if self.is_waitlist:
                return RegistrationState.ACTIVE_WAITLISTED
            return RegistrationState.ACTIVE_CONFIRMED
        if self.is_waitlist:
            return RegistrationState.CANCELLED_WAITLISTED
        return RegistrationState.CANCELLED_CONFIRMED


@dataclass
class CapacitySnapshot:
    event_id: int
    total: int = 0
    counts: Dict[str, int] = field(default_factory=dict)

    def add(self, ride_level: Any) -> None:
        level = normalise_ride_level(ride_level)
        self.counts[level] = self.counts.get(level, 0) + 1
        self.total += 1


def normalise_ride_level(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return DEFAULT_RIDE_LEVEL


def parse_event_id(raw: Any) -> int:
    """Coerce a request value into a positive event id."""

    if raw is None or isinstance(raw, bool):
        raise errors.ValidationError("Missing or invalid eventId")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            raise errors.ValidationError("Missing or invalid eventId")
        try:
            value = int(text)
        except ValueError as exc:
            raise errors.ValidationError("Missing or invalid eventId") from exc
    if value <= 0:
        raise errors.ValidationError("Missing or invalid eventId")
    return value


def parse_ride_level(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise errors.ValidationError("Missing ride level")
    return raw
