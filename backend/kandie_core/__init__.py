"""Ride registration capacity and waitlist domain used by the API."""

from .cancellation import CancellationOutcome, CancellationWorkflow
from .capacity import read_capacity
from .notifications import PromotionNotice, PromotionNotifier
from .registration import CapacitySnapshot, Registration, RegistrationState
from .store import RegistrationStore

__all__ = [
    "CancellationOutcome",
    "CancellationWorkflow",
    "CapacitySnapshot",
    "PromotionNotice",
    "PromotionNotifier",
    "Registration",
    "RegistrationState",
    "RegistrationStore",
    "read_capacity",
]
