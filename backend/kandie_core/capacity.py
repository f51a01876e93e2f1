from __future__ import annotations

import logging
from typing import Any

from .registration import CapacitySnapshot, parse_event_id
from .store import RegistrationStore

logger = logging.getLogger(__name__)


def read_capacity(store: RegistrationStore, event_id: Any) -> CapacitySnapshot:
    """Count active confirmed registrations for an event, per ride level.

    Waitlisted and cancelled rows never count. Rows without a ride level are
    grouped under the default level.
    """

    store.require_configured()
    event_id = parse_event_id(event_id)

    snapshot = CapacitySnapshot(event_id=event_id)
    for row in store.fetch_confirmed_levels(event_id):
        snapshot.add(row.get("ride_level"))

    logger.debug("Event %s: %d confirmed signups, counts=%s", event_id, snapshot.total, snapshot.counts)
    return snapshot
