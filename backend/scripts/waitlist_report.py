"""CLI helper for printing the active waitlist of an event straight from Supabase."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from kandie_core import errors
from kandie_core.store import RegistrationStore
from kandie_core.waitlist import WaitlistEntry, load_waitlist


def _format_entries(entries: List[WaitlistEntry]) -> str:
    if not entries:
        return "Waitlist is empty"
    lines = [f"{len(entries)} waitlisted"]
    for position, entry in enumerate(entries, start=1):
        joined = entry.waitlist_joined_at or "?"
        who = entry.user_id or "guest"
        lines.append(f"  {position:>3}. event {entry.event_id} [{entry.ride_level}] joined {joined} ({who})")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--event-id", help="Only show this event")
    parser.add_argument("--ride-level", help="Only show this ride level")
    args = parser.parse_args(argv)

    try:
        entries = load_waitlist(RegistrationStore(), event_id=args.event_id, ride_level=args.ride_level)
    except errors.RegistrationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(_format_entries(entries))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
