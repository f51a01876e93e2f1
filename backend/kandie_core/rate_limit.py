"""Per-IP fixed-window rate limits for the registration routes.

Counters live in ``RATE_LIMIT_STORAGE_URI`` (``memory://`` by default, so each
process keeps its own). Point it at a shared store such as ``redis://`` to
enforce one limit across instances.
"""

from __future__ import annotations

import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return get_remote_address(request) or "unknown"


limiter = Limiter(
    key_func=client_ip,
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
)

# Limit strings are read from the environment on every request.
limit_capacity = limiter.limit(lambda: os.getenv("CAPACITY_RATE_LIMIT", "60/minute"))
limit_cancel = limiter.limit(lambda: os.getenv("CANCEL_RATE_LIMIT", "20/minute"))
limit_waitlist_report = limiter.limit(lambda: os.getenv("WAITLIST_REPORT_RATE_LIMIT", "30/minute"))
