from __future__ import annotations

import json
import logging
import os
import secrets
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi.errors import RateLimitExceeded

from kandie_core import CancellationWorkflow, RegistrationStore, errors, read_capacity
from kandie_core.rate_limit import limit_cancel, limit_capacity, limit_waitlist_report, limiter
from kandie_core.registration import parse_event_id, parse_ride_level
from kandie_core.waitlist import load_waitlist

app = FastAPI(title="Kandie Gang Rides API", version="1.0.0")
app.state.limiter = limiter
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CAPACITY_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=300"

logger = logging.getLogger(__name__)


class CancelAuthRequest(BaseModel):
    event_id: Any = Field(default=None, alias="eventId")
    ride_level: Any = Field(default=None, alias="rideLevel")

    model_config = ConfigDict(populate_by_name=True)


class TokenCancelRequest(BaseModel):
    token: Any = None


class CancelResponse(BaseModel):
    success: bool = True


class CapacityResponse(BaseModel):
    event_id: int = Field(alias="eventId")
    total: int
    counts: Dict[str, int]

    model_config = ConfigDict(populate_by_name=True)


class WaitlistRowModel(BaseModel):
    id: str
    event_id: int = Field(alias="eventId")
    ride_level: str = Field(alias="rideLevel")
    waitlist_joined_at: Optional[str] = Field(default=None, alias="waitlistJoinedAt")
    user_id: Optional[str] = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class WaitlistReportResponse(BaseModel):
    total: int
    rows: List[WaitlistRowModel]


@lru_cache(maxsize=1)
def store() -> RegistrationStore:
    return RegistrationStore()


@lru_cache(maxsize=1)
def cancellation_workflow() -> CancellationWorkflow:
    return CancellationWorkflow(store=store())


def _error_body(exc: errors.RegistrationError) -> Dict[str, Any]:
    return {"kind": exc.kind, "message": str(exc)}


def _http_error(exc: errors.RegistrationError) -> HTTPException:
    if exc.status_code >= 500:
        logger.exception("%s: %s", exc.kind, exc)
    return HTTPException(status_code=exc.status_code, detail=_error_body(exc))


def _retry_after(exc: RateLimitExceeded) -> str:
    item = getattr(exc.limit, "limit", None)
    if item is None:
        return "60"
    return str(max(1, int(item.get_expiry())))


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    error = errors.RateLimited("Too many requests. Please try again later.")
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": _error_body(error)},
        headers={"Retry-After": _retry_after(exc)},
    )


def request_validation_handler(request: Request, exc: RequestValidationError) -> Response:
    error = errors.ValidationError("Invalid request")
    return JSONResponse(status_code=error.status_code, content={"detail": _error_body(error)})


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


async def _json_object(request: Request) -> Dict[str, Any]:
    """Request body as a dict; malformed or non-object JSON reads as empty.

    Called from inside the route, after the rate limit has been applied.
    """

    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def bearer_token(authorization: str) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise errors.Unauthorized("Missing or invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise errors.Unauthorized("Missing or invalid Authorization header")
    return token


def _auth_config() -> tuple[str, str]:
    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    supabase_anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY") or ""
    if not supabase_url or not supabase_anon_key:
        raise errors.ConfigurationError("Event cancellation is not configured")
    return supabase_url, supabase_anon_key


def verify_user(token: str) -> Dict[str, Any]:
    """Resolve a Supabase access token to its user record."""

    supabase_url, supabase_anon_key = _auth_config()
    endpoint = f"{supabase_url}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else 502
        if status in (401, 403):
            raise errors.Unauthorized("Invalid or expired token") from exc
        raise errors.UpstreamUnavailable("Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise errors.UpstreamUnavailable("Failed to verify authentication token") from exc
    except ValueError as exc:
        raise errors.UpstreamUnavailable("Authentication service returned invalid JSON") from exc

    user_id = str(payload.get("id") or "").strip() if isinstance(payload, dict) else ""
    if not user_id:
        raise errors.Unauthorized("Invalid or expired token")

    payload["id"] = user_id
    return payload


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/event-capacity", response_model=CapacityResponse)
@limit_capacity
def event_capacity(request: Request, response: Response, eventId: Optional[str] = Query(default=None)):
    try:
        snapshot = read_capacity(store(), eventId)
    except errors.RegistrationError as exc:
        raise _http_error(exc) from exc
    response.headers["Cache-Control"] = CAPACITY_CACHE_CONTROL
    return CapacityResponse(eventId=snapshot.event_id, total=snapshot.total, counts=snapshot.counts)


@app.post("/event-cancel-auth", response_model=CancelResponse)
@limit_cancel
async def event_cancel_auth(request: Request, authorization: str = Header(default="")):
    body = CancelAuthRequest.model_validate(await _json_object(request))
    try:
        await run_in_threadpool(_cancel_with_auth, authorization, body)
    except errors.RegistrationError as exc:
        raise _http_error(exc) from exc
    return CancelResponse(success=True)


def _cancel_with_auth(authorization: str, body: CancelAuthRequest) -> None:
    token = bearer_token(authorization)
    workflow = cancellation_workflow()
    workflow.store.require_configured()
    _auth_config()
    event_id = parse_event_id(body.event_id)
    ride_level = parse_ride_level(body.ride_level)
    user = verify_user(token)
    workflow.cancel_registration(user["id"], event_id, ride_level)


@app.post("/event-cancel", response_model=CancelResponse)
@limit_cancel
async def event_cancel(request: Request):
    body = TokenCancelRequest.model_validate(await _json_object(request))
    try:
        await run_in_threadpool(_cancel_with_token, body)
    except errors.RegistrationError as exc:
        raise _http_error(exc) from exc
    return CancelResponse(success=True)


def _cancel_with_token(body: TokenCancelRequest) -> None:
    workflow = cancellation_workflow()
    workflow.store.require_configured()
    workflow.cancel_by_token(body.token)


@app.get("/waitlist-report", response_model=WaitlistReportResponse)
@limit_waitlist_report
def waitlist_report(
    request: Request,
    eventId: Optional[str] = Query(default=None),
    rideLevel: Optional[str] = Query(default=None),
    x_waitlist_secret: str = Header(default=""),
):
    expected = os.getenv("WAITLIST_REPORT_SECRET", "")
    try:
        if not expected or not secrets.compare_digest(x_waitlist_secret.encode(), expected.encode()):
            raise errors.Unauthorized("Unauthorized")
        entries = load_waitlist(store(), event_id=eventId, ride_level=rideLevel)
    except errors.RegistrationError as exc:
        raise _http_error(exc) from exc
    rows = [
        WaitlistRowModel(
            id=entry.id,
            eventId=entry.event_id,
            rideLevel=entry.ride_level,
            waitlistJoinedAt=entry.waitlist_joined_at,
            userId=entry.user_id,
        )
        for entry in entries
    ]
    return WaitlistReportResponse(total=len(rows), rows=rows)
