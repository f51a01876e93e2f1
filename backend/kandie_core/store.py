from __future__ import annotations

import datetime as dt
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from . import errors
from .registration import Registration

logger = logging.getLogger(__name__)

REGISTRATION_FIELDS = (
    "id,event_id,ride_level,user_id,email,is_waitlist,"
    "waitlist_joined_at,waitlist_promoted_at,cancelled_at"
)


class RegistrationStore:
    """Reads and updates ride registrations through the Supabase REST API.

    Every write is a conditional PATCH so that a row can only change state
    once: cancels filter on ``cancelled_at=is.null`` and promotions also
    filter on ``is_waitlist=eq.true``. A PATCH that matches nothing returns an
    empty representation, which callers treat as "not found".
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.registrations_table = os.getenv("SUPABASE_REGISTRATIONS_TABLE", "registrations")
        self.profiles_table = os.getenv("SUPABASE_PROFILES_TABLE", "profiles")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key and self.registrations_table)

    def require_configured(self) -> None:
        if not self.configured:
            raise errors.ConfigurationError("Registration store is not configured")

    # ------------------------------------------------------------------
    # Reads

    def fetch_confirmed_levels(self, event_id: int) -> List[Dict[str, Any]]:
        """Return the ride level of every active confirmed registration."""

        params = {
            "select": "ride_level",
            "event_id": f"eq.{event_id}",
            "is_waitlist": "eq.false",
            "cancelled_at": "is.null",
        }
        return self._request("GET", self.registrations_table, params)

    def next_waitlisted(self, event_id: int, ride_level: str) -> Optional[Registration]:
        params = {
            "select": REGISTRATION_FIELDS,
            "event_id": f"eq.{event_id}",
            "ride_level": f"eq.{ride_level}",
            "is_waitlist": "eq.true",
            "cancelled_at": "is.null",
            "order": "waitlist_joined_at.asc",
            "limit": 1,
        }
        rows = self._request("GET", self.registrations_table, params)
        return Registration.from_row(rows[0]) if rows else None

    def fetch_waitlist(
        self,
        event_id: Optional[int] = None,
        ride_level: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "select": "id,event_id,ride_level,waitlist_joined_at,user_id",
            "is_waitlist": "eq.true",
            "cancelled_at": "is.null",
            "order": "waitlist_joined_at.asc",
        }
        if event_id is not None:
            params["event_id"] = f"eq.{event_id}"
        if ride_level:
            params["ride_level"] = f"eq.{ride_level}"
        return self._request("GET", self.registrations_table, params)

    def fetch_profile_email(self, user_id: str) -> Optional[str]:
        if not self.profiles_table:
            return None
        params = {"select": "email", "id": f"eq.{user_id}", "limit": 1}
        rows = self._request("GET", self.profiles_table, params)
        if not rows:
            return None
        email = rows[0].get("email")
        if isinstance(email, str) and email.strip():
            return email.strip()
        return None

    # ------------------------------------------------------------------
    # Conditional writes

    def cancel_active(self, event_id: int, ride_level: str, user_id: str) -> Optional[Registration]:
        params = {
            "select": REGISTRATION_FIELDS,
            "event_id": f"eq.{event_id}",
            "ride_level": f"eq.{ride_level}",
            "user_id": f"eq.{user_id}",
            "cancelled_at": "is.null",
        }
        return self._patch_one(params, {"cancelled_at": self._utc_now_iso()})

    def cancel_by_token_hash(self, token_hash: str) -> Optional[Registration]:
        params = {
            "select": REGISTRATION_FIELDS,
            "cancel_token_hash": f"eq.{token_hash}",
            "cancelled_at": "is.null",
        }
        return self._patch_one(params, {"cancelled_at": self._utc_now_iso()})

    def promote(self, registration_id: str, cancel_token_hash: str) -> Optional[Registration]:
        now = self._utc_now_iso()
        params = {
            "select": REGISTRATION_FIELDS,
            "id": f"eq.{registration_id}",
            "is_waitlist": "eq.true",
            "cancelled_at": "is.null",
        }
        payload = {
            "is_waitlist": False,
            "waitlist_promoted_at": now,
            "cancel_token_hash": cancel_token_hash,
            "cancel_token_issued_at": now,
        }
        return self._patch_one(params, payload)

    # ---- internal Supabase helpers -------------------------------------------------

    def _patch_one(self, params: Dict[str, Any], payload: Dict[str, Any]) -> Optional[Registration]:
        rows = self._request("PATCH", self.registrations_table, params, payload)
        if len(rows) > 1:
            logger.warning("Conditional update on %s matched %d rows", self.registrations_table, len(rows))
        return Registration.from_row(rows[0]) if rows else None

    def _request(
        self,
        method: str,
        table: str,
        params: Dict[str, Any],
        payload: Dict[str, Any] | None = None,
    ) -> List[Dict[str, Any]]:
        self.require_configured()
        endpoint = self._supabase_endpoint(table)

        try:
            with httpx.Client(timeout=self.timeout) as client:
                if method == "PATCH":
                    headers = self._supabase_headers("return=representation")
                    headers["Content-Type"] = "application/json"
                    response = client.patch(endpoint, params=params, json=payload, headers=headers)
                else:
                    headers = self._supabase_headers(include_content_profile=False)
                    response = client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_supabase_detail(exc.response)
            raise errors.Internal(detail or f"Supabase rejected {method} on {table}") from exc
        except httpx.HTTPError as exc:
            raise errors.Internal(f"Supabase {table} request failed: {exc}") from exc
        except ValueError as exc:
            raise errors.Internal(f"Supabase {table} endpoint returned invalid JSON") from exc

        if not isinstance(rows, list):
            raise errors.Internal(f"Unexpected payload from Supabase {table} endpoint")
        return [row for row in rows if isinstance(row, dict)]

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat().replace("+00:00", "Z")
