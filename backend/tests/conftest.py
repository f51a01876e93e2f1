from __future__ import annotations

import types
import uuid
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
import pytest

from kandie_core import notifications as notifications_module
from kandie_core import store as store_module
from kandie_core.rate_limit import limiter

ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_REGISTRATIONS_TABLE",
    "SUPABASE_PROFILES_TABLE",
    "RESEND_API_KEY",
    "RESEND_FROM_EMAIL",
    "SITE_URL",
    "WP_GRAPHQL_URL",
    "WAITLIST_REPORT_SECRET",
    "CAPACITY_RATE_LIMIT",
    "CANCEL_RATE_LIMIT",
    "WAITLIST_REPORT_RATE_LIMIT",
)

_RESERVED_PARAMS = {"select", "order", "limit"}


def _matches(row: Dict[str, Any], column: str, condition: Any) -> bool:
    value = row.get(column)
    condition = str(condition)
    if condition == "is.null":
        return value is None
    if condition.startswith("eq."):
        expected = condition[3:]
        if isinstance(value, bool):
            return expected == ("true" if value else "false")
        if value is None:
            return False
        return str(value) == expected
    raise AssertionError(f"Unsupported PostgREST filter {column}={condition}")


class FakeSupabase:
    """In-memory stand-in for the PostgREST, Auth and GraphQL endpoints.

    Filters are evaluated over plain dict rows so the real store code runs
    unchanged against it.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {"registrations": [], "profiles": []}
        self.requests: List[Dict[str, Any]] = []
        self.users: Dict[str, str] = {}
        self.event_titles: Dict[int, str] = {}
        # (method, last path segment) -> status code, exception to raise, or a raw 200 body
        self.failures: Dict[Tuple[str, str], Any] = {}
        self.before_request: Optional[Callable[[str, str, Dict[str, Any]], None]] = None

    # ---- fixtures ---------------------------------------------------------

    def add_registration(self, **fields: Any) -> Dict[str, Any]:
        row_id = str(uuid.uuid4())
        row: Dict[str, Any] = {
            "id": row_id,
            "event_id": 101,
            "ride_level": "fast",
            "user_id": None,
            "email": None,
            "is_waitlist": False,
            "waitlist_joined_at": None,
            "waitlist_promoted_at": None,
            "cancelled_at": None,
            "cancel_token_hash": f"hash-{row_id}",
            "cancel_token_issued_at": "2025-01-01T00:00:00Z",
        }
        row.update(fields)
        self.tables["registrations"].append(row)
        return row

    def add_profile(self, user_id: str, email: str) -> None:
        self.tables["profiles"].append({"id": user_id, "email": email})

    def registration(self, row_id: str) -> Dict[str, Any]:
        for row in self.tables["registrations"]:
            if row["id"] == row_id:
                return row
        raise KeyError(row_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.tables["registrations"]]

    def count_requests(self, method: str | None = None) -> int:
        return sum(1 for item in self.requests if method is None or item["method"] == method)

    # ---- transport --------------------------------------------------------

    def handle(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None,
        payload: Any,
        headers: Dict[str, str] | None,
    ) -> httpx.Response:
        request = httpx.Request(method, url)
        params = dict(params or {})
        headers = dict(headers or {})
        path = urlparse(url).path
        self.requests.append(
            {"method": method, "path": path, "params": params, "json": payload, "headers": headers}
        )

        failure = self.failures.get((method, path.rsplit("/", 1)[-1]))
        if isinstance(failure, Exception):
            raise failure
        if isinstance(failure, bytes):
            return httpx.Response(200, request=request, content=failure, headers={"Content-Type": "text/html"})
        if failure is not None:
            return httpx.Response(failure, request=request, json={"message": "simulated failure"})

        if path == "/auth/v1/user":
            token = headers.get("Authorization", "").removeprefix("Bearer ")
            user_id = self.users.get(token)
            if not user_id:
                return httpx.Response(401, request=request, json={"message": "invalid JWT"})
            return httpx.Response(200, request=request, json={"id": user_id})

        if path.endswith("/graphql"):
            event_id = int(((payload or {}).get("variables") or {}).get("id") or 0)
            title = self.event_titles.get(event_id)
            ride_event = {"title": title} if title else None
            return httpx.Response(200, request=request, json={"data": {"rideEvent": ride_event}})

        table = path.rsplit("/", 1)[-1]
        if self.before_request is not None:
            self.before_request(method, table, params)
        rows = self.tables.setdefault(table, [])
        filters = {key: value for key, value in params.items() if key not in _RESERVED_PARAMS}
        matched = [row for row in rows if all(_matches(row, col, cond) for col, cond in filters.items())]

        order = params.get("order")
        if order:
            for clause in reversed(str(order).split(",")):
                column, _, direction = clause.partition(".")
                matched.sort(
                    key=lambda item: (item.get(column) is None, item.get(column) or ""),
                    reverse=direction == "desc",
                )
        if "limit" in params:
            matched = matched[: int(params["limit"])]

        if method == "PATCH":
            for row in matched:
                row.update(payload or {})
            if "return=representation" not in headers.get("Prefer", ""):
                return httpx.Response(204, request=request)

        select = params.get("select")
        columns = [col for col in str(select).split(",") if col] if select else None
        body = [
            {col: row.get(col) for col in columns} if columns else dict(row)
            for row in matched
        ]
        return httpx.Response(200, request=request, json=body)

    def httpx_module(self) -> types.SimpleNamespace:
        backend = self

        class _Client:
            def __init__(self, *args: Any, **kwargs: Any) -> None:
                pass

            def __enter__(self) -> "_Client":
                return self

            def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean
                return None

            def get(self, url: str, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None):
                return backend.handle("GET", url, params, None, headers)

            def patch(self, url: str, params: Dict[str, Any] | None = None, json: Any = None, headers: Dict[str, str] | None = None):
                return backend.handle("PATCH", url, params, json, headers)

            def post(self, url: str, params: Dict[str, Any] | None = None, json: Any = None, headers: Dict[str, str] | None = None):
                return backend.handle("POST", url, params, json, headers)

        return types.SimpleNamespace(
            Client=_Client,
            HTTPError=httpx.HTTPError,
            HTTPStatusError=httpx.HTTPStatusError,
            RequestError=httpx.RequestError,
            Response=httpx.Response,
        )


class RecordingEmails:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.error: Exception | None = None

    def send(self, params: Dict[str, Any]) -> Dict[str, str]:
        if self.error is not None:
            raise self.error
        self.sent.append(params)
        return {"id": f"email-{len(self.sent)}"}


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def supabase(monkeypatch: pytest.MonkeyPatch) -> FakeSupabase:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("WP_GRAPHQL_URL", "https://cms.example.com/graphql")
    monkeypatch.setenv("SITE_URL", "https://rides.example.com")

    backend = FakeSupabase()
    fake_httpx = backend.httpx_module()
    monkeypatch.setattr(store_module, "httpx", fake_httpx)
    monkeypatch.setattr(notifications_module, "httpx", fake_httpx)
    return backend


@pytest.fixture
def emails(monkeypatch: pytest.MonkeyPatch) -> RecordingEmails:
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    recorder = RecordingEmails()
    monkeypatch.setattr(notifications_module, "resend", types.SimpleNamespace(api_key=None, Emails=recorder))
    return recorder
