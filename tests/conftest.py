from __future__ import annotations

import json
import sys
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.provider import ProviderClient


PROVIDER_URL = "https://provider.test"
PROVIDER_KEY = "anon-test-key"


class FakeProvider:
    """In-memory stand-in for the hosted auth and table API."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tables: Dict[str, List[Dict[str, Any]]] = {"referrals": []}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, Any]] = {}
        self.access_tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.require_confirmation = True
        self.token_lifetime = 3600

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> ProviderClient:
        return ProviderClient(PROVIDER_URL, PROVIDER_KEY, transport=self.transport)

    def add_user(self, email: str, password: str, **metadata: str) -> Dict[str, Any]:
        user = {
            "id": str(uuid.uuid4()),
            "email": email,
            "password": password,
            "user_metadata": dict(metadata),
        }
        self.users[email] = user
        return user

    def add_referral(self, partner_id: str, **fields: Any) -> Dict[str, Any]:
        rows = self.tables["referrals"]
        row = {
            "id": str(uuid.uuid4()),
            "partner_id": partner_id,
            "business_name": "Acme Bakery",
            "contact_name": "Jo Smith",
            "email": "jo@acme.test",
            "phone": "555-0100",
            "monthly_revenue": 10000,
            "funding_amount": 50000,
            "business_type": "retail",
            "time_in_business": "1-2",
            "notes": "",
            "status": "pending",
            "commission_amount": None,
            "created_at": (
                datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(days=len(rows))
            ).isoformat(),
        }
        row.update(fields)
        rows.append(row)
        return row

    def fail(self, method: str, path: str, status_code: int = 500, payload: Any = None) -> None:
        self.failures[(method, path)] = (status_code, payload or {"message": "Internal error"})

    def issue_session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        access = f"access-{uuid.uuid4().hex}"
        refresh = f"refresh-{uuid.uuid4().hex}"
        self.access_tokens[access] = user["id"]
        self.refresh_tokens[refresh] = user["email"]
        return {
            "access_token": access,
            "token_type": "bearer",
            "expires_in": self.token_lifetime,
            "expires_at": int(time.time()) + self.token_lifetime,
            "refresh_token": refresh,
            "user": self._public_user(user),
        }

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": user["id"], "email": user["email"], "user_metadata": user["user_metadata"]}

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        failure = self.failures.get((request.method, path))
        if failure is not None:
            status_code, payload = failure
            return httpx.Response(status_code, json=payload)

        if request.headers.get("apikey") != PROVIDER_KEY:
            return httpx.Response(401, json={"message": "No API key found in request"})

        if path == "/auth/v1/token":
            return self._token(request)
        if path == "/auth/v1/signup":
            return self._signup(request)
        if path == "/auth/v1/logout":
            return self._logout(request)
        if path.startswith("/rest/v1/"):
            return self._rest(request, path[len("/rest/v1/"):])
        return httpx.Response(404, json={"message": "Not found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        grant = request.url.params.get("grant_type")
        if grant == "password":
            user = self.users.get(body.get("email", ""))
            if user is None or user["password"] != body.get("password"):
                return httpx.Response(
                    400,
                    json={"code": 400, "error_code": "invalid_credentials", "msg": "Invalid login credentials"},
                )
            return httpx.Response(200, json=self.issue_session(user))
        if grant == "refresh_token":
            email = self.refresh_tokens.pop(body.get("refresh_token", ""), None)
            if email is None:
                return httpx.Response(
                    400,
                    json={
                        "code": 400,
                        "error_code": "refresh_token_not_found",
                        "msg": "Invalid Refresh Token: Refresh Token Not Found",
                    },
                )
            return httpx.Response(200, json=self.issue_session(self.users[email]))
        return httpx.Response(400, json={"msg": "Unsupported grant type"})

    def _signup(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        email = body.get("email", "")
        if email in self.users:
            return httpx.Response(
                422,
                json={"code": 422, "error_code": "user_already_exists", "msg": "User already registered"},
            )
        if len(body.get("password", "")) < 6:
            return httpx.Response(
                422,
                json={"code": 422, "error_code": "weak_password", "msg": "Password should be at least 6 characters."},
            )
        user = self.add_user(email, body["password"], **body.get("data", {}))
        if self.require_confirmation:
            return httpx.Response(200, json=self._public_user(user))
        return httpx.Response(200, json=self.issue_session(user))

    def _logout(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if self.access_tokens.pop(token, None) is None:
            return httpx.Response(401, json={"msg": "invalid JWT"})
        return httpx.Response(204)

    def _rest(self, request: httpx.Request, table: str) -> httpx.Response:
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if token not in self.access_tokens:
            return httpx.Response(401, json={"message": "JWT expired"})
        rows = self.tables.setdefault(table, [])

        if request.method == "POST":
            for record in json.loads(request.content):
                stored = dict(record)
                stored.setdefault("id", str(uuid.uuid4()))
                stored.setdefault("commission_amount", None)
                stored.setdefault("created_at", datetime.now(timezone.utc).isoformat())
                rows.append(stored)
            return httpx.Response(201)

        matches = list(rows)
        order: Optional[str] = None
        columns = "*"
        for key, value in request.url.params.multi_items():
            if key == "select":
                columns = value
            elif key == "order":
                order = value
            elif value.startswith("eq."):
                expected = value[3:]
                matches = [row for row in matches if str(row.get(key)) == expected]

        if order:
            column, _, direction = order.partition(".")
            matches.sort(key=lambda row: row[column], reverse=direction == "desc")

        if request.method == "HEAD":
            total = len(matches)
            content_range = f"0-{total - 1}/{total}" if total else "*/0"
            return httpx.Response(200, headers={"content-range": content_range})

        if columns != "*":
            wanted = columns.split(",")
            matches = [{name: row.get(name) for name in wanted} for row in matches]
        return httpx.Response(200, json=matches)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
