"""In-process fake of the Vtiger operation endpoint for connector and sync tests.

StubCRM is served through httpx.MockTransport and supports token and
challenge login, LIMIT paging, COUNT queries, bulk exports, status updates,
and scripted token expiry, token revocation and transient failures.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx

ACCESS_KEY = "secret-key"
USERNAME = "admin"
SERVER_URL = "https://crm.test"

_FROM = re.compile(r"FROM\s+(\w+)", re.IGNORECASE)
_WHERE_EQ = re.compile(r"WHERE\s+(\w+)\s*=\s*'((?:[^'\\]|\\.)*)'", re.IGNORECASE)
_MODIFIED_AFTER = re.compile(r"modifiedtime\s*>\s*'([^']*)'", re.IGNORECASE)
_LIMIT = re.compile(r"LIMIT\s+(\d+)\s*,\s*(\d+)", re.IGNORECASE)

AUTH_OPERATIONS = {"UserLogin", "RefreshAccessToken", "getchallenge", "login"}


def make_contacts(
    count: int,
    start: int = 1,
    modified: str = "2020-01-01 00:00:00",
) -> list[dict[str, Any]]:
    """CRM contacts ``12x<start>``.. with unique emails, all last modified at ``modified``."""
    return [
        {
            "id": f"12x{i}",
            "firstname": f"First{i}",
            "lastname": f"Last{i}",
            "email": f"person{i}@example.com",
            "title": "Engineer",
            "modifiedtime": modified,
        }
        for i in range(start, start + count)
    ]


class StubCRM:
    """Scriptable fake of the CRM operation endpoint.

    Attributes:
        modules: Module name -> rows served by ``query``.
        bulk: Bulk operation name (GetCandidates/GetAccounts) -> rows.
        count_result: Rows returned for COUNT queries (None = real count).
        expire_next: Number of upcoming authenticated calls answered with
            "Token Expired".
        refresh_fails: Answer RefreshAccessToken with an error envelope.
        transient_failures: Number of upcoming authenticated calls answered
            with HTTP 503.
        calls: (operation, params) for every request received.
        on_query: Optional hook called with each query statement.
        revoked_tokens: Bearer tokens answered with "Token Expired".
    """

    def __init__(self, modules: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.modules: dict[str, list[dict[str, Any]]] = modules or {"Contacts": []}
        self.bulk: dict[str, list[dict[str, Any]]] = {}
        self.count_result: list[dict[str, Any]] | None = None
        self.count_fails = False
        self.expire_next = 0
        self.refresh_fails = False
        self.transient_failures = 0
        self.reject_login = False
        self.logout_fails = False
        self.update_errors: dict[str, str] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.updates: list[dict[str, Any]] = []
        self.on_query: Callable[[str], None] | None = None
        self.revoked_tokens: set[str] = set()
        self._token_generation = 0

    # ── Introspection ────────────────────────────────────────────────────

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def count(self, operation: str) -> int:
        return self.operations().count(operation)

    def revoke_current_token(self) -> None:
        self.revoked_tokens.add(f"access-{self._token_generation}")

    def page_queries(self) -> list[str]:
        return [
            params["query"]
            for op, params in self.calls
            if op == "query" and "LIMIT" in params["query"] and "COUNT(*)" not in params["query"]
        ]

    # ── Transport ────────────────────────────────────────────────────────

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @staticmethod
    def _ok(result: Any) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "result": result})

    @staticmethod
    def _fail(code: str, message: str) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": {"code": code, "message": message}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            params = dict(request.url.params)
        else:
            params = dict(parse_qsl(request.content.decode()))
        operation = params.get("operation", "")
        self.calls.append((operation, params))

        if operation in AUTH_OPERATIONS:
            return self._auth(operation, params)
        if operation == "logout":
            if self.logout_fails:
                return httpx.Response(500)
            return self._ok({"message": "successful"})

        if self.transient_failures > 0:
            self.transient_failures -= 1
            return httpx.Response(503, text="unavailable")
        bearer = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if bearer and bearer in self.revoked_tokens:
            return self._fail("TOKEN_EXPIRED", "Token Expired")
        if self.expire_next > 0:
            self.expire_next -= 1
            return self._fail("TOKEN_EXPIRED", "Token Expired")

        if operation == "query":
            return self._query(params["query"])
        if operation in ("GetCandidates", "GetAccounts"):
            element = json.loads(params["element"])
            page, per_page = int(element["page"]), int(element["per_page"])
            rows = self.bulk.get(operation, [])
            return self._ok({"data": rows[(page - 1) * per_page: page * per_page]})
        if operation == "update":
            element = json.loads(params["element"])
            if element["id"] in self.update_errors:
                return self._fail("ACCESS_DENIED", self.update_errors[element["id"]])
            self.updates.append(element)
            return self._ok(element)
        if operation in ("listTypes", "listtypes"):
            return self._ok({"types": sorted(self.modules)})
        return self._fail("UNKNOWN_OPERATION", f"Unknown operation {operation}")

    def _auth(self, operation: str, params: dict[str, str]) -> httpx.Response:
        if operation == "UserLogin":
            if self.reject_login or params.get("password") != ACCESS_KEY:
                return self._fail("INVALID_USER_CREDENTIALS", "Invalid username or password")
            self._token_generation += 1
            return self._ok(
                {
                    "accesstoken": f"access-{self._token_generation}",
                    "refreshtoken": "refresh-1",
                    "userid": "19x1",
                }
            )
        if operation == "RefreshAccessToken":
            if self.refresh_fails:
                return self._fail("INVALID_REFRESH_TOKEN", "Refresh token invalid")
            self._token_generation += 1
            return self._ok({"accesstoken": f"access-{self._token_generation}"})
        if operation == "getchallenge":
            return self._ok({"token": "challenge-token", "serverTime": 0, "expireTime": 0})
        # challenge login
        expected = hashlib.md5(f"challenge-token{ACCESS_KEY}".encode()).hexdigest()
        if self.reject_login or params.get("accessKey") != expected:
            return self._fail("INVALID_USER_CREDENTIALS", "Invalid access key")
        self._token_generation += 1
        return self._ok({"sessionName": f"session-{self._token_generation}", "userId": "19x1"})

    def _query(self, statement: str) -> httpx.Response:
        if self.on_query is not None:
            self.on_query(statement)

        match = _FROM.search(statement)
        rows = list(self.modules.get(match.group(1), [])) if match else []

        where = _WHERE_EQ.search(statement)
        if where:
            field, value = where.group(1), where.group(2).replace("\\'", "'")
            rows = [r for r in rows if str(r.get(field)) == value]

        modified_after = _MODIFIED_AFTER.search(statement)
        if modified_after:
            rows = [r for r in rows if str(r.get("modifiedtime", "")) > modified_after.group(1)]

        if "COUNT(*)" in statement:
            if self.count_fails:
                return self._fail("QUERY_SYNTAX_ERROR", "COUNT not supported")
            if self.count_result is not None:
                return self._ok(self.count_result)
            return self._ok([{"count": str(len(rows))}])

        limit = _LIMIT.search(statement)
        if limit:
            offset, size = int(limit.group(1)), int(limit.group(2))
            rows = rows[offset: offset + size]
        return self._ok(rows)
