"""Async connector for the Vtiger CRM operation-based web service.

Provides CRMConnector, the only network boundary of the sync engine. It owns
one httpx.AsyncClient and one Session and exposes:
- login / logout / verify_connection (session lifecycle)
- query, iter_pages, query_all, query_all_optimized, estimate_total (reads)
- fetch_by_id, fetch_ids, import_contacts, import_accounts, list_modules,
  discover_fields (convenience reads)
- push_candidate_status (the single write the engine performs)

Failure handling is layered:
- Transport failures and HTTP 5xx become TransientError and are retried with
  exponential backoff (tenacity) before surfacing.
- Expired tokens trigger exactly one serialized refresh and one retry of the
  original request. A second expiry clears the session and raises AuthError.
- Any other ``success: false`` envelope surfaces immediately as RemoteError.

Pagination is sequential ``LIMIT offset, size`` paging. Cancellation is an
asyncio.Event checked before each page request; a cancelled read returns
the rows gathered so far.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.recruitops.config import Settings
from src.recruitops.core.monitoring import track_crm_call
from src.recruitops.crm.auth import AuthStrategy, TokenAuth, build_auth
from src.recruitops.crm.errors import (
    AuthError,
    AuthExpiredError,
    ConfigurationError,
    CRMError,
    RemoteError,
    TransientError,
    classify_remote_error,
)
from src.recruitops.crm.session import Session

logger = structlog.get_logger(__name__)

# (processed, estimated_total_or_None)
ProgressCallback = Callable[[int, int | None], None]

BULK_PAGE_SIZE = 20
COUNT_KEYS = ("count", "COUNT", "COUNT(*)", "count(*)", "total")
_SELECT_FROM = re.compile(r"^\s*SELECT\s+.*?\s+FROM\s+", re.IGNORECASE | re.DOTALL)


def _quote(value: str) -> str:
    """Escape a literal for use inside a single-quoted query string."""
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


class CRMConnector:
    """Authenticated, retrying client for one CRM account.

    Args:
        server_url: CRM base URL (``https://example.od2.vtiger.com``).
        username: CRM user name.
        access_key: CRM access key (the password for the token scheme).
        auth: Authentication strategy. Defaults to TokenAuth.
        page_size: Rows per ``LIMIT`` page.
        timeout: Per-request timeout in seconds.
        max_attempts: Attempts per request for transient failures.
        backoff_min: Minimum (and base) backoff between attempts, seconds.
        backoff_max: Maximum backoff between attempts, seconds.
        progress_interval: Minimum seconds between progress callbacks.
        page_delay: Pause between page requests, seconds.
        count_floor: Total to assume when the remote count is unusable.
        import_max_records: Cap for bulk GetCandidates/GetAccounts imports.
        client: Optional pre-built httpx.AsyncClient (tests, shared pools).
        transport: Optional httpx transport used when ``client`` is not given.
    """

    def __init__(
        self,
        server_url: str,
        username: str,
        access_key: str,
        *,
        auth: AuthStrategy | None = None,
        page_size: int = 100,
        timeout: float = 60.0,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 10.0,
        progress_interval: float = 2.0,
        page_delay: float = 0.1,
        count_floor: int | None = None,
        import_max_records: int = 20000,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._server_url = server_url.rstrip("/") + "/" if server_url else ""
        self._username = username
        self._access_key = access_key
        self._auth = auth or TokenAuth()
        self._page_size = page_size
        self._max_attempts = max(1, max_attempts)
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._progress_interval = progress_interval
        self._page_delay = page_delay
        self._count_floor = count_floor
        self._import_max_records = import_max_records

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, transport=transport)

        self._session: Session | None = None
        self._auth_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> CRMConnector:
        """Build a connector from application settings.

        Raises:
            ConfigurationError: If server URL, username or access key is missing.
        """
        if not settings.crm_configured():
            raise ConfigurationError(
                "VTIGER_SERVER_URL, VTIGER_USERNAME and VTIGER_ACCESS_KEY must be set"
            )
        return cls(
            settings.VTIGER_SERVER_URL,
            settings.VTIGER_USERNAME,
            settings.VTIGER_ACCESS_KEY,
            auth=build_auth(settings.VTIGER_AUTH_SCHEME),
            page_size=settings.CRM_PAGE_SIZE,
            timeout=settings.CRM_REQUEST_TIMEOUT,
            max_attempts=settings.CRM_MAX_ATTEMPTS,
            backoff_min=settings.CRM_BACKOFF_MIN,
            backoff_max=settings.CRM_BACKOFF_MAX,
            progress_interval=settings.CRM_PROGRESS_INTERVAL,
            page_delay=settings.CRM_PAGE_DELAY,
            count_floor=settings.CRM_COUNT_FLOOR,
            import_max_records=settings.CRM_IMPORT_MAX_RECORDS,
            **kwargs,
        )

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def session(self) -> Session | None:
        """Current session, or None when logged out."""
        return self._session

    @property
    def endpoint(self) -> str:
        return f"{self._server_url}{self._auth.endpoint}"

    @property
    def page_size(self) -> int:
        return self._page_size

    async def close(self) -> None:
        """Close the underlying HTTP client if this connector created it."""
        if self._owns_client:
            await self._client.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    async def _exchange(
        self,
        operation: str,
        params: dict[str, Any] | None,
        session: Session | None,
    ) -> Any:
        """Send one request and decode the response envelope. No retries."""
        data: dict[str, Any] = {"operation": operation}
        for key, value in (params or {}).items():
            if value is None:
                continue
            data[key] = json.dumps(value) if isinstance(value, (dict, list)) else value

        headers: dict[str, str] = {}
        if session is not None:
            self._auth.authorize(session, data, headers)

        async with track_crm_call(operation):
            try:
                if self._auth.method_for(operation) == "GET":
                    response = await self._client.get(self.endpoint, params=data, headers=headers)
                else:
                    response = await self._client.post(self.endpoint, data=data, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
                raise TransientError(f"{operation}: {type(exc).__name__}: {exc}") from exc

            if response.status_code >= 500:
                raise TransientError(f"{operation}: HTTP {response.status_code}")
            if response.status_code == 401:
                raise AuthExpiredError(f"{operation}: HTTP 401")
            if response.status_code >= 400:
                raise RemoteError(f"{operation}: HTTP {response.status_code}", code=str(response.status_code))

            try:
                payload = response.json()
            except ValueError as exc:
                raise RemoteError(f"{operation}: response is not valid JSON") from exc

        if not isinstance(payload, dict):
            return payload
        if payload.get("success") is False:
            error = payload.get("error")
            if not isinstance(error, dict):
                error = {"message": payload.get("message") or error}
            raise classify_remote_error(error)
        return payload.get("result", payload)

    async def _send(
        self,
        operation: str,
        params: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> Any:
        """Send with transient-failure retries and exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max
            ),
            retry=retry_if_exception_type(TransientError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._exchange(operation, params, session)

    @staticmethod
    def _log_retry(retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "crm.request_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    async def _send_anonymous(self, operation: str, params: dict[str, Any]) -> Any:
        return await self._send(operation, params, session=None)

    # ── Session lifecycle ───────────────────────────────────────────────────

    async def login(self) -> Session:
        """Authenticate and store a fresh Session.

        Raises:
            AuthError: Missing credentials or credentials rejected by the CRM.
            TransientError: The CRM could not be reached after retries.
        """
        if not (self._server_url and self._username and self._access_key):
            raise AuthError("CRM credentials are not configured")

        try:
            session = await self._auth.login(
                self._send_anonymous, self._server_url, self._username, self._access_key
            )
        except AuthError as exc:
            self._session = None
            logger.error("crm.login_failed", username=self._username, error=str(exc))
            raise
        except RemoteError as exc:
            self._session = None
            logger.error("crm.login_failed", username=self._username, error=str(exc))
            raise AuthError(f"CRM rejected login: {exc}") from exc

        self._session = session
        logger.info(
            "crm.login_succeeded",
            username=self._username,
            scheme=self._auth.scheme.value,
            has_refresh_token=session.refresh_token is not None,
        )
        return session

    async def logout(self) -> None:
        """End the remote session (best effort) and clear local state. Never raises."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await self._exchange("logout", {"sessionName": session.session_id}, session)
            logger.info("crm.logout_succeeded")
        except Exception as exc:
            logger.warning("crm.logout_failed", error=str(exc))

    async def verify_connection(self) -> bool:
        """Return True if a login/logout round trip succeeds."""
        try:
            await self.login()
        except CRMError as exc:
            logger.warning("crm.verify_failed", error=str(exc))
            return False
        await self.logout()
        return True

    async def _ensure_session(self) -> Session:
        if self._session is not None:
            return self._session
        async with self._auth_lock:
            if self._session is None:
                await self.login()
            return self._session

    async def _refresh(self, stale: Session, seen_generation: int) -> Session:
        """Renew the session once, collapsing concurrent refresh attempts."""
        async with self._auth_lock:
            current = self._session
            if current is not None and (current is not stale or current.generation != seen_generation):
                logger.debug("crm.refresh_reused", generation=current.generation)
                return current

            try:
                if current is None:
                    return await self.login()
                await self._auth.refresh(self._send_anonymous, current, self._access_key)
            except TransientError:
                self._session = None
                raise
            except CRMError as exc:
                self._session = None
                logger.error("crm.refresh_failed", error=str(exc))
                raise AuthError(f"Session refresh failed: {exc}") from exc

            logger.info("crm.session_refreshed", generation=current.generation)
            return current

    async def call(self, operation: str, params: dict[str, Any] | None = None) -> Any:
        """Run an authenticated operation, logging in implicitly.

        On an expired session, refreshes once and retries once. If the retry
        is rejected too, the session is cleared and AuthError is raised.
        """
        session = await self._ensure_session()
        generation = session.generation
        try:
            return await self._send(operation, params, session)
        except AuthExpiredError as exc:
            logger.info("crm.auth_expired", operation=operation, error=str(exc))

        session = await self._refresh(session, generation)
        try:
            return await self._send(operation, params, session)
        except AuthExpiredError as exc:
            self._session = None
            logger.error("crm.auth_failed_after_refresh", operation=operation)
            raise AuthError(f"{operation}: authentication failed after refresh") from exc

    # ── Queries ─────────────────────────────────────────────────────────────

    async def query(self, statement: str) -> list[dict[str, Any]]:
        """Execute a query statement and return its rows."""
        result = await self.call("query", {"query": statement})
        if result is None:
            return []
        if isinstance(result, list):
            return result
        if isinstance(result, dict) and isinstance(result.get("result"), list):
            return result["result"]
        raise RemoteError(f"Unexpected query response shape: {type(result).__name__}")

    async def iter_pages(
        self,
        base_query: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of ``base_query`` until a short or empty page.

        Stops quietly when ``cancel`` is set; the check happens before each
        page request.
        """
        base = base_query.strip().rstrip(";")
        offset = 0
        while True:
            if cancel is not None and cancel.is_set():
                logger.info("crm.pagination_cancelled", offset=offset)
                return

            page = await self.query(f"{base} LIMIT {offset}, {self._page_size};")
            if not page:
                return
            yield page
            if len(page) < self._page_size:
                return

            offset += self._page_size
            if self._page_delay:
                await asyncio.sleep(self._page_delay)

    async def query_all(
        self,
        base_query: str,
        cancel: asyncio.Event | None = None,
    ) -> list[dict[str, Any]]:
        """Return every row of ``base_query`` (or the rows fetched before cancellation)."""
        records: list[dict[str, Any]] = []
        async for page in self.iter_pages(base_query, cancel):
            records.extend(page)
        logger.info("crm.query_all_complete", records=len(records))
        return records

    async def estimate_total(self, base_query: str) -> int | None:
        """Best-effort row count for ``base_query``.

        A failed count or an empty/zero result means "unknown", never "zero";
        the configured count floor (or None) is returned instead.
        """
        base = base_query.strip().rstrip(";")
        count_query, replaced = _SELECT_FROM.subn("SELECT COUNT(*) FROM ", base, count=1)
        if not replaced:
            return self._count_floor

        try:
            rows = await self.query(f"{count_query};")
        except CRMError as exc:
            logger.warning("crm.count_failed", error=str(exc))
            return self._count_floor

        count = None
        if rows and isinstance(rows[0], dict):
            for key in COUNT_KEYS:
                if key in rows[0]:
                    try:
                        count = int(rows[0][key])
                    except (TypeError, ValueError):
                        count = None
                    break

        if not count or count <= 0:
            logger.info("crm.count_unavailable", floor=self._count_floor)
            return self._count_floor
        return count

    async def count_by_paging(
        self,
        base_query: str,
        cancel: asyncio.Event | None = None,
    ) -> int:
        """Count the rows of ``base_query`` by paging through their ids only.

        Used when the remote COUNT is unusable and no floor is configured.
        Returns the rows counted so far if ``cancel`` is set mid-way.
        """
        base = base_query.strip().rstrip(";")
        id_query, _ = _SELECT_FROM.subn("SELECT id FROM ", base, count=1)
        counted = 0
        async for page in self.iter_pages(id_query, cancel):
            counted += len(page)
        logger.info("crm.count_by_paging_complete", records=counted)
        return counted

    async def query_all_optimized(
        self,
        base_query: str,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[dict[str, Any]]:
        """Paginate ``base_query`` with a count estimate and throttled progress.

        ``on_progress(processed, total)`` fires once up front, at most every
        ``progress_interval`` seconds while paging, and once at the end. The
        total is revised upward whenever more rows arrive than estimated.
        """
        estimate = await self.estimate_total(base_query)
        records: list[dict[str, Any]] = []

        def report() -> None:
            nonlocal estimate
            if estimate is not None and len(records) > estimate:
                estimate = len(records)
            if on_progress is not None:
                on_progress(len(records), estimate)

        report()
        last_report = time.monotonic()

        async for page in self.iter_pages(base_query, cancel):
            records.extend(page)
            now = time.monotonic()
            if now - last_report >= self._progress_interval:
                report()
                last_report = now

        if cancel is None or not cancel.is_set():
            estimate = len(records)
        report()

        logger.info(
            "crm.query_all_optimized_complete",
            records=len(records),
            cancelled=bool(cancel and cancel.is_set()),
        )
        return records

    # ── Convenience reads ───────────────────────────────────────────────────

    async def fetch_by_id(self, module: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record by CRM id, or None if it does not exist."""
        rows = await self.query(f"SELECT * FROM {module} WHERE id='{_quote(record_id)}';")
        if not rows:
            logger.warning("crm.record_not_found", module=module, record_id=record_id)
            return None
        return rows[0]

    async def fetch_ids(
        self,
        module: str,
        since: datetime | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[str]:
        """Return CRM ids in ``module``, optionally only those modified after ``since``."""
        base = f"SELECT id FROM {module}"
        if since is not None:
            base += f" WHERE modifiedtime > '{since:%Y-%m-%d %H:%M:%S}'"
        rows = await self.query_all_optimized(base, on_progress=on_progress, cancel=cancel)
        return [str(row["id"]) for row in rows if row.get("id")]

    async def find_id_by_field(self, module: str, field: str, value: str) -> str | None:
        """Return the id of the first ``module`` record whose ``field`` equals ``value``."""
        rows = await self.query(f"SELECT id FROM {module} WHERE {field}='{_quote(value)}';")
        if rows and rows[0].get("id"):
            return str(rows[0]["id"])
        return None

    async def _bulk_import(self, operation: str, max_records: int | None) -> list[dict[str, Any]]:
        limit = max_records or self._import_max_records
        records: list[dict[str, Any]] = []
        page = 1
        while len(records) < limit:
            result = await self.call(
                operation,
                {"element": {"per_page": str(BULK_PAGE_SIZE), "page": str(page)}},
            )
            batch = result.get("data") if isinstance(result, dict) else None
            if not batch:
                break
            records.extend(batch)
            if len(batch) < BULK_PAGE_SIZE:
                break
            page += 1

        if len(records) >= limit:
            logger.warning("crm.import_limit_reached", operation=operation, limit=limit)
        logger.info("crm.import_complete", operation=operation, records=len(records[:limit]))
        return records[:limit]

    async def import_contacts(self, max_records: int | None = None) -> list[dict[str, Any]]:
        """Bulk-export contacts through the ``GetCandidates`` operation."""
        return await self._bulk_import("GetCandidates", max_records)

    async def import_accounts(self, max_records: int | None = None) -> list[dict[str, Any]]:
        """Bulk-export organizations through the ``GetAccounts`` operation."""
        return await self._bulk_import("GetAccounts", max_records)

    async def list_modules(self) -> list[str]:
        """Names of the modules (entity types) visible to this user."""
        result = await self.call(self._auth.list_types_operation)
        if isinstance(result, dict):
            return list(result.get("types") or [])
        return []

    async def discover_fields(self, module: str = "Contacts") -> list[str]:
        """Field names present on a sample record of ``module``."""
        rows = await self.query(f"SELECT * FROM {module} LIMIT 0, 1;")
        return list(rows[0].keys()) if rows else []

    # ── Writes ──────────────────────────────────────────────────────────────

    async def push_candidate_status(self, external_id: str, status: str) -> dict[str, Any]:
        """Write a candidate's pipeline status back to its CRM contact."""
        result = await self.call(
            "update",
            {
                "elementType": "Contacts",
                "element": {"id": external_id, "candidatestatus": status},
            },
        )
        logger.info("crm.candidate_status_pushed", external_id=external_id, status=status)
        return result if isinstance(result, dict) else {"result": result}
