"""
forrent/backend/postgrest.py
═══════════════════════════════════════════════════════════════════════════════
Thin async client for the hosted Supabase backend.

  /rest/v1/{table}        → row queries, exact counts, deletes (PostgREST)
  /rest/v1/rpc/{fn}       → stored procedures
  /storage/v1/object/{b}  → object deletes

Every call accepts an optional CancelToken; a cancelled token aborts the
httpx request and raises RequestCancelled. Non-2xx answers raise BackendError.

Filter syntax follows PostgREST query params:
  ?status=neq.sold&price=gte.1000&or=(title.ilike.*loft*,location.ilike.*loft*)
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from forrent.core.cancel import CancelToken, guarded
from forrent.core.config import REST_BASE, STORAGE_BASE
from forrent.core.errors import BackendError
from forrent.core.http_client import supabase_client

log = logging.getLogger("postgrest")

_CONTENT_RANGE = re.compile(r"^(?:\*|\d+-\d+)/(\d+|\*)$")


@dataclass
class QueryResult:
    data:  Any
    count: Optional[int] = None


def parse_content_range(value: Optional[str]) -> Optional[int]:
    """'0-19/123' or '*/123' → 123; '*/*' or garbage → None."""
    if not value:
        return None
    m = _CONTENT_RANGE.match(value.strip())
    if not m or m.group(1) == "*":
        return None
    return int(m.group(1))


def _fmt(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    message = ""
    details: dict = {}
    try:
        body = resp.json()
        if isinstance(body, dict):
            details = body
            message = str(body.get("message") or body.get("error") or "")
    except ValueError:
        message = resp.text[:200]
    raise BackendError(resp.status_code, message, details)


def _json_body(resp: httpx.Response) -> Any:
    """Decoded body of a 2xx answer; a non-JSON body (proxy error page) is a BackendError."""
    try:
        return resp.json()
    except ValueError as ex:
        log.error(f"Non-JSON body from {resp.request.method} {resp.request.url.path}: {resp.text[:80]!r}")
        raise BackendError(resp.status_code, "invalid JSON body") from ex


class TableQuery:
    def __init__(self, backend: "PostgrestClient", table: str):
        self._backend = backend
        self._table   = table
        self._columns = "*"
        self._count: Optional[str] = None
        self._filters: list[tuple[str, str]] = []
        self._order:  list[str] = []
        self._offset: Optional[int] = None
        self._limit:  Optional[int] = None
        self._single  = False

    # ── builder ───────────────────────────────────────────────────────────────

    def select(self, columns: str = "*", count: Optional[str] = None) -> "TableQuery":
        self._columns = ",".join(c.strip() for c in columns.split(",") if c.strip()) or "*"
        self._count   = count
        return self

    def _filter(self, column: str, op: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"{op}.{_fmt(value)}"))
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        if value is None:
            return self._filter(column, "is", None)
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "neq", value)

    def gte(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "gte", value)

    def lte(self, column: str, value: Any) -> "TableQuery":
        return self._filter(column, "lte", value)

    def or_(self, expression: str) -> "TableQuery":
        self._filters.append(("or", f"({expression})"))
        return self

    def order(self, column: str, ascending: bool = True) -> "TableQuery":
        self._order.append(f"{column}.{'asc' if ascending else 'desc'}")
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Inclusive row range, like Supabase's .range()."""
        self._offset = start
        self._limit  = max(end - start + 1, 0)
        return self

    def limit(self, n: int) -> "TableQuery":
        self._limit = n
        return self

    def single(self) -> "TableQuery":
        self._single = True
        return self

    # ── request parts ─────────────────────────────────────────────────────────

    def _params(self, with_select: bool = True) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if with_select:
            params.append(("select", self._columns))
        params.extend(self._filters)
        if self._order:
            params.append(("order", ",".join(self._order)))
        if self._offset is not None:
            params.append(("offset", str(self._offset)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    def _headers(self, count: Optional[str]) -> dict[str, str]:
        headers: dict[str, str] = {}
        if count:
            headers["Prefer"] = f"count={count}"
        if self._single:
            headers["Accept"] = "application/vnd.pgrst.object+json"
        return headers

    @property
    def url(self) -> str:
        return f"{self._backend.rest_base}/{self._table}"

    # ── execution ─────────────────────────────────────────────────────────────

    async def execute(self, token: Optional[CancelToken] = None) -> QueryResult:
        resp = await self._backend.request(
            "GET", self.url,
            params=self._params(),
            headers=self._headers(self._count),
            token=token,
        )
        count = parse_content_range(resp.headers.get("content-range")) if self._count else None
        return QueryResult(_json_body(resp), count)

    async def count(self, token: Optional[CancelToken] = None) -> int:
        """Exact row count without fetching rows (HEAD + Prefer: count=exact)."""
        resp = await self._backend.request(
            "HEAD", self.url,
            params=self._params(),
            headers=self._headers("exact"),
            token=token,
        )
        total = parse_content_range(resp.headers.get("content-range"))
        return total or 0

    async def delete(self, token: Optional[CancelToken] = None) -> None:
        if not self._filters:
            raise ValueError("refusing to DELETE without filters")
        await self._backend.request(
            "DELETE", self.url,
            params=self._params(with_select=False),
            headers={"Prefer": "return=minimal"},
            token=token,
        )


class PostgrestClient:
    def __init__(
        self,
        rest_base: str = REST_BASE,
        storage_base: str = STORAGE_BASE,
        client_factory: Callable[[], httpx.AsyncClient] = supabase_client,
    ):
        self.rest_base    = rest_base.rstrip("/")
        self.storage_base = storage_base.rstrip("/")
        self._client      = client_factory

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params=None,
        headers: Optional[dict] = None,
        json: Any = None,
        token: Optional[CancelToken] = None,
    ) -> httpx.Response:
        if token is not None:
            token.raise_if_cancelled()
        client = self._client()
        resp = await guarded(token, client.request(method, url, params=params, headers=headers, json=json))
        _raise_for_status(resp)
        return resp

    async def rpc(self, fn: str, params: Optional[dict] = None, *, single: bool = False,
                  token: Optional[CancelToken] = None) -> Any:
        headers = {"Accept": "application/vnd.pgrst.object+json"} if single else None
        resp = await self.request(
            "POST", f"{self.rest_base}/rpc/{fn}",
            json=params or {}, headers=headers, token=token,
        )
        return _json_body(resp)

    async def remove_objects(self, bucket: str, paths: list[str],
                             token: Optional[CancelToken] = None) -> Any:
        resp = await self.request(
            "DELETE", f"{self.storage_base}/object/{bucket}",
            json={"prefixes": paths}, token=token,
        )
        return _json_body(resp) if resp.content else []
