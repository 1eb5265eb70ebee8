# datasource/supabase.py

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from iqstats.datasource.base import DataSourceError, Filter, Order

log = logging.getLogger(__name__)

# PostgREST codes seen as transient on the hosted backend
TRANSIENT_CODES = frozenset({"PGRST301", "PGRST116"})
TRANSIENT_STATUSES = frozenset({408, 429})


def is_transient(status: Optional[int], code: Optional[str]) -> bool:
    if code and code in TRANSIENT_CODES:
        return True
    if status is None:
        return False
    return status in TRANSIENT_STATUSES or status >= 500


def _quote(value: Any) -> str:
    text = "true" if value is True else "false" if value is False else str(value)
    if any(ch in text for ch in ',()" '):
        text = '"' + text.replace('"', '\\"') + '"'
    return text


def filter_params(filters: Sequence[Filter]) -> List[Tuple[str, str]]:
    """Translate filters into PostgREST ``column=op.value`` query params."""
    params: List[Tuple[str, str]] = []
    for f in filters:
        if f.op == "is_null":
            params.append((f.column, "is.null"))
        elif f.op == "not_null":
            params.append((f.column, "not.is.null"))
        elif f.op == "in":
            params.append((f.column, "in.(" + ",".join(_quote(v) for v in f.value) + ")"))
        else:
            params.append((f.column, f"{f.op}.{_quote(f.value)}"))
    return params


def order_param(order: Sequence[Order]) -> Optional[str]:
    if not order:
        return None
    return ",".join(f"{o.column}.{'desc' if o.descending else 'asc'}" for o in order)


def parse_content_range(header: Optional[str]) -> int:
    """``0-24/3573`` → 3573, ``*/0`` → 0."""
    if not header or "/" not in header:
        raise DataSourceError(f"Missing or invalid Content-Range: {header!r}")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise DataSourceError("Count not returned by server (Content-Range total is '*')")
    try:
        return int(total)
    except ValueError as e:
        raise DataSourceError(f"Invalid Content-Range: {header!r}") from e


class SupabaseClient:
    """Async PostgREST client implementing the DataSource contract."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Accept": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    @staticmethod
    async def _raise_for_error(resp: aiohttp.ClientResponse) -> None:
        if resp.status < 400:
            return
        code = None
        message = resp.reason or "request failed"
        if resp.method != "HEAD":
            try:
                body = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            if isinstance(body, dict):
                code = body.get("code")
                message = body.get("message") or message
        raise DataSourceError(
            f"API error {resp.status}: {message}",
            code=code,
            status=resp.status,
            retryable=is_transient(resp.status, code),
        )

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch a range of rows.

        Raises:
            DataSourceError: tagged retryable for network errors, timeouts,
                5xx/408/429 and the transient PostgREST codes.
        """
        params = [("select", "*")] + filter_params(filters)
        ordering = order_param(order)
        if ordering:
            params.append(("order", ordering))
        if offset:
            params.append(("offset", str(offset)))
        if limit is not None:
            params.append(("limit", str(limit)))

        session = await self._get_session()
        try:
            async with session.get(self._url(table), params=params) as resp:
                await self._raise_for_error(resp)
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise DataSourceError(f"Network error on {table}: {e}", retryable=True) from e
        except asyncio.TimeoutError as e:
            raise DataSourceError(f"Timeout querying {table}", retryable=True) from e

        log.debug("query %s offset=%s limit=%s → %d rows", table, offset, limit, len(data or []))
        return data or []

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        """Exact row count via ``HEAD`` + ``Prefer: count=exact``."""
        params = [("select", "*")] + filter_params(filters)
        session = await self._get_session()
        try:
            async with session.head(
                self._url(table), params=params, headers={"Prefer": "count=exact"}
            ) as resp:
                await self._raise_for_error(resp)
                return parse_content_range(resp.headers.get("Content-Range"))
        except aiohttp.ClientError as e:
            raise DataSourceError(f"Network error counting {table}: {e}", retryable=True) from e
        except asyncio.TimeoutError as e:
            raise DataSourceError(f"Timeout counting {table}", retryable=True) from e
