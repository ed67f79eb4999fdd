"""PostgREST (Supabase ``/rest/v1``) backend for the table service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from sniper_sync.errors import RemoteError
from sniper_sync.tables import Filters, Row

logger = logging.getLogger(__name__)


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    if isinstance(value, datetime):
        return f"eq.{value.isoformat()}"
    return f"eq.{value}"


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class RestTableService:
    """Table service speaking PostgREST over HTTPS."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    @staticmethod
    def _params(filters: Optional[Filters]) -> Dict[str, str]:
        return {column: _filter_value(value) for column, value in (filters or {}).items()}

    async def _request(
        self,
        method: str,
        table: str,
        params: Dict[str, str],
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Row]:
        client = await self._get_client()
        headers = {"Prefer": prefer} if prefer else None
        logger.debug("%s %s params=%s", method, table, params)
        try:
            response = await client.request(
                method,
                self._url(table),
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteError(f"{method} {table} failed: {exc}") from exc

        if not response.is_success:
            raise RemoteError(
                f"Supabase error {response.status_code} on {method} {table}: {response.text}"
            )
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return list(data)

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Row]:
        params = self._params(filters)
        params["select"] = "*"
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(int(limit))
        return await self._request("GET", table, params)

    async def insert(self, table: str, row: Row) -> Row:
        body = {k: _json_value(v) for k, v in row.items()}
        rows = await self._request(
            "POST", table, {}, json_body=body, prefer="return=representation"
        )
        return rows[0] if rows else body

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        if not on_conflict:
            raise ValueError("upsert requires a conflict key")
        body = {k: _json_value(v) for k, v in row.items()}
        rows = await self._request(
            "POST",
            table,
            {"on_conflict": ",".join(on_conflict)},
            json_body=body,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return rows[0] if rows else body

    async def update(self, table: str, values: Row, filters: Filters) -> int:
        if not filters:
            raise ValueError("update requires filters")
        rows = await self._request(
            "PATCH",
            table,
            self._params(filters),
            json_body={k: _json_value(v) for k, v in values.items()},
            prefer="return=representation",
        )
        return len(rows)

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise ValueError("delete requires filters")
        rows = await self._request(
            "DELETE", table, self._params(filters), prefer="return=representation"
        )
        return len(rows)


__all__ = ["RestTableService"]
