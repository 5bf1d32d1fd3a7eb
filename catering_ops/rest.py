"""
DataStore backed by the hosted database's REST interface (PostgREST dialect):
tables under /rest/v1/<table>, stored procedures under /rest/v1/rpc/<name>.
Row-level authorization is enforced server-side by the bearer token.
"""

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from catering_ops.database import Filter, Op, Order, Row, to_json_value
from catering_ops.errors import DataStoreError

logger = logging.getLogger(__name__)


def _render_value(value: Any) -> str:
    value = to_json_value(value)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_filter(flt: Filter) -> tuple[str, str]:
    if flt.op == Op.CONTAINS:
        items = ",".join(_render_value(v) for v in flt.value)
        return flt.column, f"cs.{{{items}}}"
    if flt.op == Op.ILIKE:
        # PostgREST uses * as the wildcard in query strings
        return flt.column, f"ilike.{flt.value.replace('%', '*')}"
    return flt.column, f"{flt.op.value}.{_render_value(flt.value)}"


def _params(
    filters: Iterable[Filter],
    order: Order | None = None,
    limit: int | None = None,
) -> list[tuple[str, str]]:
    params = [render_filter(f) for f in filters]
    if order is not None:
        direction = "asc" if order.ascending else "desc"
        params.append(("order", f"{order.column}.{direction}"))
    if limit is not None:
        params.append(("limit", str(limit)))
    return params


class RestDataStore:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ {method} {path} failed: {e}")
            raise DataStoreError(f"Could not reach the database: {e}") from e

        if response.is_error:
            message, code = self._error_details(response)
            logger.error(f"❌ {method} {path} -> {response.status_code}: {message}")
            raise DataStoreError(message, code=code)

        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str | None]:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}", None
        if isinstance(body, dict):
            return body.get("message") or str(body), body.get("code")
        return str(body), None

    async def select(
        self,
        table: str,
        *,
        filters: Iterable[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", "*"), *_params(filters, order, limit)]
        return await self._request("GET", f"/{table}", params=params) or []

    async def insert(self, table: str, row: Row) -> Row:
        body = {k: to_json_value(v) for k, v in row.items()}
        rows = await self._request(
            "POST", f"/{table}", json=body, prefer="return=representation"
        )
        if not rows:
            raise DataStoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(
        self, table: str, values: Row, *, filters: Iterable[Filter]
    ) -> list[Row]:
        body = {k: to_json_value(v) for k, v in values.items()}
        return (
            await self._request(
                "PATCH",
                f"/{table}",
                params=_params(filters),
                json=body,
                prefer="return=representation",
            )
            or []
        )

    async def delete(self, table: str, *, filters: Iterable[Filter]) -> list[Row]:
        return (
            await self._request(
                "DELETE",
                f"/{table}",
                params=_params(filters),
                prefer="return=representation",
            )
            or []
        )

    async def rpc(self, name: str, params: Row) -> Any:
        body = {k: to_json_value(v) for k, v in params.items()}
        return await self._request("POST", f"/rpc/{name}", json=body)
