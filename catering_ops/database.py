import copy
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Iterator, MutableMapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Generic, Protocol, TypeVar

from catering_ops.errors import DataStoreError

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

Row = dict[str, Any]


class Op(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GTE = "gte"
    LTE = "lte"
    IS = "is"
    CONTAINS = "cs"
    ILIKE = "ilike"


@dataclass(frozen=True)
class Filter:
    column: str
    op: Op
    value: Any


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


def eq(column: str, value: Any) -> Filter:
    return Filter(column, Op.EQ, value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, Op.GTE, value)


def is_null(column: str) -> Filter:
    return Filter(column, Op.IS, None)


def contains(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, Op.CONTAINS, list(values))


def ilike(column: str, pattern: str) -> Filter:
    """`pattern` uses SQL wildcards, e.g. "%ann%"."""
    return Filter(column, Op.ILIKE, pattern)


class DataStore(Protocol):
    """
    Row-level access to the provider database plus its stored procedures.
    Every method is a suspension point; failures raise DataStoreError.
    """

    async def select(
        self,
        table: str,
        *,
        filters: Iterable[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, row: Row) -> Row: ...

    async def update(
        self, table: str, values: Row, *, filters: Iterable[Filter]
    ) -> list[Row]: ...

    async def delete(self, table: str, *, filters: Iterable[Filter]) -> list[Row]: ...

    async def rpc(self, name: str, params: Row) -> Any: ...


async def select_one(
    store: DataStore, table: str, *, filters: Iterable[Filter]
) -> Row | None:
    rows = await store.select(table, filters=filters, limit=1)
    return rows[0] if rows else None


def to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, list | tuple):
        return [to_json_value(v) for v in value]
    return value


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)


RpcHandler = Callable[["InMemoryDataStore", Row], Any | Awaitable[Any]]


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return value


def _like(value: Any, pattern: str) -> bool:
    if value is None:
        return False
    needle = pattern.lower()
    text = str(value).lower()
    starts = needle.startswith("%")
    ends = needle.endswith("%")
    needle = needle.strip("%")
    if starts and ends:
        return needle in text
    if starts:
        return text.endswith(needle)
    if ends:
        return text.startswith(needle)
    return text == needle


def matches(row: Row, flt: Filter) -> bool:
    actual = row.get(flt.column)
    expected = to_json_value(flt.value)

    if flt.op == Op.EQ:
        return actual == expected
    if flt.op == Op.NEQ:
        return actual != expected
    if flt.op == Op.IS:
        return actual is expected
    if flt.op == Op.CONTAINS:
        return set(expected).issubset(actual or [])
    if flt.op == Op.ILIKE:
        return _like(actual, expected)

    if actual is None:
        return False
    left, right = _comparable(actual), _comparable(expected)
    try:
        if flt.op == Op.GTE:
            return left >= right
        return left <= right
    except TypeError:
        return False


class InMemoryDataStore:
    """
    Process-local DataStore. Tables are InMemoryKeyValueDatabase instances
    keyed by row id; rows are kept in their JSON form so that callers see the
    same shapes the hosted backend returns.
    """

    def __init__(self) -> None:
        self._tables: dict[str, InMemoryKeyValueDatabase[str, Row]] = {}
        self._rpcs: dict[str, RpcHandler] = {}

    def table(self, name: str) -> InMemoryKeyValueDatabase[str, Row]:
        if name not in self._tables:
            self._tables[name] = InMemoryKeyValueDatabase()
        return self._tables[name]

    def seed(self, table: str, rows: Iterable[Row]) -> None:
        for row in rows:
            stored = {k: to_json_value(v) for k, v in row.items()}
            stored.setdefault("id", str(uuid.uuid4()))
            self.table(table).put(stored["id"], stored)

    def register_rpc(self, name: str, handler: RpcHandler) -> None:
        self._rpcs[name] = handler

    def clear(self) -> None:
        for table in self._tables.values():
            table.clear()

    def rows(self, table: str, filters: Iterable[Filter] = ()) -> list[Row]:
        """Synchronous read used by the in-process stored procedures."""
        filters = list(filters)
        return [
            row
            for row in self.table(table)
            if all(matches(row, f) for f in filters)
        ]

    async def select(
        self,
        table: str,
        *,
        filters: Iterable[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        rows = self.rows(table, filters)
        if order is not None:
            present = [r for r in rows if r.get(order.column) is not None]
            missing = [r for r in rows if r.get(order.column) is None]
            present.sort(
                key=lambda r: _comparable(r[order.column]),
                reverse=not order.ascending,
            )
            # nulls last, as Postgres does for ascending order
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, table: str, row: Row) -> Row:
        stored = {k: to_json_value(v) for k, v in row.items()}
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", to_json_value(datetime.now(UTC)))
        if self.table(table).get(stored["id"]) is not None:
            raise DataStoreError(
                f"duplicate key value violates unique constraint on {table}",
                code="23505",
            )
        self.table(table).put(stored["id"], stored)
        logger.debug(f"insert into {table}: {stored['id']}")
        return copy.deepcopy(stored)

    async def update(
        self, table: str, values: Row, *, filters: Iterable[Filter]
    ) -> list[Row]:
        changes = {k: to_json_value(v) for k, v in values.items()}
        changes["updated_at"] = to_json_value(datetime.now(UTC))
        updated = []
        for row in self.rows(table, filters):
            row.update(changes)
            updated.append(copy.deepcopy(row))
        logger.debug(f"update {table}: {len(updated)} row(s)")
        return updated

    async def delete(self, table: str, *, filters: Iterable[Filter]) -> list[Row]:
        removed = self.rows(table, filters)
        for row in removed:
            self.table(table).delete(row["id"])
        logger.debug(f"delete from {table}: {len(removed)} row(s)")
        return removed

    async def rpc(self, name: str, params: Row) -> Any:
        handler = self._rpcs.get(name)
        if handler is None:
            raise DataStoreError(
                f"Could not find the function public.{name}", code="PGRST202"
            )
        result = handler(self, params)
        if inspect.isawaitable(result):
            result = await result
        return copy.deepcopy(result)
