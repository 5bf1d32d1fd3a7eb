"""
Process-wide query cache keyed by tuples such as ("team", "members", pid).

Any component may read it. Writes come from fetches, from the optimistic
mutation controller, or from explicit invalidation. Key arguments to
cancel/invalidate/remove are prefixes: ("team",) covers every team query.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]
NowFn = Callable[[], float]


@dataclass
class QueryEntry:
    data: Any = None
    has_data: bool = False
    updated_at: float | None = None
    stale_time: float = 0.0
    invalidated: bool = False
    fetcher: Fetcher | None = None


def key_matches(prefix: QueryKey, key: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


class QueryCache:
    def __init__(
        self, *, stale_time: float = 30.0, now_fn: NowFn = time.monotonic
    ) -> None:
        self.stale_time = stale_time
        self._now = now_fn
        self._entries: dict[QueryKey, QueryEntry] = {}
        self._in_flight: dict[QueryKey, asyncio.Task] = {}
        self.background_tasks: set[asyncio.Task] = set()

    def _matching(self, prefix: QueryKey) -> list[QueryKey]:
        return [key for key in self._entries if key_matches(prefix, key)]

    def is_fetching(self, key: QueryKey) -> bool:
        return key in self._in_flight

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or not entry.has_data or entry.invalidated:
            return True
        return self._now() - entry.updated_at >= entry.stale_time

    def get_query_data(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.data if entry is not None else None

    def has_query_data(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.has_data

    def set_query_data(self, key: QueryKey, value: Any) -> Any:
        """
        Store `value` under `key`. A callable is treated as an updater and
        receives the current value (None when nothing is cached).
        """
        entry = self._entries.setdefault(key, QueryEntry(stale_time=self.stale_time))
        if callable(value):
            value = value(entry.data)
        entry.data = value
        entry.has_data = True
        entry.updated_at = self._now()
        return value

    def clear_query_data(self, key: QueryKey) -> None:
        """Forget the value under `key` but keep its fetcher registered."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.data = None
            entry.has_data = False
            entry.updated_at = None

    def remove_queries(self, prefix: QueryKey) -> None:
        for key in self._matching(prefix):
            task = self._in_flight.pop(key, None)
            if task is not None:
                task.cancel()
            del self._entries[key]

    def _start_fetch(self, key: QueryKey, fetcher: Fetcher) -> asyncio.Task:
        task = asyncio.create_task(self._run_fetch(key, fetcher))
        self._in_flight[key] = task

        def _cleanup(t: asyncio.Task) -> None:
            if self._in_flight.get(key) is t:
                self._in_flight.pop(key, None)

        task.add_done_callback(_cleanup)
        return task

    async def _run_fetch(self, key: QueryKey, fetcher: Fetcher) -> Any:
        logger.debug(f"fetching {key}")
        data = await fetcher()
        entry = self._entries.setdefault(key, QueryEntry(stale_time=self.stale_time))
        entry.data = data
        entry.has_data = True
        entry.invalidated = False
        entry.updated_at = self._now()
        return data

    async def fetch_query(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        *,
        stale_time: float | None = None,
    ) -> Any:
        """
        Return cached data while fresh, otherwise fetch (sharing any fetch
        already in flight for `key`). The fetcher is remembered so that
        invalidation can refetch the query later.

        If the fetch is cancelled through cancel_queries, the previously
        cached value is returned.
        """
        entry = self._entries.setdefault(
            key,
            QueryEntry(stale_time=self.stale_time if stale_time is None else stale_time),
        )
        entry.fetcher = fetcher
        if stale_time is not None:
            entry.stale_time = stale_time

        if not self.is_stale(key) and key not in self._in_flight:
            logger.debug(f"cache hit: {key}")
            return entry.data

        task = self._in_flight.get(key) or self._start_fetch(key, fetcher)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.debug(f"fetch for {key} was cancelled; keeping previous data")
            return self.get_query_data(key)

    def refresh_in_background(self, key: QueryKey) -> asyncio.Task | None:
        """Refetch a known query without waiting for it."""
        entry = self._entries.get(key)
        if entry is None or entry.fetcher is None:
            return None
        if key in self._in_flight:
            return self._in_flight[key]

        task = self._start_fetch(key, entry.fetcher)
        self.background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self.background_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"⚠️ Background refresh of {key} failed: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def cancel_queries(self, prefix: QueryKey) -> None:
        """Cancel in-flight fetches so they cannot overwrite what we set next."""
        tasks = [
            task
            for key, task in list(self._in_flight.items())
            if key_matches(prefix, key)
        ]
        if not tasks:
            return

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"cancelled {len(tasks)} in-flight fetch(es) for {prefix}")

    async def invalidate_queries(self, prefix: QueryKey) -> None:
        """
        Mark matching queries stale and refetch those with a known fetcher.
        A failed refetch keeps the data it would have replaced.
        """
        refetching = []
        for key in self._matching(prefix):
            entry = self._entries[key]
            entry.invalidated = True
            if entry.fetcher is not None:
                task = self._in_flight.get(key) or self._start_fetch(key, entry.fetcher)
                refetching.append((key, task))

        if not refetching:
            return

        results = await asyncio.gather(
            *(task for _, task in refetching), return_exceptions=True
        )
        for (key, _), result in zip(refetching, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"⚠️ Refetch of {key} after invalidation failed: {result}")
