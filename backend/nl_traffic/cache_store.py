from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any


@dataclass
class CacheEntry:
    inserted_at: float
    payload: Any


class CacheStore:
    """In-memory TTL cache with per-key single-flight refresh.

    Expired entries are kept (not evicted on read) so callers can fall back to
    them explicitly via ``peek``; only ``max_entries`` bounds the size.
    """

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries: int = 256,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_s = max(0.0, float(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: OrderedDict[str, CacheEntry] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self._waiters: dict[asyncio.Future[Any], int] = {}

        self._hits = 0
        self._misses = 0
        self._refreshes = 0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def age_s(self, entry: CacheEntry) -> float:
        return max(0.0, self._clock() - entry.inserted_at)

    def is_fresh(self, entry: CacheEntry) -> bool:
        return self.age_s(entry) < self._ttl_s

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` regardless of age."""
        with self._lock:
            return self._items.get(key)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None or not self.is_fresh(entry):
                self._misses += 1
                return None
            self._items.move_to_end(key)
            self._hits += 1
            return entry.payload

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = CacheEntry(inserted_at=self._clock(), payload=value)
            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)

    async def single_flight(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        cancel_when_abandoned: bool = False,
    ) -> Any:
        """Run ``loader`` at most once concurrently per key and store its result.

        Concurrent callers share the in-flight task. The task is shielded: a
        cancelled caller stops waiting but the shared refresh keeps running.
        With ``cancel_when_abandoned`` the refresh is cancelled once the last
        waiting caller has been cancelled.
        """
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._load_and_store(key, loader))
            self._inflight[key] = task
            task.add_done_callback(self._make_inflight_cleanup(key))
        if not cancel_when_abandoned:
            return await asyncio.shield(task)

        self._waiters[task] = self._waiters.get(task, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            remaining = self._waiters.get(task, 1) - 1
            if remaining:
                self._waiters[task] = remaining
            else:
                self._waiters.pop(task, None)
                if not task.done():
                    task.cancel()

    async def _load_and_store(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        value = await loader()
        self.set(key, value)
        with self._lock:
            self._refreshes += 1
        return value

    def _make_inflight_cleanup(self, key: str) -> Callable[[asyncio.Future[Any]], None]:
        def _cleanup(task: asyncio.Future[Any]) -> None:
            if self._inflight.get(key) is task:
                self._inflight.pop(key, None)
            # Mark the exception retrieved; waiters that are still attached re-raise it.
            if not task.cancelled():
                task.exception()

        return _cleanup

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "refreshes": self._refreshes,
                "inflight": sum(1 for t in self._inflight.values() if not t.done()),
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }
