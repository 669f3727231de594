from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

from .cache_store import CacheStore
from .enrichment import PostEnricher
from .errors import SourceTimeoutError, TrafficSourceError, warning_for
from .logging_utils import log_event
from .models import Snapshot, SnapshotResult, TrafficEvent
from .settings import IngestionMode

_SNAPSHOT_KEY = "snapshot"


class EventSource(Protocol):
    async def fetch(self) -> list[TrafficEvent]: ...


class TrafficEventService:
    """Serve one process-wide event snapshot, refreshing it when older than the TTL.

    A failed refresh falls back to the previous snapshot (marked stale) when
    there is one and raises otherwise.
    """

    def __init__(
        self,
        *,
        primary: EventSource,
        scrape: EventSource | None = None,
        mode: IngestionMode = "primary",
        ttl_s: float = 120.0,
        ingest_timeout_s: float = 8.0,
        enricher: PostEnricher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if mode == "scrape_preferred" and scrape is None:
            raise ValueError("mode='scrape_preferred' requires a scrape source")
        self._primary = primary
        self._scrape = scrape
        self.mode = mode
        self.ingest_timeout_s = float(ingest_timeout_s)
        self.enricher = enricher
        self._clock = clock
        self._store = CacheStore(ttl_s=ttl_s, max_entries=1, clock=clock)

    async def _bounded(self, label: str, fetch: Callable[[], Awaitable[list[TrafficEvent]]]) -> list[TrafficEvent]:
        # wait_for cancels the fetch (and its HTTP request) when the bound is hit.
        try:
            return await asyncio.wait_for(fetch(), timeout=self.ingest_timeout_s)
        except TimeoutError as e:
            raise SourceTimeoutError(f"{label} ingestion exceeded {self.ingest_timeout_s:g}s") from e

    async def _ingest(self) -> tuple[str, list[TrafficEvent]]:
        if self.mode == "scrape_preferred" and self._scrape is not None:
            try:
                return "scrape", await self._bounded("scrape", self._scrape.fetch)
            except TrafficSourceError as e:
                log_event(
                    "source_fallback",
                    level=logging.WARNING,
                    from_source="scrape",
                    to_source="primary_feed",
                    reason_code=e.reason_code,
                    error=str(e),
                )
        return "primary_feed", await self._bounded("primary feed", self._primary.fetch)

    async def _refresh(self) -> Snapshot:
        t0 = time.perf_counter()
        source, events = await self._ingest()
        snapshot = Snapshot(fetched_at=datetime.fromtimestamp(self._clock(), UTC), events=tuple(events))
        log_event(
            "snapshot_refreshed",
            mode=self.mode,
            source=source,
            event_count=len(events),
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return snapshot

    async def snapshot(self) -> SnapshotResult:
        """Current snapshot without enrichment."""
        fresh: Snapshot | None = self._store.get(_SNAPSHOT_KEY)
        if fresh is not None:
            return SnapshotResult(snapshot=fresh)

        previous = self._store.peek(_SNAPSHOT_KEY)
        try:
            snapshot: Snapshot = await self._store.single_flight(_SNAPSHOT_KEY, self._refresh)
            return SnapshotResult(snapshot=snapshot)
        except TrafficSourceError as e:
            if previous is None:
                log_event(
                    "snapshot_refresh_failed",
                    level=logging.ERROR,
                    reason_code=e.reason_code,
                    error=str(e),
                )
                raise
            age_s = round(self._store.age_s(previous), 1)
            log_event(
                "snapshot_stale_served",
                level=logging.WARNING,
                reason_code=e.reason_code,
                error=str(e),
                age_s=age_s,
            )
            return SnapshotResult(snapshot=previous.payload, stale=True, warning=warning_for(e))

    async def current(self) -> SnapshotResult:
        result = await self.snapshot()
        if self.enricher is None or not self.enricher.enabled:
            return result
        enriched = await self.enricher.enrich(result.snapshot.events)
        snapshot = Snapshot(fetched_at=result.snapshot.fetched_at, events=tuple(enriched))
        return SnapshotResult(snapshot=snapshot, stale=result.stale, warning=result.warning)

    def clear(self) -> int:
        return self._store.clear()

    def stats(self) -> dict[str, float | int]:
        return self._store.snapshot()
