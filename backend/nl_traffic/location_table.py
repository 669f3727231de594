from __future__ import annotations

import asyncio
import io
import itertools
import re
import struct
import tempfile
import time
import zipfile
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from dbfread import DBF, DBFNotFound

from .cache_store import CacheStore
from .errors import ResolutionError, TrafficSourceError
from .feed_client import FeedClient
from .logging_utils import log_event

_ROAD_FIELD_RE = re.compile(r"^[AN]\d{1,3}$")
_CACHE_KEY = "location_table"


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value or "").strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else None


def _normalise_road(value: Any) -> str | None:
    road = re.sub(r"\s+", "", str(value or "")).upper()
    return road if _ROAD_FIELD_RE.match(road) else None


def _batched(rows: Iterable[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    it = iter(rows)
    while True:
        chunk = list(itertools.islice(it, size))
        if not chunk:
            return
        yield chunk


def road_map_from_rows(
    rows: Iterable[dict[str, Any]],
    *,
    batch_size: int = 5000,
    code_field: str = "LOC_NR",
    road_field: str = "ROADNUMBER",
) -> dict[int, str]:
    """Build location-code -> road-code from table rows, keeping only A/N road codes."""
    out: dict[int, str] = {}
    for chunk in _batched(rows, max(1, int(batch_size))):
        for row in chunk:
            code = _as_int(row.get(code_field))
            road = _normalise_road(row.get(road_field))
            if code and road:
                out[code] = road
    return out


def _pick_entry(archive: zipfile.ZipFile, entry_name: str) -> str:
    names = archive.namelist()
    for name in names:
        if name == entry_name or name.rsplit("/", 1)[-1].lower() == entry_name.lower():
            return name
    raise ResolutionError(
        f"location table entry {entry_name!r} not found in archive",
        details={"entries": names[:20]},
    )


def load_road_map_from_archive(archive_bytes: bytes, *, entry_name: str, batch_size: int = 5000) -> dict[int, str]:
    """Extract the DBF table from the zip archive and read it in batches."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except zipfile.BadZipFile as e:
        raise ResolutionError(f"location table archive is not a zip: {e}") from e

    with archive, tempfile.TemporaryDirectory(prefix="nl-traffic-") as tmp:
        member = _pick_entry(archive, entry_name)
        dbf_path = Path(tmp) / Path(member).name
        dbf_path.write_bytes(archive.read(member))
        try:
            table = DBF(str(dbf_path), encoding="latin-1", char_decode_errors="replace", load=False)
            return road_map_from_rows(table, batch_size=batch_size)
        except (DBFNotFound, ValueError, struct.error) as e:
            raise ResolutionError(f"location table unreadable: {type(e).__name__}: {e}") from e


class LocationTableResolver:
    """Alert-C location code -> road code, backed by the periodically refreshed VILD table."""

    def __init__(
        self,
        *,
        client: FeedClient,
        url: str,
        entry_name: str,
        ttl_s: float = 7 * 24 * 3600.0,
        batch_size: int = 5000,
        fetch_timeout_s: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.url = url
        self.entry_name = entry_name
        self.batch_size = batch_size
        self.fetch_timeout_s = fetch_timeout_s
        self._store = CacheStore(ttl_s=ttl_s, max_entries=1, clock=clock)

    async def _download_and_build(self) -> dict[int, str]:
        t0 = time.perf_counter()
        try:
            archive = await self._client.get_bytes(self.url, timeout_s=self.fetch_timeout_s)
        except TrafficSourceError as e:
            raise ResolutionError(f"location table download failed: {e}", details={"url": self.url}) from e
        road_map = await asyncio.to_thread(
            load_road_map_from_archive,
            archive,
            entry_name=self.entry_name,
            batch_size=self.batch_size,
        )
        log_event(
            "location_table_loaded",
            url=self.url,
            entries=len(road_map),
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return road_map

    async def road_map(self) -> dict[int, str]:
        cached = self._store.get(_CACHE_KEY)
        if cached is not None:
            return cached

        previous = self._store.peek(_CACHE_KEY)
        try:
            return await self._store.single_flight(_CACHE_KEY, self._download_and_build)
        except TrafficSourceError as e:
            if previous is None:
                raise
            # Keep serving the expired table rather than failing lookups.
            log_event(
                "location_table_refresh_failed",
                reason_code=e.reason_code,
                error=str(e),
                stale_age_s=round(self._store.age_s(previous), 1),
            )
            return previous.payload

    async def resolve(self, location_code: int | str) -> str | None:
        code = _as_int(location_code)
        if code is None:
            return None
        road_map = await self.road_map()
        return road_map.get(code)

    def clear(self) -> None:
        self._store.clear()
