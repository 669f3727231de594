from __future__ import annotations

import hashlib
import time
import xml.etree.ElementTree as ET
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from .cache_store import CacheStore
from .errors import ParseError, ResolutionError, TrafficSourceError
from .feed_client import FeedClient, gunzip_chunks
from .location_table import LocationTableResolver
from .logging_utils import log_event

_SITE_RECORD = "measurementSiteRecord"
_NAME_SUFFIX = ("measurementSiteName", "values", "value")
_LOCATION_SUFFIX = ("alertCLocation", "specificLocation")
_SCAN_KEY = "scan"


@dataclass(frozen=True)
class SiteInfo:
    road_code: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class _SiteEntry:
    # None: the site was scanned for but is not in the feed
    info: SiteInfo | None


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _is_primary_location(path: list[str]) -> bool:
    # .../alertCMethodNPrimaryPointLocation/alertCLocation/specificLocation
    if len(path) < 3 or tuple(path[-2:]) != _LOCATION_SUFFIX:
        return False
    return path[-3].endswith("PrimaryPointLocation")


class _SiteRecordScanner:
    """Tracks the element path and collects name/location for wanted site records."""

    def __init__(self, wanted: set[str], road_map: dict[int, str]) -> None:
        self.remaining = set(wanted)
        self.road_map = road_map
        self.sites: dict[str, SiteInfo] = {}
        self.path: list[str] = []
        self.elements: list[ET.Element] = []
        self.current_id: str | None = None
        self.in_wanted = False
        self.name: str | None = None
        self.location: int | None = None

    @property
    def done(self) -> bool:
        return not self.remaining

    def start(self, elem: ET.Element) -> None:
        name = local_name(elem.tag)
        self.path.append(name)
        self.elements.append(elem)
        if name == _SITE_RECORD:
            site_id = elem.attrib.get("id")
            self.current_id = site_id
            self.in_wanted = site_id is not None and site_id in self.remaining
            self.name = None
            self.location = None

    def end(self, elem: ET.Element) -> None:
        name = self.path[-1] if self.path else local_name(elem.tag)
        if self.in_wanted:
            text = (elem.text or "").strip()
            if text:
                if tuple(self.path[-3:]) == _NAME_SUFFIX and self.name is None:
                    self.name = text
                elif _is_primary_location(self.path) and self.location is None:
                    try:
                        self.location = int(float(text))
                    except ValueError:
                        pass
            if name == _SITE_RECORD and self.current_id is not None:
                road_code = self.road_map.get(self.location) if self.location is not None else None
                self.sites[self.current_id] = SiteInfo(road_code=road_code, name=self.name)
                self.remaining.discard(self.current_id)

        if name == _SITE_RECORD:
            self.current_id = None
            self.in_wanted = False
            self.name = None
            self.location = None
            # Drop the finished record from its parent so the tree never grows.
            if len(self.elements) >= 2:
                self.elements[-2].remove(elem)
        else:
            elem.clear()

        self.path.pop()
        self.elements.pop()


async def parse_site_records(
    chunks: AsyncIterator[bytes],
    wanted: set[str],
    road_map: dict[int, str],
) -> tuple[dict[str, SiteInfo], bool]:
    """Scan an (already decompressed) measurement-site XML stream for ``wanted`` ids.

    Returns ``(sites, aborted_early)``. Reading stops as soon as every wanted id
    has been seen; the iterator is not advanced any further after that.
    """
    scanner = _SiteRecordScanner(wanted, road_map)
    if scanner.done:
        return {}, True

    parser = ET.XMLPullParser(events=("start", "end"))
    async for chunk in chunks:
        try:
            parser.feed(chunk)
            for event, elem in parser.read_events():
                if event == "start":
                    scanner.start(elem)
                else:
                    scanner.end(elem)
                    if scanner.done:
                        return scanner.sites, True
        except ET.ParseError as e:
            raise ParseError(f"measurement site feed is not valid XML: {e}") from e

    return scanner.sites, False


def _wanted_digest(wanted: frozenset[str]) -> str:
    return hashlib.sha1("|".join(sorted(wanted)).encode("utf-8")).hexdigest()


class MeasurementSiteResolver:
    """Site id -> road code/name by streaming the (very large) measurement metadata feed.

    Results are cached per site id for ``ttl_s``, including ids the feed does
    not contain, so a request only streams for ids not seen within the TTL.
    The wanted set changes between polls but mostly overlaps, and a scan for
    a few new ids usually stops early. A site added upstream after a negative
    entry was cached stays unresolved until that entry expires.

    A scan is cancelled together with its last waiting caller, so an ingestion
    timeout also stops the download.
    """

    def __init__(
        self,
        *,
        client: FeedClient,
        url: str,
        location_table: LocationTableResolver,
        ttl_s: float = 7 * 24 * 3600.0,
        fetch_timeout_s: float | None = None,
        max_sites: int = 50_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.url = url
        self._location_table = location_table
        self.fetch_timeout_s = fetch_timeout_s
        self._sites = CacheStore(ttl_s=ttl_s, max_entries=max_sites, clock=clock)
        self._scans = CacheStore(ttl_s=ttl_s, max_entries=4, clock=clock)

    async def _scan(self, wanted: frozenset[str]) -> dict[str, SiteInfo]:
        t0 = time.perf_counter()
        road_map = await self._location_table.road_map()
        try:
            async with self._client.stream_bytes(self.url, timeout_s=self.fetch_timeout_s) as raw:
                sites, aborted_early = await parse_site_records(gunzip_chunks(raw), set(wanted), road_map)
        except ParseError:
            raise
        except TrafficSourceError as e:
            raise ResolutionError(f"measurement site feed unavailable: {e}", details={"url": self.url}) from e
        for site_id in wanted:
            self._sites.set(site_id, _SiteEntry(info=sites.get(site_id)))
        log_event(
            "measurement_sites_resolved",
            wanted=len(wanted),
            found=len(sites),
            aborted_early=aborted_early,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return sites

    async def resolve(self, wanted_site_ids: set[str]) -> dict[str, SiteInfo]:
        found: dict[str, SiteInfo] = {}
        missing: set[str] = set()
        for site_id in wanted_site_ids:
            entry: _SiteEntry | None = self._sites.get(site_id)
            if entry is None:
                missing.add(site_id)
            elif entry.info is not None:
                found[site_id] = entry.info
        if not missing:
            return found

        pending = frozenset(missing)
        scanned: dict[str, SiteInfo] = await self._scans.single_flight(
            f"{_SCAN_KEY}:{_wanted_digest(pending)}",
            lambda: self._scan(pending),
            cancel_when_abandoned=True,
        )
        found.update(scanned)
        return found

    def clear(self) -> None:
        self._sites.clear()
        self._scans.clear()
