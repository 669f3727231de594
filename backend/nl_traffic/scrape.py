from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from bs4 import BeautifulSoup
from pydantic import ValidationError

from .errors import ParseError
from .feed_client import FeedClient
from .models import EventCategory, TrafficEvent, split_road_code
from .units import round_half_up, utc_now

_SENTENCE_SPLIT_RE = re.compile(r"\.(?:\s+|$)")
_TRAILING_PUNCT_RE = re.compile(r"[\s.;:,-]+$")
_WS_RE = re.compile(r"\s+")
_SCRAPE_HEADERS = {"accept": "text/html,application/xhtml+xml"}


@dataclass(frozen=True)
class UnitHeuristics:
    """Unit guesses for the scrape payload, whose distance/delay units are not stated.

    Distances above ``distance_meter_threshold`` are read as meters, delays above
    ``delay_second_threshold`` as seconds. Both thresholds come from observed data.
    """

    distance_meter_threshold: float = 50.0
    delay_second_threshold: float = 180.0

    def length_km(self, raw: float | None) -> float | None:
        if raw is None or raw < 0:
            return None
        km = raw / 1000.0 if raw > self.distance_meter_threshold else raw
        return round_half_up(km, 1)

    def delay_min(self, raw: float | None) -> int | None:
        if raw is None or raw < 0:
            return None
        minutes = raw / 60.0 if raw > self.delay_second_threshold else raw
        return int(round_half_up(minutes))


@dataclass(frozen=True)
class ScrapedSegment:
    """A node that satisfies the traffic-segment shape: numeric id, string road and category."""

    id: int
    road: str
    category: str
    type: str | None = None
    incident_type: str | None = None
    from_: str | None = None
    to: str | None = None
    distance: float | None = None
    delay: float | None = None
    code_direction: int | str | None = None
    reason: str | None = None
    event_texts: list[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def as_segment(node: Any) -> ScrapedSegment | None:
    if not isinstance(node, dict):
        return None
    seg_id, road, category = node.get("id"), node.get("road"), node.get("category")
    if not (_is_number(seg_id) and isinstance(road, str) and isinstance(category, str)):
        return None
    events = node.get("events")
    if isinstance(events, dict):
        events = [events]
    texts = [
        ev["text"].strip()
        for ev in (events if isinstance(events, list) else [])
        if isinstance(ev, dict) and isinstance(ev.get("text"), str) and ev["text"].strip()
    ]
    direction = node.get("codeDirection")
    return ScrapedSegment(
        id=int(seg_id),
        road=road,
        category=category,
        type=_opt_str(node.get("type")),
        incident_type=_opt_str(node.get("incidentType")),
        from_=_opt_str(node.get("from")),
        to=_opt_str(node.get("to")),
        distance=float(node["distance"]) if _is_number(node.get("distance")) else None,
        delay=float(node["delay"]) if _is_number(node.get("delay")) else None,
        code_direction=direction if _is_number(direction) or isinstance(direction, str) else None,
        reason=_opt_str(node.get("reason")),
        event_texts=texts,
    )


def find_segments(node: Any) -> Iterator[ScrapedSegment]:
    """Depth-first search for segment-shaped nodes; matched nodes are not descended into."""
    if isinstance(node, list):
        for item in node:
            yield from find_segments(item)
        return
    if not isinstance(node, dict):
        return
    segment = as_segment(node)
    if segment is not None:
        yield segment
        return
    for value in node.values():
        yield from find_segments(value)


def embedded_data(page_html: str, marker_id: str = "__NEXT_DATA__") -> Any:
    soup = BeautifulSoup(page_html, "html.parser")
    script = soup.find("script", id=marker_id)
    if script is None:
        raise ParseError(f"embedded data block {marker_id!r} not found in page")
    try:
        return json.loads(script.get_text())
    except ValueError as e:
        raise ParseError(f"embedded data block {marker_id!r} is not valid JSON: {e}") from e


def _dict_at(node: Any, *keys: str) -> dict[str, Any] | None:
    """Follow ``keys`` through nested dicts; None as soon as a step is not a dict."""
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


def traffic_list_query(data: Any) -> dict[str, Any] | None:
    """The dehydrated ``["incidents", "list", ...]`` query, when the page still has that layout."""
    loader_data = _dict_at(data, "props", "pageProps", "loaderData")
    if loader_data is None:
        return None
    for value in loader_data.values():
        dehydrated = value.get("dehydratedState") if isinstance(value, dict) else None
        queries = dehydrated.get("queries") if isinstance(dehydrated, dict) else None
        for query in queries if isinstance(queries, list) else []:
            key = query.get("queryKey") if isinstance(query, dict) else None
            if isinstance(key, list) and key[:2] == ["incidents", "list"]:
                return query
    return None


def reason_text(parts: list[str]) -> str | None:
    """Merge free-text fields into unique sentences ("Dicht. Werk." + "Dicht" -> "Dicht. Werk.")."""
    unique: dict[str, str] = {}
    for part in parts:
        for piece in _SENTENCE_SPLIT_RE.split(part):
            cleaned = _TRAILING_PUNCT_RE.sub("", piece.strip()).strip()
            key = _WS_RE.sub(" ", cleaned).lower()
            if key and key not in unique:
                unique[key] = cleaned
    if not unique:
        return None
    return ". ".join(unique.values()) + "."


def category_for(raw: str) -> EventCategory:
    return "jam" if raw == "jams" else "accident"


def _updated_at(query: dict[str, Any] | None, fallback: Callable[[], datetime]) -> datetime:
    state = query.get("state") if query else None
    updated_ms = state.get("dataUpdatedAt") if isinstance(state, dict) else None
    if _is_number(updated_ms):
        try:
            return datetime.fromtimestamp(updated_ms / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError):
            pass
    return fallback()


def event_from_segment(
    segment: ScrapedSegment,
    *,
    units: UnitHeuristics,
    last_updated: datetime,
    source_url: str,
) -> TrafficEvent | None:
    parts = split_road_code(segment.road)
    if parts is None:
        return None
    road_type, road_number = parts
    if segment.type is not None and segment.type.upper() != road_type:
        return None

    if segment.from_ and segment.to:
        location_text = f"{segment.from_} → {segment.to}"
    else:
        location_text = segment.from_ or segment.to

    texts = ([segment.reason.strip()] if segment.reason and segment.reason.strip() else []) + segment.event_texts
    direction = segment.code_direction
    try:
        return TrafficEvent(
            id=f"anwb:{segment.id}",
            road_type=road_type,
            road_number=road_number,
            category=category_for(segment.category),
            event_type_raw=f"{segment.category}:{segment.incident_type or ''}",
            location_text=location_text,
            direction=str(direction) if direction is not None else None,
            location_from=segment.from_,
            location_to=segment.to,
            reason_text=reason_text(texts),
            length_km=units.length_km(segment.distance),
            delay_min=units.delay_min(segment.delay),
            last_updated=last_updated,
            source="scrape",
            source_url=source_url,
        )
    except ValidationError:
        return None


def extract_events(
    page_html: str,
    *,
    source_url: str,
    units: UnitHeuristics | None = None,
    marker_id: str = "__NEXT_DATA__",
    clock: Callable[[], datetime] = utc_now,
) -> list[TrafficEvent]:
    units = units or UnitHeuristics()
    data = embedded_data(page_html, marker_id)
    query = traffic_list_query(data)
    # Unknown layouts fall back to searching the whole document.
    query_data = _dict_at(query, "state", "data")
    roots: Any = query_data["roads"] if query_data is not None and "roads" in query_data else data
    last_updated = _updated_at(query, clock)

    out: list[TrafficEvent] = []
    for segment in find_segments(roots):
        event = event_from_segment(segment, units=units, last_updated=last_updated, source_url=source_url)
        if event is not None:
            out.append(event)
    return out


class ScrapeSource:
    def __init__(
        self,
        *,
        client: FeedClient,
        url: str,
        units: UnitHeuristics | None = None,
        marker_id: str = "__NEXT_DATA__",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self.url = url
        self.units = units or UnitHeuristics()
        self.marker_id = marker_id
        self._clock = clock

    async def fetch(self) -> list[TrafficEvent]:
        page = await self._client.get_text(self.url, headers=_SCRAPE_HEADERS)
        return extract_events(
            page,
            source_url=self.url,
            units=self.units,
            marker_id=self.marker_id,
            clock=self._clock,
        )
