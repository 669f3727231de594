from __future__ import annotations

import asyncio
import inspect
import re
import xml.etree.ElementTree as ET
from collections.abc import Awaitable, Callable, Iterator, Sequence
from datetime import datetime
from typing import Literal

from pydantic import ValidationError

from .errors import ParseError
from .feed_client import decompress_feed
from .location_table import LocationTableResolver
from .models import EventCategory, TrafficEvent, split_road_code
from .units import meters_to_km, parse_duration_minutes, parse_number, parse_timestamp, utc_now

FeedKind = Literal["jams", "incidents"]

# DATEX II v2 (SOAP) and v3 (messageContainer) both occur in the wild.
ENVELOPE_PATHS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("datex2_soap", ("Envelope", "Body", "d2LogicalModel", "payloadPublication")),
    ("datex3_container", ("messageContainer", "payload")),
)

_LOCATION_CONTAINERS = ("locationReference", "groupOfLocations")
_STRUCTURED_ROAD_FIELDS = {"roadName", "roadNumber"}
_COMMENT_ROAD_RE = re.compile(r"\b([AN])[\s-]?(\d{1,3})\b", re.IGNORECASE)

_LENGTH_PATHS: tuple[tuple[str, ...], ...] = (
    ("lengthAffected", "distance"),
    ("distanceAffected", "distance"),
    ("queueLength", "distance"),
    ("trafficJamLength", "distance"),
    ("queueLength",),
    ("lengthAffected",),
)
_DELAY_PATHS: tuple[tuple[str, ...], ...] = (
    ("delayTime", "duration"),
    ("delay", "duration"),
    ("impact", "delays", "delayTimeValue"),
)
_TEXT_PATHS: tuple[tuple[str, ...], ...] = (
    ("generalPublicComment", "comment"),
    ("nonGeneralPublicComment", "comment"),
    ("cause", "causeDescription"),
)

# Incident feed records are bucketed coarsely: anything that is not literally an
# accident still lands in the accident bucket until a fuller subtype taxonomy exists.
INCIDENT_DEFAULT_CATEGORY: EventCategory = "accident"
JAM_RECORD_MARKER = "abnormaltraffic"


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def children(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for node in elem:
        if local_name(node.tag) == name:
            yield node


def child(elem: ET.Element | None, *names: str) -> ET.Element | None:
    cur = elem
    for name in names:
        if cur is None:
            return None
        cur = next(children(cur, name), None)
    return cur


def descendants(elem: ET.Element, names: set[str] | str) -> Iterator[ET.Element]:
    wanted = {names} if isinstance(names, str) else names
    for node in elem.iter():
        if node is not elem and local_name(node.tag) in wanted:
            yield node


def attribute(elem: ET.Element, name: str) -> str | None:
    for key, value in elem.attrib.items():
        if local_name(key) == name:
            return value
    return None


def value_text(elem: ET.Element | None) -> str | None:
    """Text of a DATEX multilingual node (``values/value``) or of the node itself."""
    if elem is None:
        return None
    for value in descendants(elem, "value"):
        text = (value.text or "").strip()
        if text:
            return text
    text = (elem.text or "").strip()
    return text or None


def parse_xml(feed_bytes: bytes) -> ET.Element:
    data = decompress_feed(feed_bytes)
    try:
        return ET.fromstring(data)
    except ET.ParseError as e:
        raise ParseError(f"feed is not valid XML: {e}") from e


def locate_publication(root: ET.Element) -> ET.Element:
    """Find the payload publication, trying each known envelope shape in order."""
    for _name, path in ENVELOPE_PATHS:
        if local_name(root.tag) != path[0]:
            continue
        found = child(root, *path[1:])
        if found is not None:
            return found
    raise ParseError(
        f"no known publication envelope under root <{local_name(root.tag)}>",
        details={"tried": [name for name, _ in ENVELOPE_PATHS]},
    )


def publication_time(publication: ET.Element, *, fallback: Callable[[], datetime] = utc_now) -> datetime:
    node = child(publication, "publicationTime")
    parsed = parse_timestamp(node.text if node is not None else None)
    return parsed if parsed is not None else fallback()


def record_type(record: ET.Element) -> str:
    raw = attribute(record, "type") or ""
    return raw.rsplit(":", 1)[-1].strip()


def _location_nodes(record: ET.Element) -> list[ET.Element]:
    return [node for name in _LOCATION_CONTAINERS for node in children(record, name)]


def road_from_structured_field(record: ET.Element) -> str | None:
    for container in _location_nodes(record):
        for field in descendants(container, _STRUCTURED_ROAD_FIELDS):
            parts = split_road_code(value_text(field))
            if parts is not None:
                return f"{parts[0]}{parts[1]}"
    return None


def road_from_comment(record: ET.Element) -> str | None:
    for comments in children(record, "generalPublicComment"):
        for comment in children(comments, "comment"):
            for value in descendants(comment, "value"):
                m = _COMMENT_ROAD_RE.search(value.text or "")
                if m and int(m.group(2)) > 0:
                    return f"{m.group(1).upper()}{int(m.group(2))}"
    return None


def specific_locations(record: ET.Element) -> list[int]:
    out: list[int] = []
    for container in _location_nodes(record):
        for node in descendants(container, "specificLocation"):
            number = parse_number(node.text)
            if number is not None and number.is_integer():
                out.append(int(number))
    return out


class AlertCLocationStrategy:
    """Map Alert-C specific-location codes anywhere under the record's location subtree."""

    def __init__(self, location_table: LocationTableResolver) -> None:
        self._location_table = location_table

    async def __call__(self, record: ET.Element) -> str | None:
        codes = specific_locations(record)
        if not codes:
            return None
        road_map = await self._location_table.road_map()
        for code in codes:
            road = road_map.get(code)
            if road:
                return road
        return None


RoadCodeStrategy = Callable[[ET.Element], "str | None | Awaitable[str | None]"]


class RoadCodeResolver:
    """Ordered road-code strategies; the first one returning a code wins."""

    def __init__(self, strategies: Sequence[RoadCodeStrategy]) -> None:
        self.strategies = list(strategies)

    @classmethod
    def default(cls, location_table: LocationTableResolver) -> "RoadCodeResolver":
        return cls([road_from_structured_field, road_from_comment, AlertCLocationStrategy(location_table)])

    async def resolve(self, record: ET.Element) -> str | None:
        for strategy in self.strategies:
            result = strategy(record)
            if inspect.isawaitable(result):
                result = await result
            if result:
                return result
        return None


def _first_number(record: ET.Element, paths: Sequence[tuple[str, ...]]) -> tuple[float | None, str | None]:
    for path in paths:
        node = child(record, *path)
        if node is None or len(node):
            continue
        text = (node.text or "").strip()
        if text:
            return parse_number(text), text
    return None, None


def parse_length_km(record: ET.Element) -> float | None:
    meters, _raw = _first_number(record, _LENGTH_PATHS)
    if not meters or meters < 0:
        return None
    return meters_to_km(meters)


def parse_delay_min(record: ET.Element) -> int | None:
    _seconds, raw = _first_number(record, _DELAY_PATHS)
    if raw is None:
        return None
    return parse_duration_minutes(raw)


def record_text(record: ET.Element) -> str | None:
    for path in _TEXT_PATHS:
        text = value_text(child(record, *path))
        if text:
            return text
    return None


def record_direction(record: ET.Element) -> str | None:
    for container in _location_nodes(record):
        for node in descendants(container, "alertCDirectionCoded"):
            text = (node.text or "").strip()
            if text:
                return text
    return None


def category_for(type_raw: str, feed_kind: FeedKind) -> EventCategory:
    if feed_kind == "jams":
        return "jam"
    if "accident" in type_raw.lower():
        return "accident"
    return INCIDENT_DEFAULT_CATEGORY


class DatexFeedParser:
    def __init__(
        self,
        road_codes: RoadCodeResolver,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.road_codes = road_codes
        self._clock = clock

    async def parse(self, feed_bytes: bytes, feed_kind: FeedKind, *, source_url: str) -> list[TrafficEvent]:
        root = await asyncio.to_thread(parse_xml, feed_bytes)
        publication = locate_publication(root)
        published_at = publication_time(publication, fallback=self._clock)

        out: list[TrafficEvent] = []
        for situation in children(publication, "situation"):
            situation_id = attribute(situation, "id") or "unknown"
            for record in children(situation, "situationRecord"):
                event = await self._event_from_record(
                    record,
                    feed_kind=feed_kind,
                    situation_id=situation_id,
                    published_at=published_at,
                    source_url=source_url,
                )
                if event is not None:
                    out.append(event)
        return out

    async def _event_from_record(
        self,
        record: ET.Element,
        *,
        feed_kind: FeedKind,
        situation_id: str,
        published_at: datetime,
        source_url: str,
    ) -> TrafficEvent | None:
        type_raw = record_type(record)
        if feed_kind == "jams" and JAM_RECORD_MARKER not in type_raw.lower():
            return None

        road_code = await self.road_codes.resolve(record)
        parts = split_road_code(road_code)
        if parts is None:
            return None
        road_type, road_number = parts

        try:
            return TrafficEvent(
                id=f"ndw:{feed_kind}:{situation_id}:{attribute(record, 'id') or ''}",
                road_type=road_type,
                road_number=road_number,
                category=category_for(type_raw, feed_kind),
                event_type_raw=type_raw or None,
                location_text=record_text(record),
                direction=record_direction(record),
                length_km=parse_length_km(record),
                delay_min=parse_delay_min(record),
                last_updated=published_at,
                source="primary_feed",
                source_url=source_url,
            )
        except ValidationError:
            return None
