from __future__ import annotations

from collections.abc import Iterable
from typing import get_args

from .models import EventCategory, EventsQuery, RoadType, SortKey, TrafficEvent, split_road_code

_MISSING = -1.0
_ROAD_TYPE_ORDER: dict[str, int] = {"A": 0, "N": 1}


def _value(v: float | int | None) -> float:
    return float(v) if v is not None else _MISSING


def matches(event: TrafficEvent, query: EventsQuery) -> bool:
    if query.road_type is not None and event.road_type != query.road_type:
        return False
    if query.road_number is not None and event.road_number != query.road_number:
        return False
    if query.category is not None and event.category != query.category:
        return False
    return True


def _road_key(event: TrafficEvent) -> tuple[int, int, float, float]:
    return (
        _ROAD_TYPE_ORDER.get(event.road_type, len(_ROAD_TYPE_ORDER)),
        event.road_number,
        -_value(event.delay_min),
        -_value(event.length_km),
    )


def sort_events(events: Iterable[TrafficEvent], sort: SortKey) -> list[TrafficEvent]:
    """Stable sort; ties keep their input order."""
    if sort == "road":
        return sorted(events, key=_road_key)
    if sort == "length":
        return sorted(events, key=lambda e: _value(e.length_km), reverse=True)
    return sorted(events, key=lambda e: _value(e.delay_min), reverse=True)


def query_events(events: Iterable[TrafficEvent], query: EventsQuery) -> list[TrafficEvent]:
    return sort_events((e for e in events if matches(e, query)), query.sort)


def parse_events_query(
    type: str | None = None,
    road: str | None = None,
    category: str | None = None,
    sort: str | None = None,
) -> EventsQuery:
    """Build a query from loose request parameters; unrecognised values are ignored.

    ``road`` is either a bare number ("8") or a road code ("A8"), which also sets the type.
    """
    road_type: RoadType | None = None
    road_number: int | None = None

    raw_type = (type or "").strip().upper()
    if raw_type in get_args(RoadType):
        road_type = raw_type  # type: ignore[assignment]

    raw_road = (road or "").strip()
    if raw_road.isdigit() and int(raw_road) > 0:
        road_number = int(raw_road)
    else:
        parts = split_road_code(raw_road)
        if parts is not None:
            road_type, road_number = parts

    raw_category = (category or "").strip().lower()
    raw_sort = (sort or "").strip().lower()
    return EventsQuery(
        road_type=road_type,
        road_number=road_number,
        category=raw_category if raw_category in get_args(EventCategory) else None,  # type: ignore[arg-type]
        sort=raw_sort if raw_sort in get_args(SortKey) else "delay",  # type: ignore[arg-type]
    )
