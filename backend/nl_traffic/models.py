from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

RoadType = Literal["A", "N"]
EventCategory = Literal["jam", "accident"]
EventSource = Literal["primary_feed", "scrape"]
SortKey = Literal["delay", "length", "road"]

ROAD_CODE_RE = re.compile(r"^([AN])(\d{1,3})$")


def split_road_code(raw: str | None) -> tuple[RoadType, int] | None:
    """Parse "A8" / "n 35" / "a-2" into ("A", 8) style parts; None when not a road code."""
    code = re.sub(r"[\s-]+", "", str(raw or "")).upper()
    m = ROAD_CODE_RE.match(code)
    if not m:
        return None
    number = int(m.group(2))
    if number <= 0:
        return None
    return m.group(1), number  # type: ignore[return-value]


class TrafficEvent(BaseModel):
    """One normalised traffic condition (jam or accident) on an A- or N-road."""

    id: str
    road_type: RoadType
    road_number: int = Field(..., gt=0)
    road_code: str = ""
    category: EventCategory
    event_type_raw: str | None = None

    location_text: str | None = None
    direction: str | None = None
    location_from: str | None = None
    location_to: str | None = None
    reason_text: str | None = None
    length_km: float | None = Field(default=None, ge=0.0)
    delay_min: int | None = Field(default=None, ge=0)

    external_text: str | None = None
    external_url: str | None = None
    external_posted_at: datetime | None = None

    last_updated: datetime
    source: EventSource
    source_url: str

    @model_validator(mode="after")
    def _road_code_matches_parts(self) -> "TrafficEvent":
        expected = f"{self.road_type}{self.road_number}"
        if not self.road_code:
            self.road_code = expected
        elif self.road_code != expected:
            raise ValueError(f"road_code {self.road_code!r} does not match {expected!r}")
        return self


class EventsQuery(BaseModel):
    road_type: RoadType | None = None
    road_number: int | None = None
    category: EventCategory | None = None
    sort: SortKey = "delay"


class EventsResponse(BaseModel):
    events: list[TrafficEvent]
    count: int
    fetched_at: datetime
    stale: bool = False
    warning: str | None = None


class EnrichmentDiagnostics(BaseModel):
    at: datetime | None = None
    message: str | None = None


@dataclass(frozen=True)
class Snapshot:
    fetched_at: datetime
    events: tuple[TrafficEvent, ...]


@dataclass(frozen=True)
class SnapshotResult:
    snapshot: Snapshot
    stale: bool = False
    warning: str | None = None
