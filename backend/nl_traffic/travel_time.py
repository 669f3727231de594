from __future__ import annotations

import asyncio
import math
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError

from .datex import attribute, child, children, locate_publication, parse_xml, publication_time
from .feed_client import FeedClient
from .measurement_sites import MeasurementSiteResolver
from .models import RoadType, TrafficEvent, split_road_code
from .units import parse_number, round_half_up, utc_now

_CURRENT_PATH = ("measuredValue", "measuredValue", "basicData", "travelTime", "duration")
_REFERENCE_PATH = (
    "measuredValue",
    "measuredValue",
    "measuredValueExtension",
    "measuredValueExtended",
    "basicDataReferenceValue",
    "travelTimeData",
    "travelTime",
    "duration",
)
EVENT_TYPE_RAW = "MeasuredTravelTime"


@dataclass(frozen=True)
class JamCandidate:
    site_id: str
    current_s: float
    reference_s: float
    delay_min: int


@dataclass(frozen=True)
class JamPolicy:
    """Bucketing and capping rules applied to measured travel-time delays."""

    bucket_min: int = 5
    min_delay_min: int = 5
    max_jams: int = 200
    free_flow_speed_a_kmh: float = 100.0
    free_flow_speed_n_kmh: float = 80.0

    def bucket(self, delay_min_raw: float) -> int:
        return int(round_half_up(delay_min_raw / self.bucket_min) * self.bucket_min)

    def free_flow_speed_kmh(self, road_type: RoadType) -> float:
        return self.free_flow_speed_a_kmh if road_type == "A" else self.free_flow_speed_n_kmh

    def length_km(self, road_type: RoadType, reference_s: float) -> float:
        # Queue length is not measured; approximate it by the free-flow distance of the segment.
        km = reference_s / 3600.0 * self.free_flow_speed_kmh(road_type)
        return max(0.1, round_half_up(km, 1))


def _duration(measurement: ET.Element, path: tuple[str, ...]) -> float | None:
    node = child(measurement, *path)
    return parse_number(node.text) if node is not None else None


def jam_candidates(publication: ET.Element, policy: JamPolicy) -> list[JamCandidate]:
    """Delay candidates from every site measurement, worst first, capped at ``policy.max_jams``."""
    out: list[JamCandidate] = []
    for measurement in children(publication, "siteMeasurements"):
        site_ref = child(measurement, "measurementSiteReference")
        site_id = attribute(site_ref, "id") if site_ref is not None else None
        if not site_id:
            continue
        current_s = _duration(measurement, _CURRENT_PATH)
        reference_s = _duration(measurement, _REFERENCE_PATH)
        if current_s is None or reference_s is None:
            continue
        delay_raw = (current_s - reference_s) / 60.0
        if not math.isfinite(delay_raw) or delay_raw < policy.min_delay_min:
            continue
        delay_min = policy.bucket(delay_raw)
        if delay_min < policy.min_delay_min:
            continue
        out.append(JamCandidate(site_id, current_s, reference_s, delay_min))

    # sorted() is stable: equal delays keep feed order.
    out = sorted(out, key=lambda c: c.delay_min, reverse=True)
    return out[: policy.max_jams]


class TravelTimeJamDetector:
    def __init__(
        self,
        *,
        client: FeedClient,
        url: str,
        sites: MeasurementSiteResolver,
        policy: JamPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self.url = url
        self._sites = sites
        self.policy = policy or JamPolicy()
        self._clock = clock

    async def detect(self) -> list[TrafficEvent]:
        feed = await self._client.get_bytes(self.url)
        return await self.detect_from_bytes(feed)

    async def detect_from_bytes(self, feed_bytes: bytes) -> list[TrafficEvent]:
        root = await asyncio.to_thread(parse_xml, feed_bytes)
        publication = locate_publication(root)
        published_at = publication_time(publication, fallback=self._clock)

        top = jam_candidates(publication, self.policy)
        if not top:
            return []
        site_info = await self._sites.resolve({c.site_id for c in top})

        events: list[TrafficEvent] = []
        for candidate in top:
            info = site_info.get(candidate.site_id)
            parts = split_road_code(info.road_code if info else None)
            if info is None or parts is None:
                continue
            road_type, road_number = parts
            try:
                events.append(
                    TrafficEvent(
                        id=f"ndw:traveltime:{candidate.site_id}",
                        road_type=road_type,
                        road_number=road_number,
                        category="jam",
                        event_type_raw=EVENT_TYPE_RAW,
                        location_text=info.name,
                        length_km=self.policy.length_km(road_type, candidate.reference_s),
                        delay_min=candidate.delay_min,
                        last_updated=published_at,
                        source="primary_feed",
                        source_url=self.url,
                    )
                )
            except ValidationError:
                continue
        return events
