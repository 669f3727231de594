from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from nl_traffic.errors import FetchError, ResolutionError
from nl_traffic.models import TrafficEvent
from nl_traffic.primary_feed import PrimaryFeed

INCIDENTS_URL = "https://opendata.ndw.nu/incidents.xml.gz"
JAMS_URL = "https://opendata.ndw.nu/actueel_beeld.xml.gz"
_TS = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def _event(event_id: str, category: str) -> TrafficEvent:
    return TrafficEvent(
        id=event_id,
        road_type="A",
        road_number=2,
        category=category,
        last_updated=_TS,
        source="primary_feed",
        source_url=INCIDENTS_URL,
    )


class FakeClient:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.urls: list[str] = []

    async def get_bytes(self, url: str, *, timeout_s: float | None = None) -> bytes:
        self.urls.append(url)
        if url in self.failing:
            raise FetchError(f"HTTP 503 for {url}")
        return url.encode("utf-8")


class FakeParser:
    async def parse(self, feed_bytes: bytes, feed_kind: str, *, source_url: str) -> list[TrafficEvent]:
        category = "jam" if feed_kind == "jams" else "accident"
        return [_event(f"{feed_kind}:{feed_bytes.decode()}", category)]


class FakeDetector:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.fail = fail

    async def detect(self) -> list[TrafficEvent]:
        if self.fail is not None:
            raise self.fail
        return [_event("traveltime:S1", "jam")]


def _feed(client: FakeClient, detector: FakeDetector | None = None, jam_source: str = "traveltime") -> PrimaryFeed:
    return PrimaryFeed(
        client=client,  # type: ignore[arg-type]
        parser=FakeParser(),  # type: ignore[arg-type]
        incidents_url=INCIDENTS_URL,
        jam_source=jam_source,  # type: ignore[arg-type]
        jam_detector=detector or FakeDetector(),  # type: ignore[arg-type]
        jams_url=JAMS_URL,
    )


def test_jams_and_incidents_are_merged_jams_first() -> None:
    events = asyncio.run(_feed(FakeClient()).fetch())

    assert [e.id for e in events] == ["traveltime:S1", f"incidents:{INCIDENTS_URL}"]


def test_datex_jam_source_uses_the_jam_feed() -> None:
    client = FakeClient()

    events = asyncio.run(_feed(client, jam_source="datex").fetch())

    assert [e.category for e in events] == ["jam", "accident"]
    assert sorted(client.urls) == sorted([JAMS_URL, INCIDENTS_URL])


def test_jam_half_failure_keeps_incidents() -> None:
    detector = FakeDetector(fail=ResolutionError("measurement site feed unavailable"))

    events = asyncio.run(_feed(FakeClient(), detector).fetch())

    assert [e.category for e in events] == ["accident"]


def test_incident_half_failure_fails_ingestion() -> None:
    with pytest.raises(FetchError):
        asyncio.run(_feed(FakeClient(failing={INCIDENTS_URL})).fetch())


def test_misconfigured_jam_source_is_rejected() -> None:
    with pytest.raises(ValueError):
        PrimaryFeed(client=FakeClient(), parser=FakeParser(), incidents_url=INCIDENTS_URL)  # type: ignore[arg-type]


def test_datex_jam_source_requires_a_jam_feed_url() -> None:
    with pytest.raises(ValueError):
        PrimaryFeed(  # type: ignore[arg-type]
            client=FakeClient(),
            parser=FakeParser(),
            incidents_url=INCIDENTS_URL,
            jam_source="datex",
            jam_detector=FakeDetector(),
        )


def test_traveltime_jam_source_never_reads_the_jam_feed() -> None:
    client = FakeClient()

    asyncio.run(_feed(client, jam_source="traveltime").fetch())

    assert client.urls == [INCIDENTS_URL]
