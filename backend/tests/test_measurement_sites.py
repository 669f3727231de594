from __future__ import annotations

import asyncio
import gzip
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest

from nl_traffic.errors import FetchError, ResolutionError
from nl_traffic.measurement_sites import MeasurementSiteResolver, SiteInfo, parse_site_records

HEAD = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<d2LogicalModel xmlns="http://datex2.eu/schema/2/2_0" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
    "<payloadPublication><measurementSiteTable>"
)
TAIL = "</measurementSiteTable></payloadPublication></d2LogicalModel>"
ROAD_MAP = {10977: "A8", 2210: "N35"}


def _record(site_id: str, name: str, location: int, *, secondary: int | None = None) -> str:
    secondary_xml = ""
    if secondary is not None:
        secondary_xml = (
            "<alertCMethod4SecondaryPointLocation><alertCLocation>"
            f"<specificLocation>{secondary}</specificLocation>"
            "</alertCLocation></alertCMethod4SecondaryPointLocation>"
        )
    return (
        f'<measurementSiteRecord id="{site_id}" version="3">'
        f'<measurementSiteName><values><value lang="nl">{name}</value></values></measurementSiteName>'
        '<measurementSiteLocation xsi:type="Linear"><alertCLinear>'
        f"{secondary_xml}"
        "<alertCMethod4PrimaryPointLocation><alertCLocation>"
        f"<specificLocation>{location}</specificLocation>"
        "</alertCLocation></alertCMethod4PrimaryPointLocation>"
        "</alertCLinear></measurementSiteLocation>"
        "</measurementSiteRecord>"
    )


class CountingChunks:
    """Async byte source that records how many chunks were pulled."""

    def __init__(self, chunks: list[str]) -> None:
        self.chunks = [c.encode("utf-8") for c in chunks]
        self.pulled = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk


def test_stream_stops_reading_once_every_wanted_site_is_found() -> None:
    source = CountingChunks(
        [
            HEAD,
            _record("S1", "A8 Zaandam", 10977, secondary=2210),
            _record("X", "ignored", 2210),
            _record("S2", "N35 Wijthmen", 2210),
            _record("Y", "never read", 10977),
            _record("Z", "never read", 10977),
            TAIL,
        ]
    )

    sites, aborted_early = asyncio.run(parse_site_records(source.__aiter__(), {"S1", "S2"}, ROAD_MAP))

    assert aborted_early is True
    assert source.pulled == 4
    assert sites == {
        "S1": SiteInfo(road_code="A8", name="A8 Zaandam"),
        "S2": SiteInfo(road_code="N35", name="N35 Wijthmen"),
    }


def test_missing_ids_are_absent_and_stream_is_read_to_the_end() -> None:
    source = CountingChunks([HEAD, _record("S1", "A8 Zaandam", 10977), _record("S3", "no road", 1), TAIL])

    sites, aborted_early = asyncio.run(parse_site_records(source.__aiter__(), {"S1", "S3", "GONE"}, ROAD_MAP))

    assert aborted_early is False
    assert source.pulled == 4
    assert sites["S1"].road_code == "A8"
    assert sites["S3"] == SiteInfo(road_code=None, name="no road")
    assert "GONE" not in sites


def test_empty_wanted_set_reads_nothing() -> None:
    source = CountingChunks([HEAD, TAIL])

    sites, aborted_early = asyncio.run(parse_site_records(source.__aiter__(), set(), ROAD_MAP))

    assert (sites, aborted_early) == ({}, True)
    assert source.pulled == 0


class FakeLocationTable:
    async def road_map(self) -> dict[int, str]:
        return ROAD_MAP


class FakeStreamClient:
    def __init__(self, payload: bytes, *, fail: Exception | None = None) -> None:
        self.payload = payload
        self.fail = fail
        self.opened = 0

    @asynccontextmanager
    async def stream_bytes(self, url: str, *, timeout_s: float | None = None):
        self.opened += 1
        if self.fail is not None:
            raise self.fail

        async def chunks() -> AsyncIterator[bytes]:
            for i in range(0, len(self.payload), 64):
                yield self.payload[i : i + 64]

        yield chunks()


def _resolver(client: FakeStreamClient, clock=lambda: 1_000.0) -> MeasurementSiteResolver:
    return MeasurementSiteResolver(
        client=client,  # type: ignore[arg-type]
        url="https://opendata.ndw.nu/measurement_current.xml.gz",
        location_table=FakeLocationTable(),  # type: ignore[arg-type]
        ttl_s=60.0,
        clock=clock,
    )


def test_resolver_caches_per_site_and_streams_only_for_unseen_ids() -> None:
    payload = gzip.compress(
        (HEAD + _record("S1", "A8 Zaandam", 10977) + _record("S2", "N35 Wijthmen", 2210) + TAIL).encode("utf-8")
    )
    client = FakeStreamClient(payload)
    resolver = _resolver(client)

    async def run() -> None:
        assert (await resolver.resolve({"S1"}))["S1"].road_code == "A8"
        await resolver.resolve({"S1"})
        assert client.opened == 1

        both = await resolver.resolve({"S1", "S2"})
        assert set(both) == {"S1", "S2"}
        assert client.opened == 2

        only_s2 = await resolver.resolve({"S2"})
        assert only_s2 == {"S2": SiteInfo(road_code="N35", name="N35 Wijthmen")}
        assert client.opened == 2

        assert await resolver.resolve({"S1", "GONE"}) == {"S1": SiteInfo(road_code="A8", name="A8 Zaandam")}
        assert await resolver.resolve({"GONE"}) == {}
        assert client.opened == 3

    asyncio.run(run())


def test_resolver_rebuilds_after_ttl() -> None:
    now = [1_000.0]
    payload = (HEAD + _record("S1", "A8 Zaandam", 10977) + TAIL).encode("utf-8")
    client = FakeStreamClient(payload)
    resolver = _resolver(client, clock=lambda: now[0])

    async def run() -> None:
        await resolver.resolve({"S1"})
        now[0] += 61.0
        await resolver.resolve({"S1"})

    asyncio.run(run())
    assert client.opened == 2


def test_stream_failure_is_a_resolution_error() -> None:
    resolver = _resolver(FakeStreamClient(b"", fail=FetchError("HTTP 503")))

    with pytest.raises(ResolutionError) as exc:
        asyncio.run(resolver.resolve({"S1"}))
    assert exc.value.reason_code == "reference_table_unavailable"


class SlowStreamClient:
    """Streams an endless-looking feed one record at a time."""

    def __init__(self) -> None:
        self.pulled = 0
        self.closed = False

    @asynccontextmanager
    async def stream_bytes(self, url: str, *, timeout_s: float | None = None):
        async def chunks() -> AsyncIterator[bytes]:
            yield HEAD.encode("utf-8")
            for i in range(10_000):
                await asyncio.sleep(0.01)
                self.pulled += 1
                yield _record(f"X{i}", "other site", 10977).encode("utf-8")

        try:
            yield chunks()
        finally:
            self.closed = True


def test_cancelled_resolve_stops_reading_the_stream() -> None:
    client = SlowStreamClient()
    resolver = MeasurementSiteResolver(
        client=client,  # type: ignore[arg-type]
        url="https://opendata.ndw.nu/measurement_current.xml.gz",
        location_table=FakeLocationTable(),  # type: ignore[arg-type]
    )

    async def run() -> tuple[int, int]:
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(resolver.resolve({"S9"}), timeout=0.05)
        await asyncio.sleep(0)
        at_timeout = client.pulled
        await asyncio.sleep(0.1)
        return at_timeout, client.pulled

    at_timeout, later = asyncio.run(run())

    assert later == at_timeout
    assert client.closed is True
