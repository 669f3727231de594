from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from nl_traffic.enrichment import PostEnricher, latest_post_for_road, road_pattern
from nl_traffic.errors import FetchError
from nl_traffic.models import TrafficEvent

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
BASES = ("https://api.x.com/2", "https://api.twitter.com/2")


def _iso(delta_min: float) -> str:
    return (NOW - timedelta(minutes=delta_min)).isoformat().replace("+00:00", "Z")


def _event(event_id: str, road: str, category: str = "jam") -> TrafficEvent:
    return TrafficEvent(
        id=event_id,
        road_type=road[0],
        road_number=int(road[1:]),
        category=category,
        last_updated=NOW,
        source="primary_feed",
        source_url="https://example.test/feed",
    )


POSTS = [
    {"id": "900", "text": "A58 richting Eindhoven: file opgelost", "created_at": _iso(5)},
    {"id": "901", "text": "Ongeval op de A 58 bij Tilburg", "created_at": _iso(20)},
    {"id": "902", "text": "Werkzaamheden A-2 Utrecht", "created_at": _iso(90)},
    {"id": "903", "text": "N35 dicht", "created_at": None},
    {"id": "904", "text": "A580 afgesloten bij Heerlen", "created_at": _iso(1)},
]


class FakeXClient:
    def __init__(
        self,
        *,
        failing_bases: set[str] | None = None,
        posts: list[dict[str, Any]] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.delay_s = delay_s
        self.attempts: set[int | None] = set()
        self.failing_bases = failing_bases or set()
        self.posts = POSTS if posts is None else posts
        self.calls: list[str] = []
        self.params: list[dict[str, str] | None] = []
        self.auth: set[str] = set()

    async def get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        self.calls.append(url)
        self.attempts.add(max_attempts)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.params.append(params)
        self.auth.add((headers or {}).get("authorization", ""))
        for base in self.failing_bases:
            if url.startswith(base):
                raise FetchError(f"HTTP 503 for {url}")
        if "/users/by/username/" in url:
            return {"data": {"id": "42", "name": "RWS verkeersinfo"}}
        return {"data": self.posts}


def _enricher(
    client: FakeXClient, *, token: str = "secret", now: list[float] | None = None, **kwargs: Any
) -> PostEnricher:
    clock_now = now if now is not None else [NOW.timestamp()]
    return PostEnricher(
        client=client,  # type: ignore[arg-type]
        bearer_token=token,
        api_bases=BASES,
        clock=lambda: clock_now[0],
        **kwargs,
    )


def test_road_pattern_matches_whole_token_forms() -> None:
    pattern = road_pattern("A58")

    assert pattern.search("file op A58")
    assert pattern.search("file op a 58")
    assert pattern.search("file op A-58.")
    assert not pattern.search("file op A580")
    assert not pattern.search("file op BA58")


def test_most_recent_post_within_an_hour_wins() -> None:
    post = latest_post_for_road(POSTS, "A58", now=NOW, max_age=timedelta(hours=1), account="RWSverkeersinfo")

    assert post is not None
    assert post.id == "900"
    assert post.url == "https://x.com/RWSverkeersinfo/status/900"

    assert latest_post_for_road(POSTS, "A2", now=NOW, max_age=timedelta(hours=1), account="x") is None
    assert latest_post_for_road(POSTS, "N35", now=NOW, max_age=timedelta(hours=1), account="x") is None


def test_enrich_attaches_post_to_every_jam_on_the_road() -> None:
    client = FakeXClient()
    enricher = _enricher(client)
    events = [_event("j1", "A58"), _event("j2", "A58"), _event("acc", "A58", "accident"), _event("j3", "A2")]

    out = asyncio.run(enricher.enrich(events))

    assert [e.external_url for e in out] == [
        "https://x.com/RWSverkeersinfo/status/900",
        "https://x.com/RWSverkeersinfo/status/900",
        None,
        None,
    ]
    assert out[0].external_posted_at == NOW - timedelta(minutes=5)
    # Input events are not mutated.
    assert events[0].external_url is None
    assert client.auth == {"Bearer secret"}
    tweets_params = client.params[-1]
    assert tweets_params == {"max_results": "20", "exclude": "retweets,replies", "tweet.fields": "created_at"}


def test_posts_are_fetched_once_for_many_roads_and_cached() -> None:
    client = FakeXClient()
    enricher = _enricher(client)
    events = [_event(f"j{i}", f"A{i}") for i in range(1, 30)]

    async def run() -> None:
        await enricher.enrich(events)
        await enricher.enrich(events)

    asyncio.run(run())
    assert len(client.calls) == 2  # one user lookup, one timeline fetch


def test_api_bases_are_tried_in_order() -> None:
    client = FakeXClient(failing_bases={"https://api.x.com/2"})
    enricher = _enricher(client)

    out = asyncio.run(enricher.enrich([_event("j1", "A58")]))

    assert out[0].external_text == "A58 richting Eindhoven: file opgelost"
    assert [url.split("/2/")[0] for url in client.calls] == [
        "https://api.x.com",
        "https://api.twitter.com",
        "https://api.x.com",
        "https://api.twitter.com",
    ]
    assert enricher.last_error().message is None


def test_failures_are_swallowed_and_kept_for_diagnostics() -> None:
    client = FakeXClient(failing_bases=set(BASES))
    enricher = _enricher(client)
    events = [_event("j1", "A58")]

    out = asyncio.run(enricher.enrich(events))

    assert out == events
    diagnostics = enricher.last_error()
    assert diagnostics.at == NOW
    assert diagnostics.message is not None and "user id lookup" in diagnostics.message


def test_gate_skips_lookups_without_token_or_jams() -> None:
    client = FakeXClient()

    asyncio.run(_enricher(client, token="").enrich([_event("j1", "A58")]))
    asyncio.run(_enricher(client).enrich([_event("acc", "A58", "accident")]))

    assert client.calls == []


def test_road_cache_expires_after_ttl() -> None:
    client = FakeXClient()
    now = [NOW.timestamp()]
    enricher = _enricher(client, now=now)

    async def run() -> None:
        await enricher.enrich([_event("j1", "A58")])
        now[0] += 301
        await enricher.enrich([_event("j1", "A58")])

    asyncio.run(run())
    assert sum(1 for url in client.calls if url.endswith("/tweets")) == 2


def test_x_calls_are_not_retried_per_base() -> None:
    client = FakeXClient(failing_bases=set(BASES))

    asyncio.run(_enricher(client).enrich([_event("j1", "A58")]))

    assert client.attempts == {1}
    assert len(client.calls) == len(BASES)


def test_slow_api_is_cut_off_and_recorded() -> None:
    client = FakeXClient(delay_s=5.0)
    enricher = _enricher(client, enrich_timeout_s=0.05)
    events = [_event("j1", "A58")]

    async def run() -> tuple[list[TrafficEvent], float]:
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        out = await enricher.enrich(events)
        return out, loop.time() - t0

    out, elapsed = asyncio.run(run())

    assert out == events
    assert elapsed < 1.0
    message = enricher.last_error().message
    assert message is not None and "timed out" in message
