from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any

from .cache_store import CacheStore
from .errors import EnrichmentError, TrafficSourceError
from .feed_client import FeedClient
from .logging_utils import log_event
from .models import EnrichmentDiagnostics, TrafficEvent, split_road_code
from .units import parse_timestamp

_USER_ID_KEY = "user_id"
_POSTS_KEY = "posts"


@dataclass(frozen=True)
class ExternalPost:
    id: str
    text: str
    created_at: datetime | None
    url: str


@dataclass(frozen=True)
class _RoadMatch:
    post: ExternalPost | None


def road_pattern(road_code: str) -> re.Pattern[str]:
    """Whole-token match for "A58", "A 58" and "A-58"."""
    parts = split_road_code(road_code)
    if parts is None:
        raise ValueError(f"not a road code: {road_code!r}")
    road_type, number = parts
    return re.compile(rf"\b{road_type}\s*[- ]?\s*{number}\b", re.IGNORECASE)


def latest_post_for_road(
    posts: Sequence[dict[str, Any]],
    road_code: str,
    *,
    now: datetime,
    max_age: timedelta,
    account: str,
) -> ExternalPost | None:
    pattern = road_pattern(road_code)
    cutoff = now - max_age
    best: ExternalPost | None = None
    for raw in posts:
        created_at = parse_timestamp(raw.get("created_at"))
        if created_at is None or created_at < cutoff:
            continue
        if not pattern.search(raw["text"]):
            continue
        if best is None or (best.created_at is not None and created_at > best.created_at):
            best = ExternalPost(
                id=raw["id"],
                text=raw["text"],
                created_at=created_at,
                url=f"https://x.com/{account}/status/{raw['id']}",
            )
    return best


class PostEnricher:
    """Attach the account's most recent matching post to jam events, per road code.

    Never raises: failures are logged and kept for ``last_error()``.
    """

    def __init__(
        self,
        *,
        client: FeedClient,
        bearer_token: str,
        account: str = "RWSverkeersinfo",
        api_bases: Sequence[str] = ("https://api.x.com/2", "https://api.twitter.com/2"),
        user_id_ttl_s: float = 86_400.0,
        posts_ttl_s: float = 300.0,
        post_max_age_s: float = 3_600.0,
        request_timeout_s: float = 5.0,
        max_concurrency: int = 8,
        enrich_timeout_s: float = 8.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._token = bearer_token.strip()
        self.account = account
        self.api_bases = [base.rstrip("/") for base in api_bases]
        self.post_max_age = timedelta(seconds=post_max_age_s)
        self.request_timeout_s = request_timeout_s
        self.max_concurrency = max(1, int(max_concurrency))
        self.enrich_timeout_s = float(enrich_timeout_s)
        self._clock = clock
        self._user_ids = CacheStore(ttl_s=user_id_ttl_s, max_entries=4, clock=clock)
        self._posts = CacheStore(ttl_s=posts_ttl_s, max_entries=4, clock=clock)
        self._roads = CacheStore(ttl_s=posts_ttl_s, max_entries=512, clock=clock)
        self._error_lock = Lock()
        self._last_error: EnrichmentDiagnostics | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._token)

    def last_error(self) -> EnrichmentDiagnostics:
        with self._error_lock:
            return self._last_error or EnrichmentDiagnostics()

    def _record_error(self, message: str) -> None:
        with self._error_lock:
            self._last_error = EnrichmentDiagnostics(at=datetime.fromtimestamp(self._clock(), UTC), message=message)
        log_event("enrichment_failed", level=logging.WARNING, error=message)

    def _headers(self) -> dict[str, str]:
        return {"authorization": f"Bearer {self._token}", "accept": "application/json"}

    async def _first_base(self, what: str, call: Callable[[str], Awaitable[Any]]) -> Any:
        last_err: Exception | None = None
        for base in self.api_bases:
            try:
                return await call(base)
            except (TrafficSourceError, ValueError, KeyError, TypeError) as e:
                last_err = e
        raise EnrichmentError(f"{what} failed on every API base: {last_err}") from last_err

    async def _fetch_user_id(self) -> str:
        async def call(base: str) -> str:
            payload = await self._client.get_json(
                f"{base}/users/by/username/{self.account}",
                headers=self._headers(),
                timeout_s=self.request_timeout_s,
                max_attempts=1,
            )
            user_id = payload["data"]["id"]
            if not isinstance(user_id, str) or not user_id:
                raise ValueError("user lookup returned no id")
            return user_id

        return await self._first_base("user id lookup", call)

    async def _fetch_posts(self) -> list[dict[str, Any]]:
        user_id = self._user_ids.get(_USER_ID_KEY)
        if user_id is None:
            user_id = await self._user_ids.single_flight(_USER_ID_KEY, self._fetch_user_id)

        async def call(base: str) -> list[dict[str, Any]]:
            payload = await self._client.get_json(
                f"{base}/users/{user_id}/tweets",
                headers=self._headers(),
                params={"max_results": "20", "exclude": "retweets,replies", "tweet.fields": "created_at"},
                timeout_s=self.request_timeout_s,
                max_attempts=1,
            )
            data = payload.get("data") if isinstance(payload, dict) else None
            return [
                {"id": p["id"], "text": p["text"], "created_at": p.get("created_at")}
                for p in (data if isinstance(data, list) else [])
                if isinstance(p, dict) and isinstance(p.get("id"), str) and isinstance(p.get("text"), str)
            ]

        return await self._first_base("recent posts", call)

    async def _posts_cached(self) -> list[dict[str, Any]]:
        posts = self._posts.get(_POSTS_KEY)
        if posts is None:
            posts = await self._posts.single_flight(_POSTS_KEY, self._fetch_posts)
        return posts

    async def post_for_road(self, road_code: str) -> ExternalPost | None:
        cached: _RoadMatch | None = self._roads.get(road_code)
        if cached is not None:
            return cached.post
        try:
            posts = await self._posts_cached()
        except EnrichmentError as e:
            self._record_error(str(e))
            # Negative result is cached too, so a failing API is not retried per request.
            self._roads.set(road_code, _RoadMatch(post=None))
            return None
        now = datetime.fromtimestamp(self._clock(), UTC)
        post = latest_post_for_road(posts, road_code, now=now, max_age=self.post_max_age, account=self.account)
        self._roads.set(road_code, _RoadMatch(post=post))
        return post

    async def enrich(self, events: Sequence[TrafficEvent]) -> list[TrafficEvent]:
        events = list(events)
        if not self.enabled:
            return events
        road_codes = sorted({e.road_code for e in events if e.category == "jam"})
        if not road_codes:
            return events

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(road_code: str) -> ExternalPost | None:
            async with semaphore:
                return await self.post_for_road(road_code)

        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(bounded(code) for code in road_codes)),
                timeout=self.enrich_timeout_s,
            )
        except TimeoutError:
            self._record_error(f"enrichment timed out after {self.enrich_timeout_s:g}s")
            return events
        except Exception as e:
            self._record_error(f"{type(e).__name__}: {e}")
            return events

        posts = {code: post for code, post in zip(road_codes, results) if post is not None}
        if not posts:
            return events
        return [
            e.model_copy(
                update={
                    "external_text": posts[e.road_code].text,
                    "external_url": posts[e.road_code].url,
                    "external_posted_at": posts[e.road_code].created_at,
                }
            )
            if e.category == "jam" and e.road_code in posts
            else e
            for e in events
        ]

    def clear(self) -> None:
        for store in (self._user_ids, self._posts, self._roads):
            store.clear()
