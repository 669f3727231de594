from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial

from .datex import DatexFeedParser
from .errors import TrafficSourceError
from .feed_client import FeedClient
from .logging_utils import log_event
from .models import TrafficEvent
from .settings import JamSource
from .travel_time import TravelTimeJamDetector


class PrimaryFeed:
    """Jam half and incident half of the NDW open-data feeds, fetched concurrently.

    A failing jam half degrades to "no jams" (logged); a failing incident half
    fails the whole ingestion.
    """

    def __init__(
        self,
        *,
        client: FeedClient,
        parser: DatexFeedParser,
        incidents_url: str,
        jam_source: JamSource = "traveltime",
        jam_detector: TravelTimeJamDetector | None = None,
        jams_url: str | None = None,
    ) -> None:
        self._client = client
        self._parser = parser
        self.incidents_url = incidents_url
        self.jam_source = jam_source
        self.jams_url = jams_url
        self._jam_half: Callable[[], Awaitable[list[TrafficEvent]]]
        if jam_source == "datex":
            if not jams_url:
                raise ValueError("jam_source='datex' requires jams_url")
            self._jam_half = partial(self._datex, jams_url, "jams")
        else:
            if jam_detector is None:
                raise ValueError("jam_source='traveltime' requires a jam_detector")
            self._jam_half = jam_detector.detect

    async def _datex(self, url: str, feed_kind: str) -> list[TrafficEvent]:
        feed = await self._client.get_bytes(url)
        return await self._parser.parse(feed, feed_kind, source_url=url)  # type: ignore[arg-type]

    async def _tolerant(self, loader: Callable[[], Awaitable[list[TrafficEvent]]]) -> list[TrafficEvent]:
        try:
            return await loader()
        except TrafficSourceError as e:
            log_event(
                "jam_source_failed",
                level=logging.WARNING,
                jam_source=self.jam_source,
                reason_code=e.reason_code,
                error=str(e),
            )
            return []

    async def fetch(self) -> list[TrafficEvent]:
        # Both halves settle before anything is merged or raised.
        jams, incidents = await asyncio.gather(
            self._tolerant(self._jam_half),
            self._datex(self.incidents_url, "incidents"),
            return_exceptions=True,
        )
        if isinstance(incidents, BaseException):
            raise incidents
        if isinstance(jams, BaseException):
            raise jams
        return [*jams, *incidents]
