from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .datex import DatexFeedParser, RoadCodeResolver
from .enrichment import PostEnricher
from .errors import TrafficSourceError, normalize_reason_code
from .event_service import TrafficEventService
from .feed_client import FeedClient
from .location_table import LocationTableResolver
from .logging_utils import log_event
from .measurement_sites import MeasurementSiteResolver
from .metrics_store import metrics_snapshot, record_request
from .models import EnrichmentDiagnostics, EventsResponse
from .primary_feed import PrimaryFeed
from .query import parse_events_query, query_events
from .scrape import ScrapeSource, UnitHeuristics
from .settings import Settings, settings
from .travel_time import JamPolicy, TravelTimeJamDetector


def build_feed_client(cfg: Settings) -> FeedClient:
    return FeedClient(
        timeout_s=cfg.http_request_timeout_s,
        max_attempts=cfg.http_max_attempts,
        backoff_base_ms=cfg.http_retry_backoff_base_ms,
        backoff_max_ms=cfg.http_retry_backoff_max_ms,
        user_agent=cfg.http_user_agent,
    )


def build_event_service(client: FeedClient, cfg: Settings) -> TrafficEventService:
    """Wire the resolvers, sources and enrichment into one service."""
    location_table = LocationTableResolver(
        client=client,
        url=cfg.ndw_url(cfg.ndw_location_table_zip),
        entry_name=cfg.ndw_location_table_dbf,
        ttl_s=cfg.reference_table_ttl_s,
        batch_size=cfg.location_table_batch_size,
        fetch_timeout_s=cfg.reference_fetch_timeout_s,
    )
    sites = MeasurementSiteResolver(
        client=client,
        url=cfg.ndw_url(cfg.ndw_measurement_path),
        location_table=location_table,
        ttl_s=cfg.reference_table_ttl_s,
        fetch_timeout_s=cfg.reference_fetch_timeout_s,
    )
    detector = TravelTimeJamDetector(
        client=client,
        url=cfg.ndw_url(cfg.ndw_traveltime_path),
        sites=sites,
        policy=JamPolicy(
            bucket_min=cfg.jam_delay_bucket_min,
            min_delay_min=cfg.jam_min_delay_min,
            max_jams=cfg.travel_time_max_jams,
            free_flow_speed_a_kmh=cfg.free_flow_speed_a_kmh,
            free_flow_speed_n_kmh=cfg.free_flow_speed_n_kmh,
        ),
    )
    primary = PrimaryFeed(
        client=client,
        parser=DatexFeedParser(RoadCodeResolver.default(location_table)),
        incidents_url=cfg.ndw_url(cfg.ndw_incidents_path),
        jam_source=cfg.jam_source,
        jam_detector=detector,
        jams_url=cfg.ndw_url(cfg.ndw_actueel_beeld_path),
    )
    scrape = ScrapeSource(
        client=client,
        url=cfg.scrape_url,
        marker_id=cfg.scrape_marker_id,
        units=UnitHeuristics(
            distance_meter_threshold=cfg.scrape_distance_meter_threshold,
            delay_second_threshold=cfg.scrape_delay_second_threshold,
        ),
    )
    enricher = PostEnricher(
        client=client,
        bearer_token=cfg.x_bearer_token,
        account=cfg.x_account,
        api_bases=cfg.x_api_base_list(),
        user_id_ttl_s=cfg.x_user_id_ttl_s,
        posts_ttl_s=cfg.x_posts_ttl_s,
        post_max_age_s=cfg.x_post_max_age_s,
        request_timeout_s=cfg.x_request_timeout_s,
        max_concurrency=cfg.x_max_concurrency,
        enrich_timeout_s=cfg.x_enrich_timeout_s,
    )
    return TrafficEventService(
        primary=primary,
        scrape=scrape,
        mode=cfg.ingestion_mode,
        ttl_s=cfg.snapshot_ttl_s,
        ingest_timeout_s=cfg.ingest_timeout_s,
        enricher=enricher,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.feed_client = build_feed_client(settings)
    app.state.events = build_event_service(app.state.feed_client, settings)
    yield
    await app.state.feed_client.aclose()


app = FastAPI(title="NL Traffic Events", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def event_service(request: Request) -> TrafficEventService:
    service: TrafficEventService | None = getattr(request.app.state, "events", None)  # type: ignore[attr-defined]
    if service is None:
        raise HTTPException(status_code=503, detail="event service not initialised")
    return service


EventServiceDep = Annotated[TrafficEventService, Depends(event_service)]


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/events", response_model=EventsResponse)
async def get_events(
    service: EventServiceDep,
    type: Annotated[str | None, Query()] = None,
    road: Annotated[str | None, Query()] = None,
    category: Annotated[str | None, Query()] = None,
    sort: Annotated[str | None, Query()] = None,
) -> EventsResponse:
    t0 = time.perf_counter()
    query = parse_events_query(type=type, road=road, category=category, sort=sort)
    try:
        result = await service.current()
    except TrafficSourceError as e:
        record_request("events", duration_ms=(time.perf_counter() - t0) * 1000, status_code=502)
        raise HTTPException(
            status_code=502,
            detail={"reason_code": normalize_reason_code(e.reason_code), "message": str(e)},
        ) from e

    events = query_events(result.snapshot.events, query)
    duration_ms = round((time.perf_counter() - t0) * 1000, 2)
    record_request("events", duration_ms=duration_ms, stale=result.stale)
    log_event(
        "events_request",
        filters=query.model_dump(exclude_none=True),
        count=len(events),
        stale=result.stale,
        duration_ms=duration_ms,
    )
    return EventsResponse(
        events=events,
        count=len(events),
        fetched_at=result.snapshot.fetched_at,
        stale=result.stale,
        warning=result.warning,
    )


@app.get("/diagnostics/enrichment", response_model=EnrichmentDiagnostics)
async def enrichment_diagnostics(service: EventServiceDep) -> EnrichmentDiagnostics:
    if service.enricher is None:
        return EnrichmentDiagnostics()
    return service.enricher.last_error()


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.delete("/cache")
async def clear_cache(service: EventServiceDep) -> dict[str, int]:
    cleared = service.clear()
    log_event("snapshot_cleared", cleared=cleared)
    return {"cleared": cleared}
