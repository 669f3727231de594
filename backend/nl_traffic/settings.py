from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

IngestionMode = Literal["primary", "scrape_preferred"]
JamSource = Literal["traveltime", "datex"]

_WEEK_S = 7 * 24 * 60 * 60


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping upstream URLs and policy knobs out of code."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="./out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    ingestion_mode: IngestionMode = Field(default="primary", alias="INGESTION_MODE")
    jam_source: JamSource = Field(default="traveltime", alias="JAM_SOURCE")
    snapshot_ttl_s: float = Field(default=120.0, gt=0.0, alias="SNAPSHOT_TTL_S")
    ingest_timeout_s: float = Field(default=8.0, gt=0.0, le=120.0, alias="INGEST_TIMEOUT_S")

    ndw_base_url: str = Field(default="https://opendata.ndw.nu", alias="NDW_BASE_URL")
    ndw_incidents_path: str = Field(default="incidents.xml.gz", alias="NDW_INCIDENTS_PATH")
    ndw_actueel_beeld_path: str = Field(default="actueel_beeld.xml.gz", alias="NDW_ACTUEEL_BEELD_PATH")
    ndw_traveltime_path: str = Field(default="traveltime.xml.gz", alias="NDW_TRAVELTIME_PATH")
    ndw_measurement_path: str = Field(default="measurement_current.xml.gz", alias="NDW_MEASUREMENT_PATH")
    ndw_location_table_zip: str = Field(default="VILD6.13.A.zip", alias="NDW_LOCATION_TABLE_ZIP")
    ndw_location_table_dbf: str = Field(default="VILD6.13.A.dbf", alias="NDW_LOCATION_TABLE_DBF")

    # Location table and measurement-site metadata change rarely upstream.
    reference_table_ttl_s: float = Field(default=float(_WEEK_S), gt=0.0, alias="REFERENCE_TABLE_TTL_S")
    location_table_batch_size: int = Field(default=5000, ge=100, le=100_000, alias="LOCATION_TABLE_BATCH_SIZE")
    reference_fetch_timeout_s: float = Field(default=60.0, ge=1.0, le=600.0, alias="REFERENCE_FETCH_TIMEOUT_S")

    travel_time_max_jams: int = Field(default=200, ge=1, le=10_000, alias="TRAVEL_TIME_MAX_JAMS")
    jam_min_delay_min: int = Field(default=5, ge=0, alias="JAM_MIN_DELAY_MIN")
    jam_delay_bucket_min: int = Field(default=5, ge=1, alias="JAM_DELAY_BUCKET_MIN")
    free_flow_speed_a_kmh: float = Field(default=100.0, gt=0.0, alias="FREE_FLOW_SPEED_A_KMH")
    free_flow_speed_n_kmh: float = Field(default=80.0, gt=0.0, alias="FREE_FLOW_SPEED_N_KMH")

    scrape_url: str = Field(default="https://www.anwb.nl/verkeer/filelijst", alias="SCRAPE_URL")
    scrape_marker_id: str = Field(default="__NEXT_DATA__", alias="SCRAPE_MARKER_ID")
    scrape_distance_meter_threshold: float = Field(default=50.0, ge=0.0, alias="SCRAPE_DISTANCE_METER_THRESHOLD")
    scrape_delay_second_threshold: float = Field(default=180.0, ge=0.0, alias="SCRAPE_DELAY_SECOND_THRESHOLD")

    x_bearer_token: str = Field(default="", alias="X_BEARER_TOKEN")
    x_account: str = Field(default="RWSverkeersinfo", alias="X_ACCOUNT")
    x_api_bases: str = Field(default="https://api.x.com/2,https://api.twitter.com/2", alias="X_API_BASES")
    x_user_id_ttl_s: float = Field(default=86_400.0, gt=0.0, alias="X_USER_ID_TTL_S")
    x_posts_ttl_s: float = Field(default=300.0, gt=0.0, alias="X_POSTS_TTL_S")
    x_post_max_age_s: float = Field(default=3_600.0, gt=0.0, alias="X_POST_MAX_AGE_S")
    x_request_timeout_s: float = Field(default=5.0, ge=0.5, le=60.0, alias="X_REQUEST_TIMEOUT_S")
    x_max_concurrency: int = Field(default=8, ge=1, le=64, alias="X_MAX_CONCURRENCY")
    x_enrich_timeout_s: float = Field(default=8.0, ge=0.5, le=60.0, alias="X_ENRICH_TIMEOUT_S")

    http_request_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="HTTP_REQUEST_TIMEOUT_S")
    http_max_attempts: int = Field(default=3, ge=1, le=10, alias="HTTP_MAX_ATTEMPTS")
    http_retry_backoff_base_ms: int = Field(default=500, ge=0, alias="HTTP_RETRY_BACKOFF_BASE_MS")
    http_retry_backoff_max_ms: int = Field(default=2_000, ge=0, alias="HTTP_RETRY_BACKOFF_MAX_MS")
    http_user_agent: str = Field(default="nl-traffic/0.1 (+https://opendata.ndw.nu)", alias="HTTP_USER_AGENT")

    @model_validator(mode="after")
    def _normalise_urls(self) -> "Settings":
        self.ndw_base_url = self.ndw_base_url.rstrip("/")
        self.x_bearer_token = self.x_bearer_token.strip()
        if self.http_retry_backoff_max_ms < self.http_retry_backoff_base_ms:
            self.http_retry_backoff_max_ms = self.http_retry_backoff_base_ms
        return self

    def ndw_url(self, path: str) -> str:
        return f"{self.ndw_base_url}/{path.lstrip('/')}"

    def x_api_base_list(self) -> list[str]:
        return [part.strip().rstrip("/") for part in self.x_api_bases.split(",") if part.strip()]


settings = Settings()
