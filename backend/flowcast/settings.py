from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_osrm_base_url() -> str:
    # In docker-compose, OSRM is reachable by service name "osrm".
    return "http://osrm:5000" if _running_in_docker() else "http://localhost:5000"


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping tuning constants out of the managers."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Directions provider
    osrm_base_url: str = Field(default_factory=_default_osrm_base_url, alias="OSRM_BASE_URL")
    osrm_profile_automobile: str = Field(default="driving", alias="OSRM_PROFILE_AUTOMOBILE")
    osrm_profile_walking: str = Field(default="foot", alias="OSRM_PROFILE_WALKING")
    osrm_profile_cycling: str = Field(default="bike", alias="OSRM_PROFILE_CYCLING")
    # OSRM has no public transit profile; empty means the mode is reported as unsupported.
    osrm_profile_transit: str = Field(default="", alias="OSRM_PROFILE_TRANSIT")
    directions_timeout_s: float = Field(default=15.0, ge=1.0, le=120.0, alias="DIRECTIONS_TIMEOUT_S")
    provider_min_interval_s: float = Field(default=0.0, ge=0.0, le=60.0, alias="PROVIDER_MIN_INTERVAL_S")

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Route request queue
    route_rate_limit_max_retries: int = Field(default=3, ge=0, le=10, alias="ROUTE_RATE_LIMIT_MAX_RETRIES")
    route_retry_delay_cap_s: float = Field(default=5.0, ge=0.0, le=60.0, alias="ROUTE_RETRY_DELAY_CAP_S")
    route_retry_fallback_delay_s: float = Field(
        default=5.0,
        ge=0.0,
        le=60.0,
        alias="ROUTE_RETRY_FALLBACK_DELAY_S",
    )
    route_queue_cooldown_s: float = Field(default=0.5, ge=0.0, le=10.0, alias="ROUTE_QUEUE_COOLDOWN_S")
    location_fix_attempts: int = Field(default=20, ge=1, le=600, alias="LOCATION_FIX_ATTEMPTS")
    location_fix_poll_s: float = Field(default=0.1, ge=0.0, le=5.0, alias="LOCATION_FIX_POLL_S")

    # Navigation session
    step_advance_threshold_m: float = Field(default=20.0, gt=0.0, le=500.0, alias="STEP_ADVANCE_THRESHOLD_M")
    map_region_span_deg: float = Field(default=0.05, gt=0.0, le=90.0, alias="MAP_REGION_SPAN_DEG")

    # Position filtering
    position_min_distance_m: float = Field(default=5.0, ge=0.0, le=1_000.0, alias="POSITION_MIN_DISTANCE_M")
    heading_min_delta_deg: float = Field(default=5.0, ge=0.0, le=180.0, alias="HEADING_MIN_DELTA_DEG")

    # Synthetic traffic
    traffic_refresh_interval_s: float = Field(default=120.0, ge=1.0, alias="TRAFFIC_REFRESH_INTERVAL_S")
    traffic_min_interval_s: float = Field(default=120.0, ge=0.0, alias="TRAFFIC_MIN_INTERVAL_S")
    traffic_bearing_count: int = Field(default=6, ge=1, le=36, alias="TRAFFIC_BEARING_COUNT")
    traffic_radius_deg: float = Field(default=0.01, gt=0.0, le=1.0, alias="TRAFFIC_RADIUS_DEG")
    traffic_max_requests_per_cycle: int = Field(default=10, ge=1, le=50, alias="TRAFFIC_MAX_REQUESTS_PER_CYCLE")
    traffic_queue_delay_s: float = Field(default=0.5, ge=0.0, le=10.0, alias="TRAFFIC_QUEUE_DELAY_S")
    traffic_seed: int | None = Field(default=None, alias="TRAFFIC_SEED")
    traffic_forecast_days: int = Field(default=5, ge=1, le=14, alias="TRAFFIC_FORECAST_DAYS")

    # Saved trips
    trips_dir: str = Field(default="", alias="TRIPS_DIR")

    # HTTP shell identity
    identity_header: str = Field(default="x-user-id", alias="IDENTITY_HEADER")

    @model_validator(mode="after")
    def _normalize(self) -> "Settings":
        self.osrm_base_url = self.osrm_base_url.rstrip("/")
        self.log_level = (self.log_level or "INFO").strip().upper()
        self.osrm_profile_transit = self.osrm_profile_transit.strip()
        return self


settings = Settings()
