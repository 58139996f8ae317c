"""Application configuration and settings management."""

from pathlib import Path
from typing import Annotated, Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="AFFECTATION_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Stage Affectation API"
    api_prefix: str = "/api"
    cache_file: Optional[Path] = Field(
        default=None,
        description="JSON file backing the geocode/route cache. In-memory cache when unset.",
    )

    # Geocoding
    geocode_provider: Literal["composite", "ban", "nominatim", "photon"] = Field(
        default="composite",
        description="Geocoding backend used by the resolvers.",
    )
    ban_base_url: str = Field(
        default="https://api-adresse.data.gouv.fr",
        description="French national address API (primary country backend).",
    )
    ban_min_interval_seconds: float = Field(default=0.05, ge=0.0)
    nominatim_base_url: str = Field(default="https://nominatim.openstreetmap.org")
    nominatim_user_agent: Optional[str] = Field(
        default="stage-affectation/1.0",
        description="Identifying user agent required by the Nominatim usage policy.",
    )
    nominatim_min_interval_seconds: float = Field(default=1.0, ge=0.0)
    photon_base_url: str = Field(default="https://photon.komoot.io")
    photon_min_interval_seconds: float = Field(default=0.2, ge=0.0)
    secondary_countries: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("LU", "BE", "DE", "CH"),
        description="Countries routed to the international geocoder.",
    )
    geocode_timeout_seconds: float = Field(default=10.0, gt=0.0)
    fallback_attempt_delay_seconds: float = Field(default=0.3, ge=0.0)
    batch_item_delay_seconds: float = Field(default=0.2, ge=0.0)
    http_max_retries: int = Field(default=2, ge=0, description="Retries for timeouts, network errors and 5xx/429 answers.")
    http_backoff_seconds: float = Field(default=0.5, ge=0.0)

    # Routing
    route_provider: Literal["osrm", "openroute", "estimate"] = Field(default="osrm")
    osrm_base_url: str = Field(
        default="https://router.project-osrm.org",
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "car", "bike", "foot"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_min_interval_seconds: float = Field(default=0.1, ge=0.0)
    openroute_base_url: str = Field(default="https://api.openrouteservice.org")
    openroute_api_key: Optional[str] = Field(default=None)
    openroute_profile: str = Field(default="driving-car")
    openroute_min_interval_seconds: float = Field(default=0.2, ge=0.0)
    route_timeout_seconds: float = Field(default=15.0, gt=0.0)
    route_item_delay_seconds: float = Field(default=0.1, ge=0.0)
    road_factor: float = Field(default=1.3, ge=1.0, description="Road distortion applied to great-circle distances.")
    average_speed_kmh: float = Field(default=50.0, gt=0.0)

    # Matching defaults
    weight_duration: float = Field(default=60.0, ge=0.0)
    weight_distance: float = Field(default=20.0, ge=0.0)
    weight_balance: float = Field(default=20.0, ge=0.0)
    weight_affinity: float = Field(default=0.0, ge=0.0)
    max_duration_min: Optional[float] = Field(default=60.0, ge=0.0)
    max_distance_km: Optional[float] = Field(default=50.0, ge=0.0)
    max_candidates_per_stage: int = Field(default=10, ge=1)
    pruning_radius_km: float = Field(default=100.0, gt=0.0)
    use_local_search: bool = True
    local_search_max_iterations: int = Field(default=50, ge=0)
    local_search_timeout_seconds: float = Field(default=3.0, ge=0.0)
    cone_half_angle_deg: float = Field(default=45.0, gt=0.0, le=180.0)

    frontend_allowed_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    @field_validator("cache_file", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Optional[Path]:
        if value is None or value == "":
            return None
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("frontend_allowed_origins", "secondary_countries", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
