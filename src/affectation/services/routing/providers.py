"""Routing backends answering ``get_route(origin, destination)``."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ...config import Settings, settings
from ...errors import (
    AffectationError,
    ConfigurationError,
    ErrorKind,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from ...models.domain import GeoPoint, RouteMetrics
from ..geospatial import distance_between
from ..http import HttpProviderMixin

logger = logging.getLogger(__name__)

# Metz to Thionville, the route used by the health check.
HEALTH_CHECK_ORIGIN = GeoPoint(49.1193, 6.1757)
HEALTH_CHECK_DESTINATION = GeoPoint(49.3579, 6.1683)


@dataclass(slots=True)
class RouteResult:
    success: bool
    provider: str
    metrics: Optional[RouteMetrics] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    from_cache: bool = False

    @classmethod
    def failure(cls, provider: str, error: AffectationError) -> "RouteResult":
        return cls(success=False, provider=provider, error_message=str(error), error_kind=ErrorKind.of(error))


def _validate_point(point: GeoPoint) -> None:
    if not (-90.0 <= point.lat <= 90.0) or not (-180.0 <= point.lon <= 180.0):
        raise ValidationError(f"Invalid coordinates ({point.lat}, {point.lon})")


class RouteProvider(ABC):
    name = "router"

    async def get_route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        """Road distance and duration between two points. Never raises for backend failures."""
        try:
            _validate_point(origin)
            _validate_point(destination)
            return await self._route(origin, destination)
        except (ValidationError, ProviderError, NotFoundError) as error:
            logger.debug(f"{self.name} route failed: {error}")
            return RouteResult.failure(self.name, error)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as error:
            logger.warning(f"{self.name} returned a malformed route answer: {error!r}")
            return RouteResult.failure(
                self.name, ProviderError(f"{self.name} returned a malformed response", provider=self.name)
            )

    @abstractmethod
    async def _route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        """Query the backend. Raise ``NotFoundError`` when no route exists."""


class OsrmRouteProvider(HttpProviderMixin, RouteProvider):
    """OSRM ``route`` service, public demo server or self-hosted."""

    name = "osrm"

    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        *,
        min_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.osrm_base_url).rstrip("/")
        if not self.base_url:
            raise ConfigurationError("OSRM base URL is not configured.")
        self.profile = profile or settings.osrm_profile
        self._init_http(
            min_interval_seconds=(
                min_interval_seconds if min_interval_seconds is not None else settings.osrm_min_interval_seconds
            ),
            timeout_seconds=timeout_seconds or settings.route_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else settings.http_backoff_seconds,
            client=client,
        )

    async def _route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        # OSRM expects lon,lat order.
        coordinates = f"{origin.lon},{origin.lat};{destination.lon},{destination.lat}"
        data = await self._get_json(
            f"{self.base_url}/route/v1/{self.profile}/{coordinates}",
            params={"overview": "false"},
            headers={"Accept": "application/json"},
        )
        if data.get("code") != "Ok" or not data.get("routes"):
            raise NotFoundError(data.get("message") or "No route found", provider=self.name)
        route = data["routes"][0]
        return RouteResult(
            success=True,
            provider=self.name,
            metrics=RouteMetrics(
                distance_km=float(route["distance"]) / 1000.0,
                duration_min=float(route["duration"]) / 60.0,
                provider=self.name,
            ),
        )


class OpenRouteProvider(HttpProviderMixin, RouteProvider):
    """OpenRouteService directions API (requires an API key)."""

    name = "openroute"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        profile: str | None = None,
        *,
        min_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openroute_api_key
        if not self.api_key:
            raise ConfigurationError("OpenRouteService requires an API key.")
        self.base_url = (base_url or settings.openroute_base_url).rstrip("/")
        self.profile = profile or settings.openroute_profile
        self._init_http(
            min_interval_seconds=(
                min_interval_seconds if min_interval_seconds is not None else settings.openroute_min_interval_seconds
            ),
            timeout_seconds=timeout_seconds or settings.route_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else settings.http_backoff_seconds,
            client=client,
        )

    async def _route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        data = await self._request_json(
            "POST",
            f"{self.base_url}/v2/directions/{self.profile}",
            headers={"Authorization": self.api_key, "Accept": "application/json"},
            json_body={"coordinates": [[origin.lon, origin.lat], [destination.lon, destination.lat]]},
        )
        if not data.get("routes"):
            raise NotFoundError("No route found", provider=self.name)
        summary = data["routes"][0].get("summary") or {}
        return RouteResult(
            success=True,
            provider=self.name,
            metrics=RouteMetrics(
                distance_km=float(summary.get("distance", 0.0)) / 1000.0,
                duration_min=float(summary.get("duration", 0.0)) / 60.0,
                provider=self.name,
            ),
        )


def estimate_metrics(
    origin: GeoPoint,
    destination: GeoPoint,
    *,
    road_factor: float | None = None,
    average_speed_kmh: float | None = None,
    provider: str = "estimate",
) -> RouteMetrics:
    """Great-circle distance inflated by a road factor, driven at a constant average speed."""

    factor = road_factor if road_factor is not None else settings.road_factor
    speed = average_speed_kmh if average_speed_kmh is not None else settings.average_speed_kmh
    road_distance = distance_between(origin, destination) * factor
    return RouteMetrics(
        distance_km=round(road_distance, 2),
        duration_min=round(road_distance / speed * 60.0, 1),
        provider=provider,
    )


class EstimateRouteProvider(RouteProvider):
    """Offline estimate; never fails for valid coordinates."""

    name = "estimate"

    def __init__(self, road_factor: float | None = None, average_speed_kmh: float | None = None) -> None:
        self.road_factor = road_factor if road_factor is not None else settings.road_factor
        self.average_speed_kmh = average_speed_kmh if average_speed_kmh is not None else settings.average_speed_kmh

    async def _route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        return RouteResult(
            success=True,
            provider=self.name,
            metrics=estimate_metrics(
                origin,
                destination,
                road_factor=self.road_factor,
                average_speed_kmh=self.average_speed_kmh,
                provider=self.name,
            ),
        )


def create_route_provider(
    config: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> RouteProvider:
    """Build the configured routing backend. Raises ``ConfigurationError`` on unusable settings."""

    config = config or settings
    common = {
        "timeout_seconds": config.route_timeout_seconds,
        "max_retries": config.http_max_retries,
        "backoff_seconds": config.http_backoff_seconds,
        "client": client,
    }
    if config.route_provider == "osrm":
        return OsrmRouteProvider(
            config.osrm_base_url,
            config.osrm_profile,
            min_interval_seconds=config.osrm_min_interval_seconds,
            **common,
        )
    if config.route_provider == "openroute":
        return OpenRouteProvider(
            config.openroute_api_key or "",
            config.openroute_base_url,
            config.openroute_profile,
            min_interval_seconds=config.openroute_min_interval_seconds,
            **common,
        )
    if config.route_provider == "estimate":
        return EstimateRouteProvider(config.road_factor, config.average_speed_kmh)
    logger.error(f"Unknown route provider: {config.route_provider}")
    raise ConfigurationError(f"Unknown route provider: {config.route_provider}")


async def check_health(
    base_url: str | None = None,
    profile: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """True when the OSRM backend answers a short test route."""

    provider = OsrmRouteProvider(base_url, profile, min_interval_seconds=0.0, max_retries=0, client=client)
    result = await provider.get_route(HEALTH_CHECK_ORIGIN, HEALTH_CHECK_DESTINATION)
    if not result.success:
        logger.warning(f"OSRM health check failed: {result.error_message}")
    return result.success
