"""Geocoding backends: BAN, Nominatim, Photon and the country-routing composite."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

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
from ...models.domain import GeoConfidence, GeoPoint
from ..address.parser import Country, detect_country
from ..http import HttpProviderMixin

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GeocodeResult:
    success: bool
    provider: str
    point: Optional[GeoPoint] = None
    confidence: GeoConfidence = GeoConfidence.UNKNOWN
    normalized_address: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failure(cls, provider: str, error: AffectationError) -> "GeocodeResult":
        return cls(
            success=False,
            provider=provider,
            error_message=str(error),
            error_kind=ErrorKind.of(error),
        )


class GeocodeProvider(ABC):
    """A backend answering ``geocode(address)`` with a structured result.

    ``geocode`` never raises for bad input or backend failures.
    """

    name = "geocoder"

    async def geocode(self, address: str) -> GeocodeResult:
        if not address or not address.strip():
            return GeocodeResult.failure(self.name, ValidationError("Empty address"))
        try:
            return await self._lookup(address.strip())
        except (ValidationError, ProviderError, NotFoundError) as error:
            logger.debug(f"{self.name} could not geocode {address!r}: {error}")
            return GeocodeResult.failure(self.name, error)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as error:
            logger.warning(f"{self.name} returned a malformed answer for {address!r}: {error!r}")
            return GeocodeResult.failure(
                self.name, ProviderError(f"{self.name} returned a malformed response", provider=self.name)
            )

    @abstractmethod
    async def _lookup(self, address: str) -> GeocodeResult:
        """Query the backend. Raise ``NotFoundError`` when nothing matches."""


def _point(lat: Any, lon: Any, provider: str) -> GeoPoint:
    try:
        return GeoPoint(float(lat), float(lon))
    except (TypeError, ValueError) as error:
        raise ProviderError(f"{provider} returned invalid coordinates", provider=provider) from error


class BanProvider(HttpProviderMixin, GeocodeProvider):
    """French national address database (api-adresse.data.gouv.fr)."""

    name = "ban"

    _CONFIDENCE = {
        "housenumber": GeoConfidence.HIGH,
        "street": GeoConfidence.MEDIUM,
        "locality": GeoConfidence.LOW,
        "municipality": GeoConfidence.LOW,
    }

    def __init__(
        self,
        base_url: str | None = None,
        *,
        min_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ban_base_url).rstrip("/")
        self._init_http(
            min_interval_seconds=(
                min_interval_seconds if min_interval_seconds is not None else settings.ban_min_interval_seconds
            ),
            timeout_seconds=timeout_seconds or settings.geocode_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else settings.http_backoff_seconds,
            client=client,
        )

    @classmethod
    def classify(cls, result_type: str | None) -> GeoConfidence:
        return cls._CONFIDENCE.get(result_type or "", GeoConfidence.UNKNOWN)

    async def _lookup(self, address: str) -> GeocodeResult:
        data = await self._get_json(f"{self.base_url}/search/", params={"q": address, "limit": 1})
        features = data.get("features") if isinstance(data, dict) else None
        if not features:
            raise NotFoundError("Address not found", provider=self.name)
        feature = features[0]
        lon, lat = feature["geometry"]["coordinates"][:2]
        properties = feature.get("properties") or {}
        return GeocodeResult(
            success=True,
            provider=self.name,
            point=_point(lat, lon, self.name),
            confidence=self.classify(properties.get("type")),
            normalized_address=properties.get("label"),
        )


class NominatimProvider(HttpProviderMixin, GeocodeProvider):
    """OpenStreetMap Nominatim search; one request per second under the public usage policy."""

    name = "nominatim"

    def __init__(
        self,
        base_url: str | None = None,
        *,
        user_agent: str | None = None,
        country_codes: Sequence[str] | None = None,
        min_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.user_agent = user_agent if user_agent is not None else settings.nominatim_user_agent
        if not self.user_agent or not self.user_agent.strip():
            raise ConfigurationError("Nominatim requires an identifying user agent.")
        self.base_url = (base_url or settings.nominatim_base_url).rstrip("/")
        codes = country_codes if country_codes is not None else (Country.FR.value, *settings.secondary_countries)
        self.country_codes = ",".join(code.lower() for code in codes)
        self._init_http(
            min_interval_seconds=(
                min_interval_seconds if min_interval_seconds is not None else settings.nominatim_min_interval_seconds
            ),
            timeout_seconds=timeout_seconds or settings.geocode_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else settings.http_backoff_seconds,
            client=client,
        )

    @staticmethod
    def classify(place_class: str | None, place_type: str | None) -> GeoConfidence:
        if place_class == "building" or place_type in {"house", "residential", "building"}:
            return GeoConfidence.HIGH
        if place_class == "highway" or place_type in {"street", "road"}:
            return GeoConfidence.MEDIUM
        if place_class in {"place", "boundary"}:
            return GeoConfidence.LOW
        return GeoConfidence.MEDIUM

    async def _lookup(self, address: str) -> GeocodeResult:
        params = {"q": address, "format": "json", "addressdetails": 1, "limit": 1}
        if self.country_codes:
            params["countrycodes"] = self.country_codes
        data = await self._get_json(
            f"{self.base_url}/search",
            params=params,
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
        )
        if not isinstance(data, list) or not data:
            raise NotFoundError("Address not found", provider=self.name)
        result = data[0]
        return GeocodeResult(
            success=True,
            provider=self.name,
            point=_point(result.get("lat"), result.get("lon"), self.name),
            confidence=self.classify(result.get("class"), result.get("type")),
            normalized_address=result.get("display_name"),
        )


class PhotonProvider(HttpProviderMixin, GeocodeProvider):
    """Komoot Photon search, biased towards metropolitan France."""

    name = "photon"

    BIAS_LAT = 46.603354
    BIAS_LON = 1.888334

    def __init__(
        self,
        base_url: str | None = None,
        *,
        min_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.photon_base_url).rstrip("/")
        self._init_http(
            min_interval_seconds=(
                min_interval_seconds if min_interval_seconds is not None else settings.photon_min_interval_seconds
            ),
            timeout_seconds=timeout_seconds or settings.geocode_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else settings.http_backoff_seconds,
            client=client,
        )

    @staticmethod
    def classify(osm_key: str | None, place_type: str | None) -> GeoConfidence:
        if osm_key == "building" or place_type == "house":
            return GeoConfidence.HIGH
        if osm_key == "highway" or place_type == "street":
            return GeoConfidence.MEDIUM
        if osm_key == "place" or place_type in {"city", "town"}:
            return GeoConfidence.LOW
        return GeoConfidence.MEDIUM

    async def _lookup(self, address: str) -> GeocodeResult:
        data = await self._get_json(
            f"{self.base_url}/api",
            params={"q": address, "limit": 1, "lang": "fr", "lat": self.BIAS_LAT, "lon": self.BIAS_LON},
            headers={"Accept": "application/json"},
        )
        features = data.get("features") if isinstance(data, dict) else None
        if not features:
            raise NotFoundError("Address not found", provider=self.name)
        feature = features[0]
        lon, lat = feature["geometry"]["coordinates"][:2]
        properties = feature.get("properties") or {}
        parts = [
            properties.get(key)
            for key in ("housenumber", "street", "postcode", "city", "country")
            if properties.get(key)
        ]
        return GeocodeResult(
            success=True,
            provider=self.name,
            point=_point(lat, lon, self.name),
            confidence=self.classify(properties.get("osm_key"), properties.get("type")),
            normalized_address=", ".join(str(part) for part in parts) or properties.get("name"),
        )


class CompositeGeocodeProvider(GeocodeProvider):
    """Route each address to a backend by detected country.

    France goes to the primary backend, the secondary countries to the
    international one. When the country cannot be detected the primary is
    tried first and the secondary only if the primary found nothing.
    """

    name = "composite"

    def __init__(
        self,
        primary: GeocodeProvider,
        secondary: GeocodeProvider,
        secondary_countries: Sequence[str] | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        countries = secondary_countries if secondary_countries is not None else settings.secondary_countries
        self.secondary_countries = {code.upper() for code in countries}

    def route(self, address: str) -> Optional[GeocodeProvider]:
        """Provider chosen for ``address``; ``None`` when the country is undetermined."""
        country = detect_country(address)
        if country is None:
            return None
        if country.value in self.secondary_countries:
            return self.secondary
        return self.primary

    async def geocode(self, address: str) -> GeocodeResult:
        if not address or not address.strip():
            return GeocodeResult.failure(self.name, ValidationError("Empty address"))
        provider = self.route(address)
        if provider is not None:
            return await provider.geocode(address)
        result = await self.primary.geocode(address)
        if result.success or result.error_kind is not ErrorKind.NOT_FOUND:
            return result
        logger.debug(f"{self.primary.name} found nothing for {address!r}, trying {self.secondary.name}")
        return await self.secondary.geocode(address)

    async def _lookup(self, address: str) -> GeocodeResult:
        return await self.geocode(address)


def create_geocode_provider(
    config: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> GeocodeProvider:
    """Build the configured geocoding backend. Raises ``ConfigurationError`` on unusable settings."""

    config = config or settings
    name = config.geocode_provider
    common = {
        "timeout_seconds": config.geocode_timeout_seconds,
        "max_retries": config.http_max_retries,
        "backoff_seconds": config.http_backoff_seconds,
        "client": client,
    }

    def _ban() -> BanProvider:
        return BanProvider(config.ban_base_url, min_interval_seconds=config.ban_min_interval_seconds, **common)

    def _nominatim() -> NominatimProvider:
        return NominatimProvider(
            config.nominatim_base_url,
            user_agent=config.nominatim_user_agent or "",
            country_codes=(Country.FR.value, *config.secondary_countries),
            min_interval_seconds=config.nominatim_min_interval_seconds,
            **common,
        )

    if name == "ban":
        return _ban()
    if name == "nominatim":
        return _nominatim()
    if name == "photon":
        return PhotonProvider(
            config.photon_base_url, min_interval_seconds=config.photon_min_interval_seconds, **common
        )
    if name == "composite":
        return CompositeGeocodeProvider(_ban(), _nominatim(), config.secondary_countries)
    logger.error(f"Unknown geocode provider: {name}")
    raise ConfigurationError(f"Unknown geocode provider: {name}")
