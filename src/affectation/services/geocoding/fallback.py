"""Cached geocoding with a relaxing fallback cascade (full address, city, town hall, variants)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import httpx

from ...config import Settings, settings
from ...errors import ErrorKind
from ...models.domain import (
    GeoConfidence,
    GeocodeCacheEntry,
    GeoPoint,
    GeoPrecision,
    GeoProgressState,
    GeoStatus,
    GeoStatusExtended,
    ProgressPhase,
)
from ...persistence.cache import GeoCacheRepository, create_cache_store
from ..address.parser import (
    build_city_query,
    build_townhall_query,
    build_variant_queries,
    clean_city_name,
    parse_address,
)
from .providers import GeocodeProvider, GeocodeResult, create_geocode_provider

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GeoProgressState], None]


@dataclass(slots=True)
class GeocodeFallbackResult:
    success: bool
    provider: str
    status: GeoStatusExtended
    precision: GeoPrecision
    point: Optional[GeoPoint] = None
    confidence: GeoConfidence = GeoConfidence.UNKNOWN
    query_used: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    from_cache: bool = False

    @property
    def geo_status(self) -> GeoStatus:
        if not self.success and self.error_kind is ErrorKind.NOT_FOUND:
            return GeoStatus.NOT_FOUND
        return self.status.to_geo_status()


@dataclass(slots=True)
class GeocodeRequest:
    item_id: str
    address: str
    postal_code: Optional[str] = None
    city: Optional[str] = None


def _from_cache(entry: GeocodeCacheEntry) -> GeocodeFallbackResult:
    precision = entry.precision if entry.precision and entry.precision is not GeoPrecision.NONE else GeoPrecision.FULL
    return GeocodeFallbackResult(
        success=True,
        provider=entry.provider,
        status=GeoStatusExtended.from_precision(precision),
        precision=precision,
        point=entry.point,
        confidence=entry.confidence,
        query_used=entry.query_used or entry.original_address,
        from_cache=True,
    )


class GeocodeResolver:
    """Geocode addresses through one provider instance and one cache repository."""

    def __init__(
        self,
        provider: GeocodeProvider,
        cache: GeoCacheRepository | None = None,
        *,
        attempt_delay_seconds: float | None = None,
    ) -> None:
        self.provider = provider
        self.cache = cache or GeoCacheRepository()
        self.attempt_delay_seconds = (
            attempt_delay_seconds if attempt_delay_seconds is not None else settings.fallback_attempt_delay_seconds
        )

    def _cached_success(self, address: str) -> Optional[GeocodeFallbackResult]:
        cached = self.cache.get_geocode(address)
        if cached is not None and cached.status.has_point:
            logger.debug(f"Geocode cache hit for {address!r}")
            return _from_cache(cached)
        return None

    def _record_success(
        self, address: str, result: GeocodeResult, precision: GeoPrecision, query: str
    ) -> GeocodeFallbackResult:
        point = result.point
        if point is None:
            return self._record_failure(address, result, f"{result.provider} returned no coordinates")
        confidence = result.confidence if precision is GeoPrecision.FULL else GeoConfidence.LOW
        self.cache.upsert_geocode(
            address,
            lat=point.lat,
            lon=point.lon,
            provider=result.provider,
            confidence=confidence,
            status=GeoStatus.OK,
            precision=precision,
            query_used=query,
            normalized_address=result.normalized_address,
        )
        return GeocodeFallbackResult(
            success=True,
            provider=result.provider,
            status=GeoStatusExtended.from_precision(precision),
            precision=precision,
            point=result.point,
            confidence=confidence,
            query_used=query,
        )

    def _record_failure(self, address: str, result: GeocodeResult, message: str) -> GeocodeFallbackResult:
        status = GeoStatus.NOT_FOUND if result.error_kind is ErrorKind.NOT_FOUND else GeoStatus.ERROR
        self.cache.set_error(address, result.provider, message, status=status)
        return GeocodeFallbackResult(
            success=False,
            provider=result.provider,
            status=GeoStatusExtended.ERROR,
            precision=GeoPrecision.NONE,
            query_used=address,
            error_message=message,
            error_kind=result.error_kind,
        )

    @staticmethod
    def _empty_address() -> GeocodeFallbackResult:
        return GeocodeFallbackResult(
            success=False,
            provider="none",
            status=GeoStatusExtended.ERROR,
            precision=GeoPrecision.NONE,
            error_message="Empty address",
            error_kind=ErrorKind.VALIDATION,
        )

    async def geocode_address(self, address: str, *, force_refresh: bool = False) -> GeocodeFallbackResult:
        """Single attempt on the exact address, cached. Used where an exact match is expected."""

        if not address or not address.strip():
            return self._empty_address()
        address = address.strip()
        if not force_refresh:
            cached = self._cached_success(address)
            if cached is not None:
                return cached

        result = await self.provider.geocode(address)
        if result.success and result.point is not None:
            return self._record_success(address, result, GeoPrecision.FULL, address)
        return self._record_failure(address, result, result.error_message or "Address not found")

    async def geocode_with_fallback(
        self,
        address: str,
        *,
        force_refresh: bool = False,
        postal_code: str | None = None,
        city: str | None = None,
    ) -> GeocodeFallbackResult:
        """Resolve ``address`` trying ever coarser queries until one succeeds.

        Tiers: cache, full address, "postal code + city", the town hall, then
        the remaining variants. ``postal_code`` and ``city`` override the parsed
        values. Only a cached success short-circuits; cached failures are retried.
        """

        if not address or not address.strip():
            return self._empty_address()
        address = address.strip()

        if not force_refresh:
            cached = self._cached_success(address)
            if cached is not None:
                return cached

        full_result = await self.provider.geocode(address)
        if full_result.success and full_result.point is not None:
            logger.debug(f"Full address geocoded: {address!r}")
            return self._record_success(address, full_result, GeoPrecision.FULL, address)

        parsed = parse_address(address)
        if postal_code:
            parsed.postal_code = postal_code.strip()
        if city:
            parsed.city = clean_city_name(city)
        if not parsed.has_locality:
            logger.info(f"No city information in {address!r}, giving up")
            return self._record_failure(
                address,
                full_result,
                f"Address not found and no city could be extracted: {full_result.error_message or 'no result'}",
            )

        tiers: list[tuple[GeoPrecision, Optional[str]]] = [
            (GeoPrecision.CITY, build_city_query(parsed)),
            (GeoPrecision.TOWNHALL, build_townhall_query(parsed)),
        ]
        tiers.extend((GeoPrecision.CITY, query) for query in build_variant_queries(parsed))

        tried: set[str] = {address.casefold()}
        for precision, query in tiers:
            if not query or query.casefold() in tried:
                continue
            tried.add(query.casefold())
            if self.attempt_delay_seconds > 0:
                await asyncio.sleep(self.attempt_delay_seconds)
            logger.debug(f"Fallback {precision.value} attempt for {address!r}: {query!r}")
            result = await self.provider.geocode(query)
            if result.success and result.point is not None:
                logger.info(f"Geocoded {address!r} with {precision.value} fallback ({query!r})")
                return self._record_success(address, result, precision, query)

        logger.info(f"Every geocoding attempt failed for {address!r}")
        return self._record_failure(
            address,
            full_result,
            f"Geocoding failed for every attempt: {full_result.error_message or 'address not found'}",
        )

    async def geocode_batch(
        self,
        items: Sequence[GeocodeRequest],
        *,
        on_progress: ProgressCallback | None = None,
        abort_event: asyncio.Event | None = None,
        item_delay: float | None = None,
        use_fallback: bool = True,
        progress: GeoProgressState | None = None,
    ) -> dict[str, GeocodeFallbackResult]:
        """Geocode ``items`` one after the other; stops early once ``abort_event`` is set.

        A caller-owned ``progress`` state is advanced but left open so several
        batches can report as one run.
        """

        delay = item_delay if item_delay is not None else settings.batch_item_delay_seconds
        owns_progress = progress is None
        state = progress or GeoProgressState(phase=ProgressPhase.GEOCODING, total=len(items))
        results: dict[str, GeocodeFallbackResult] = {}
        total = len(items)
        aborted = False
        logger.info(f"Geocoding batch of {total} addresses")
        if owns_progress and on_progress is not None:
            on_progress(state)
        for index, item in enumerate(items):
            if abort_event is not None and abort_event.is_set():
                logger.info(f"Geocoding batch aborted after {index}/{total} items")
                aborted = True
                break
            state.advance(item.address)
            if on_progress is not None:
                on_progress(state)
            if use_fallback:
                result = await self.geocode_with_fallback(item.address, postal_code=item.postal_code, city=item.city)
            else:
                result = await self.geocode_address(item.address)
            results[item.item_id] = result
            if not result.success:
                state.fail(item.address, result.error_message or "Geocoding failed")
            if index < total - 1 and not result.from_cache and delay > 0:
                await asyncio.sleep(delay)
        if owns_progress:
            state.finish(aborted)
            if on_progress is not None:
                on_progress(state)
        logger.info(
            f"Geocoding batch finished: {sum(1 for result in results.values() if result.success)}/{len(results)} resolved"
        )
        return results


def build_geocode_resolver(
    config: Settings | None = None,
    *,
    cache: GeoCacheRepository | None = None,
    client: httpx.AsyncClient | None = None,
) -> GeocodeResolver:
    config = config or settings
    return GeocodeResolver(
        create_geocode_provider(config, client=client),
        cache or GeoCacheRepository(create_cache_store(config.cache_file)),
        attempt_delay_seconds=config.fallback_attempt_delay_seconds,
    )
