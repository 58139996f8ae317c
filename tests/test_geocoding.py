import asyncio
import time

import httpx
import pytest

from src.affectation.config import Settings
from src.affectation.errors import ConfigurationError, ErrorKind, NotFoundError, ProviderError
from src.affectation.models.domain import GeoConfidence, GeoPoint, GeoPrecision, GeoStatus, GeoStatusExtended
from src.affectation.persistence.cache import GeoCacheRepository
from src.affectation.services.geocoding.fallback import GeocodeRequest, GeocodeResolver, build_geocode_resolver
from src.affectation.services.geocoding.providers import (
    BanProvider,
    CompositeGeocodeProvider,
    GeocodeProvider,
    GeocodeResult,
    NominatimProvider,
    PhotonProvider,
    create_geocode_provider,
)
from src.affectation.services.http import MinIntervalThrottle

METZ = GeoPoint(49.1193, 6.1757)
MAIRIE = GeoPoint(49.1196, 6.1763)


class FakeGeocoder(GeocodeProvider):
    """Answers only the queries it knows; records every query it receives."""

    name = "fake"

    def __init__(self, known: dict[str, GeoPoint] | None = None, fail_with: Exception | None = None):
        self.known = dict(known or {})
        self.fail_with = fail_with
        self.calls: list[str] = []

    async def _lookup(self, address: str) -> GeocodeResult:
        self.calls.append(address)
        if self.fail_with is not None:
            raise self.fail_with
        point = self.known.get(address)
        if point is None:
            raise NotFoundError("Address not found", provider=self.name)
        return GeocodeResult(success=True, provider=self.name, point=point, confidence=GeoConfidence.HIGH)


def _resolver(provider: GeocodeProvider, cache: GeoCacheRepository | None = None) -> GeocodeResolver:
    return GeocodeResolver(provider, cache or GeoCacheRepository(), attempt_delay_seconds=0)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# Providers --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ban_provider_parses_feature_and_confidence():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/search/"
        assert request.url.params["q"] == "12 Rue Victor Hugo, 57000 Metz"
        return httpx.Response(
            200,
            json={
                "features": [
                    {
                        "geometry": {"coordinates": [6.1757, 49.1193]},
                        "properties": {"type": "housenumber", "label": "12 Rue Victor Hugo 57000 Metz"},
                    }
                ]
            },
        )

    async with _client(handler) as client:
        provider = BanProvider("https://ban.test", min_interval_seconds=0, max_retries=0, client=client)
        result = await provider.geocode("12 Rue Victor Hugo, 57000 Metz")

    assert result.success
    assert result.point == METZ
    assert result.confidence is GeoConfidence.HIGH
    assert result.normalized_address == "12 Rue Victor Hugo 57000 Metz"


@pytest.mark.asyncio
async def test_ban_provider_converts_failures_to_results():
    async with _client(lambda request: httpx.Response(200, json={"features": []})) as client:
        provider = BanProvider("https://ban.test", min_interval_seconds=0, max_retries=0, client=client)
        not_found = await provider.geocode("nowhere")
    async with _client(lambda request: httpx.Response(503)) as client:
        provider = BanProvider("https://ban.test", min_interval_seconds=0, max_retries=0, client=client)
        unavailable = await provider.geocode("somewhere")

    assert not not_found.success
    assert not_found.error_kind is ErrorKind.NOT_FOUND
    assert not unavailable.success
    assert unavailable.error_kind is ErrorKind.PROVIDER


@pytest.mark.asyncio
async def test_provider_retries_server_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"features": [{"geometry": {"coordinates": [6.0, 49.0]}, "properties": {}}]})

    async with _client(handler) as client:
        provider = BanProvider(
            "https://ban.test", min_interval_seconds=0, max_retries=1, backoff_seconds=0, client=client
        )
        result = await provider.geocode("1 rue A, 57000 Metz")

    assert result.success
    assert result.confidence is GeoConfidence.UNKNOWN
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retries_respect_minimum_interval():
    sent_at = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent_at.append(time.monotonic())
        if len(sent_at) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[{"lat": "49.6", "lon": "6.13", "class": "place", "type": "city"}])

    async with _client(handler) as client:
        provider = NominatimProvider(
            "https://osm.test",
            user_agent="tests/1.0",
            min_interval_seconds=0.2,
            max_retries=1,
            backoff_seconds=0,
            client=client,
        )
        result = await provider.geocode("Luxembourg")

    assert result.success
    assert len(sent_at) == 2
    assert sent_at[1] - sent_at[0] >= 0.19


@pytest.mark.asyncio
async def test_malformed_coordinates_become_a_provider_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"features": [{"geometry": {"coordinates": [6.0]}, "properties": {}}]})

    async with _client(handler) as client:
        provider = BanProvider("https://ban.test", min_interval_seconds=0, max_retries=0, client=client)
        direct = await provider.geocode("1 rue A, 57000 Metz")
        cascaded = await _resolver(provider).geocode_with_fallback("1 rue A, 57000 Metz")

    assert not direct.success
    assert direct.error_kind is ErrorKind.PROVIDER
    assert not cascaded.success
    assert cascaded.geo_status is GeoStatus.ERROR


@pytest.mark.asyncio
async def test_empty_address_is_a_validation_failure():
    result = await FakeGeocoder().geocode("   ")

    assert not result.success
    assert result.error_kind is ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_nominatim_sends_user_agent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["agent"] = request.headers["User-Agent"]
        seen["countries"] = request.url.params["countrycodes"]
        return httpx.Response(200, json=[{"lat": "49.6", "lon": "6.13", "class": "place", "type": "city"}])

    async with _client(handler) as client:
        provider = NominatimProvider(
            "https://osm.test", user_agent="tests/1.0", country_codes=["FR", "LU"], min_interval_seconds=0, client=client
        )
        result = await provider.geocode("Luxembourg")

    assert seen == {"agent": "tests/1.0", "countries": "fr,lu"}
    assert result.point == GeoPoint(49.6, 6.13)
    assert result.confidence is GeoConfidence.LOW


@pytest.mark.asyncio
async def test_photon_classifies_street_level_results():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "features": [
                    {
                        "geometry": {"coordinates": [6.17, 49.12]},
                        "properties": {"osm_key": "highway", "type": "street", "street": "Rue X", "city": "Metz"},
                    }
                ]
            },
        )

    async with _client(handler) as client:
        provider = PhotonProvider("https://photon.test", min_interval_seconds=0, client=client)
        result = await provider.geocode("Rue X, Metz")

    assert result.confidence is GeoConfidence.MEDIUM
    assert result.normalized_address == "Rue X, Metz"


def test_nominatim_without_user_agent_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        NominatimProvider(user_agent="")
    with pytest.raises(ConfigurationError):
        create_geocode_provider(Settings(geocode_provider="composite", nominatim_user_agent=""))


def test_create_geocode_provider_builds_composite():
    provider = create_geocode_provider(Settings(geocode_provider="composite"))

    assert isinstance(provider, CompositeGeocodeProvider)
    assert isinstance(provider.primary, BanProvider)
    assert isinstance(provider.secondary, NominatimProvider)


@pytest.mark.asyncio
async def test_composite_routes_by_country():
    primary = FakeGeocoder({"1 rue A, 57000 Metz": METZ})
    secondary = FakeGeocoder({"1 rue B, L-1458 Luxembourg": GeoPoint(49.6, 6.1)})
    composite = CompositeGeocodeProvider(primary, secondary, ["LU"])

    french = await composite.geocode("1 rue A, 57000 Metz")
    luxembourgish = await composite.geocode("1 rue B, L-1458 Luxembourg")

    assert french.success and luxembourgish.success
    assert primary.calls == ["1 rue A, 57000 Metz"]
    assert secondary.calls == ["1 rue B, L-1458 Luxembourg"]


@pytest.mark.asyncio
async def test_composite_falls_back_only_when_country_unknown_and_nothing_found():
    primary = FakeGeocoder()
    secondary = FakeGeocoder({"Rue Principale": GeoPoint(49.6, 6.1)})
    composite = CompositeGeocodeProvider(primary, secondary, ["LU"])

    result = await composite.geocode("Rue Principale")
    french_miss = await composite.geocode("Rue Inconnue, 57000 Metz")

    assert result.success and result.provider == "fake"
    assert secondary.calls == ["Rue Principale"]
    assert not french_miss.success


@pytest.mark.asyncio
async def test_composite_does_not_fall_back_on_provider_error():
    primary = FakeGeocoder(fail_with=ProviderError("down", provider="fake"))
    secondary = FakeGeocoder({"Rue Principale": GeoPoint(49.6, 6.1)})
    composite = CompositeGeocodeProvider(primary, secondary, ["LU"])

    result = await composite.geocode("Rue Principale")

    assert result.error_kind is ErrorKind.PROVIDER
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_throttle_enforces_minimum_interval():
    throttle = MinIntervalThrottle(0.05)
    started = time.monotonic()
    await throttle.wait()
    await throttle.wait()

    assert time.monotonic() - started >= 0.045


# Fallback cascade -------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_address_success_is_cached_and_reused():
    address = "12 Rue Victor Hugo, 57000 Metz"
    provider = FakeGeocoder({address: METZ})
    resolver = _resolver(provider)

    first = await resolver.geocode_with_fallback(address)
    second = await resolver.geocode_with_fallback(address)

    assert first.success and not first.from_cache
    assert first.precision is GeoPrecision.FULL
    assert first.status is GeoStatusExtended.OK_FULL
    assert second.from_cache
    assert second.point == first.point
    assert provider.calls == [address]


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache():
    address = "12 Rue Victor Hugo, 57000 Metz"
    provider = FakeGeocoder({address: METZ})
    resolver = _resolver(provider)

    await resolver.geocode_with_fallback(address)
    refreshed = await resolver.geocode_with_fallback(address, force_refresh=True)

    assert not refreshed.from_cache
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_no_city_information_stops_after_full_address():
    provider = FakeGeocoder()
    resolver = _resolver(provider)

    result = await resolver.geocode_with_fallback("12 Rue Victor Hugo")

    assert not result.success
    assert result.status is GeoStatusExtended.ERROR
    assert result.precision is GeoPrecision.NONE
    assert provider.calls == ["12 Rue Victor Hugo"]
    assert resolver.cache.get_geocode("12 Rue Victor Hugo").status is GeoStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_city_fallback_tier():
    provider = FakeGeocoder({"57000 Metz": METZ})
    resolver = _resolver(provider)

    result = await resolver.geocode_with_fallback("12 Rue Inconnue, 57000 Metz")

    assert result.success
    assert result.precision is GeoPrecision.CITY
    assert result.status is GeoStatusExtended.OK_CITY_FALLBACK
    assert result.confidence is GeoConfidence.LOW
    assert result.query_used == "57000 Metz"
    assert provider.calls == ["12 Rue Inconnue, 57000 Metz", "57000 Metz"]


@pytest.mark.asyncio
async def test_townhall_fallback_tier():
    provider = FakeGeocoder({"Mairie de Metz": MAIRIE})
    resolver = _resolver(provider)

    result = await resolver.geocode_with_fallback("12 Rue Inconnue, 57000 Metz")

    assert result.precision is GeoPrecision.TOWNHALL
    assert result.status is GeoStatusExtended.OK_TOWNHALL_FALLBACK
    assert provider.calls[-1] == "Mairie de Metz"
    assert resolver.cache.get_geocode("12 Rue Inconnue, 57000 Metz").precision is GeoPrecision.TOWNHALL


@pytest.mark.asyncio
async def test_variant_tier_and_exhaustion():
    provider = FakeGeocoder({"Metz": METZ})
    resolver = _resolver(provider)

    found = await resolver.geocode_with_fallback("12 Rue Inconnue, 57000 Metz")
    missing = await resolver.geocode_with_fallback("3 Rue Perdue, 57100 Thionville")

    assert found.precision is GeoPrecision.CITY
    assert found.query_used == "Metz"
    assert not missing.success
    assert missing.precision is GeoPrecision.NONE


@pytest.mark.asyncio
async def test_explicit_city_overrides_parsed_locality():
    provider = FakeGeocoder({"57100 Thionville": GeoPoint(49.3579, 6.1683)})
    resolver = _resolver(provider)

    result = await resolver.geocode_with_fallback("12 Rue Victor Hugo", postal_code="57100", city="thionville")

    assert result.success
    assert result.query_used == "57100 Thionville"


@pytest.mark.asyncio
async def test_later_fallback_success_supersedes_cached_error():
    address = "12 Rue Inconnue, 57000 Metz"
    cache = GeoCacheRepository()
    failing = _resolver(FakeGeocoder(), cache)
    await failing.geocode_with_fallback(address)
    assert cache.get_geocode(address).status is GeoStatus.NOT_FOUND

    result = await _resolver(FakeGeocoder({"57000 Metz": METZ}), cache).geocode_with_fallback(address)

    assert result.success
    assert cache.get_geocode(address).status is GeoStatus.OK


@pytest.mark.asyncio
async def test_cached_success_survives_failed_refresh():
    address = "12 Rue Victor Hugo, 57000 Metz"
    cache = GeoCacheRepository()
    await _resolver(FakeGeocoder({address: METZ}), cache).geocode_with_fallback(address)

    failed = await _resolver(FakeGeocoder(fail_with=ProviderError("down", provider="fake")), cache).geocode_with_fallback(
        address, force_refresh=True
    )

    assert not failed.success
    entry = cache.get_geocode(address)
    assert entry.status is GeoStatus.OK
    assert entry.point == METZ


@pytest.mark.asyncio
async def test_geocode_address_does_not_relax_query():
    provider = FakeGeocoder({"57000 Metz": METZ})
    resolver = _resolver(provider)

    result = await resolver.geocode_address("12 Rue Inconnue, 57000 Metz")

    assert not result.success
    assert provider.calls == ["12 Rue Inconnue, 57000 Metz"]


@pytest.mark.asyncio
async def test_batch_is_sequential_and_reports_progress():
    provider = FakeGeocoder({"1 rue A, 57000 Metz": METZ})
    resolver = _resolver(provider)
    snapshots = []

    results = await resolver.geocode_batch(
        [GeocodeRequest("s1", "1 rue A, 57000 Metz"), GeocodeRequest("s2", "12 Rue Victor Hugo")],
        on_progress=lambda state: snapshots.append((state.phase.value, state.current, len(state.errors))),
        item_delay=0,
    )

    assert results["s1"].success
    assert not results["s2"].success
    assert snapshots[-1] == ("done", 2, 1)


@pytest.mark.asyncio
async def test_batch_stops_when_aborted():
    provider = FakeGeocoder({"1 rue A, 57000 Metz": METZ})
    resolver = _resolver(provider)
    abort = asyncio.Event()
    abort.set()

    results = await resolver.geocode_batch([GeocodeRequest("s1", "1 rue A, 57000 Metz")], abort_event=abort)

    assert results == {}
    assert provider.calls == []


def test_build_geocode_resolver_uses_settings():
    resolver = build_geocode_resolver(Settings(geocode_provider="ban", fallback_attempt_delay_seconds=0.0))

    assert isinstance(resolver.provider, BanProvider)
    assert resolver.attempt_delay_seconds == 0.0
