from datetime import timedelta
from pathlib import Path

from src.affectation.models.domain import GeoConfidence, GeoPoint, GeoPrecision, GeoStatus, utcnow
from src.affectation.persistence.cache import (
    GeoCacheRepository,
    InMemoryCacheStore,
    JsonFileCacheStore,
    create_cache_store,
)
from src.affectation.services.hashing import hash_address, hash_route_key, normalize_address

ADDRESS = "12 Rue Victor Hugo, 57000 Metz"


def _ok(repo: GeoCacheRepository, precision: GeoPrecision, lat: float = 49.1, lon: float = 6.17):
    return repo.upsert_geocode(
        ADDRESS,
        lat=lat,
        lon=lon,
        provider="ban",
        confidence=GeoConfidence.HIGH,
        status=GeoStatus.OK,
        precision=precision,
        query_used=ADDRESS,
    )


def test_normalize_and_hash_ignore_case_accents_and_spacing():
    assert normalize_address("  Hôtel de Ville,  METZ! ") == "hotel de ville, metz"
    assert hash_address("12 Rue Victor-Hugo, Metz") == hash_address("12  rue victor-hugo,  METZ")
    assert hash_address("1 rue A, Metz") != hash_address("2 rue A, Metz")
    assert hash_address("x").startswith("addr_")


def test_route_key_rounds_coordinates_and_includes_provider():
    key = hash_route_key(49.1193001, 6.1757001, 49.3579, 6.1683, "osrm")

    assert key == hash_route_key(49.1193, 6.1757, 49.3579, 6.1683, "osrm")
    assert key != hash_route_key(49.1193, 6.1757, 49.3579, 6.1683, "openroute")
    assert key != hash_route_key(49.3579, 6.1683, 49.1193, 6.1757, "osrm")
    assert key.startswith("route_osrm_")


def test_error_never_overwrites_success():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.FULL)

    kept = repo.set_error(ADDRESS, "ban", "timeout")

    assert kept.status is GeoStatus.OK
    assert repo.get_geocode(ADDRESS).lat == 49.1


def test_success_supersedes_cached_error():
    repo = GeoCacheRepository()
    repo.set_error(ADDRESS, "ban", "not found", status=GeoStatus.NOT_FOUND)

    entry = _ok(repo, GeoPrecision.CITY)

    assert entry.status is GeoStatus.OK
    assert entry.precision is GeoPrecision.CITY
    assert repo.count_by_status()[GeoStatus.NOT_FOUND] == 0


def test_precision_only_moves_forward():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.CITY, lat=49.0)

    assert _ok(repo, GeoPrecision.TOWNHALL, lat=48.0).lat == 49.0
    assert _ok(repo, GeoPrecision.FULL, lat=49.2).precision is GeoPrecision.FULL
    assert _ok(repo, GeoPrecision.CITY, lat=47.0).lat == 49.2


def test_manual_coordinates_win_and_stick():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.FULL)

    manual = repo.set_manual(ADDRESS, 49.5, 6.5)
    after = _ok(repo, GeoPrecision.FULL, lat=40.0)

    assert manual.status is GeoStatus.MANUAL
    assert after.status is GeoStatus.MANUAL
    assert repo.get_geocode(ADDRESS).point == GeoPoint(49.5, 6.5)


def test_upsert_keeps_creation_time_and_original_address():
    repo = GeoCacheRepository()
    first = repo.set_error(ADDRESS, "ban", "down")
    second = repo.upsert_geocode(
        ADDRESS.upper(),
        lat=1.0,
        lon=2.0,
        provider="ban",
        confidence=GeoConfidence.LOW,
        status=GeoStatus.OK,
        precision=GeoPrecision.CITY,
    )

    assert second.created_at == first.created_at
    assert second.original_address == ADDRESS


def test_route_is_written_once_per_key():
    repo = GeoCacheRepository()
    origin, destination = GeoPoint(49.1193, 6.1757), GeoPoint(49.3579, 6.1683)

    repo.put_route(origin, destination, distance_km=30.0, duration_min=25.0, provider="osrm")
    repo.put_route(origin, destination, distance_km=99.0, duration_min=99.0, provider="osrm")

    cached = repo.get_route(origin, destination, "osrm")
    assert cached.distance_km == 30.0
    assert repo.get_route(destination, origin, "osrm") is None
    stats = repo.route_stats()
    assert stats["count"] == 1
    assert stats["providers"] == {"osrm": 1}
    assert stats["avg_duration_min"] == 25.0


def test_check_helpers_report_cached_items():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.FULL)
    origin, destination = GeoPoint(49.0, 6.0), GeoPoint(49.1, 6.1)
    repo.put_route(origin, destination, distance_km=1.0, duration_min=1.0, provider="osrm")

    addresses = repo.check_addresses([ADDRESS, "Unknown"])
    routes = repo.check_routes([(origin, destination), (destination, origin)], "osrm")

    assert addresses[ADDRESS] is not None
    assert addresses["Unknown"] is None
    assert sum(1 for entry in routes.values() if entry is not None) == 1


def test_list_geocode_by_status():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.FULL)
    repo.set_error("1 rue Perdue", "ban", "not found", status=GeoStatus.NOT_FOUND)

    assert len(repo.list_geocode()) == 2
    assert [entry.original_address for entry in repo.list_geocode(GeoStatus.NOT_FOUND)] == ["1 rue Perdue"]


def test_prune_older_than_removes_stale_entries():
    repo = GeoCacheRepository()
    _ok(repo, GeoPrecision.FULL)
    repo.put_route(GeoPoint(49.0, 6.0), GeoPoint(49.1, 6.1), distance_km=1.0, duration_min=1.0, provider="osrm")

    assert repo.prune_older_than(30) == {"geo_deleted": 0, "route_deleted": 0}
    result = repo.prune_older_than(30, now=utcnow() + timedelta(days=31))

    assert result == {"geo_deleted": 1, "route_deleted": 1}
    assert repo.list_geocode() == []
    assert repo.list_routes() == []


def test_json_file_store_persists_between_instances(tmp_path: Path):
    path = tmp_path / "cache" / "geo.json"
    repo = GeoCacheRepository(JsonFileCacheStore(path))
    _ok(repo, GeoPrecision.CITY)
    repo.put_route(GeoPoint(49.0, 6.0), GeoPoint(49.1, 6.1), distance_km=12.5, duration_min=14.0, provider="osrm")

    reloaded = GeoCacheRepository(JsonFileCacheStore(path))

    entry = reloaded.get_geocode(ADDRESS)
    assert path.exists()
    assert entry.status is GeoStatus.OK
    assert entry.precision is GeoPrecision.CITY
    assert entry.confidence is GeoConfidence.HIGH
    assert reloaded.get_route(GeoPoint(49.0, 6.0), GeoPoint(49.1, 6.1), "osrm").distance_km == 12.5


def test_create_cache_store_picks_backend(tmp_path: Path):
    assert isinstance(create_cache_store(), InMemoryCacheStore)
    assert isinstance(create_cache_store(tmp_path / "c.json"), JsonFileCacheStore)
