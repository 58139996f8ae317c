import pytest
from fastapi.testclient import TestClient

from src.affectation.api.dependencies import get_geocode_resolver, get_route_resolver
from src.affectation.errors import ConfigurationError, NotFoundError
from src.affectation.main import create_app
from src.affectation.models.domain import GeoConfidence, GeoPoint
from src.affectation.persistence.cache import GeoCacheRepository
from src.affectation.services.geocoding.fallback import GeocodeResolver
from src.affectation.services.geocoding.providers import GeocodeProvider, GeocodeResult
from src.affectation.services.routing.providers import EstimateRouteProvider
from src.affectation.services.routing.service import RouteResolver


class StaticGeocoder(GeocodeProvider):
    name = "static"

    known = {
        "57000 Metz": GeoPoint(49.1193, 6.1757),
        "4 rue Serpenoise, 57000 Metz": GeoPoint(49.1170, 6.1730),
    }

    async def _lookup(self, address: str) -> GeocodeResult:
        if address not in self.known:
            raise NotFoundError("Address not found", provider=self.name)
        return GeocodeResult(success=True, provider=self.name, point=self.known[address], confidence=GeoConfidence.HIGH)


@pytest.fixture
def api_client() -> TestClient:
    app = create_app()
    cache = GeoCacheRepository()
    geocode_resolver = GeocodeResolver(StaticGeocoder(), cache, attempt_delay_seconds=0)
    route_resolver = RouteResolver(EstimateRouteProvider(), cache)
    app.dependency_overrides[get_geocode_resolver] = lambda: geocode_resolver
    app.dependency_overrides[get_route_resolver] = lambda: route_resolver
    return TestClient(app)


def test_health(api_client: TestClient):
    response = api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_parse_address_endpoint(api_client: TestClient):
    response = api_client.post("/api/address/parse", json={"address": "12 Rue Victor Hugo, 57000 Metz"})

    assert response.status_code == 200
    body = response.json()
    assert body["city"] == "Metz"
    assert body["postal_code"] == "57000"
    assert body["country"] == "FR"
    assert body["quality"] == "complete"
    assert body["townhall_query"] == "Mairie de Metz"


def test_geocode_endpoint_uses_fallback_and_cache(api_client: TestClient):
    payload = {"address": "99 rue Inconnue, 57000 Metz"}

    first = api_client.post("/api/geocode", json=payload).json()
    second = api_client.post("/api/geocode", json=payload).json()

    assert first["success"] is True
    assert first["precision"] == "CITY"
    assert first["status"] == "OK_CITY_FALLBACK"
    assert first["from_cache"] is False
    assert second["from_cache"] is True
    assert (second["lat"], second["lon"]) == (first["lat"], first["lon"])


def test_geocode_endpoint_reports_configuration_errors():
    app = create_app()

    def _broken() -> GeocodeResolver:
        raise ConfigurationError("OpenRouteService requires an API key.")

    app.dependency_overrides[get_geocode_resolver] = _broken
    response = TestClient(app).post("/api/geocode", json={"address": "1 rue A, 57000 Metz"})

    assert response.status_code == 503
    assert "API key" in response.json()["detail"]


def test_solve_endpoint(api_client: TestClient):
    payload = {
        "stages": [
            {"id": "S1", "student_id": "E1", "lat": 49.12, "lon": 6.17},
            {"id": "S2", "student_id": "E2", "lat": 49.36, "lon": 6.17},
        ],
        "teachers": [
            {"id": "T1", "last_name": "Martin", "first_name": "Anne", "capacity": 1, "lat": 49.12, "lon": 6.18},
            {"id": "T2", "last_name": "Durand", "first_name": "Paul", "capacity": 1, "lat": 49.35, "lon": 6.16},
        ],
        "pairs": [
            {"teacher_id": "T1", "stage_id": "S1", "distance_km": 2.0, "duration_min": 5.0},
            {"teacher_id": "T2", "stage_id": "S2", "distance_km": 3.0, "duration_min": 6.0},
            {"teacher_id": "T1", "stage_id": "S2", "distance_km": 30.0, "duration_min": 28.0},
        ],
        "options": {"use_local_search": False},
    }

    response = api_client.post("/api/matching/solve", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert {item["stage_id"]: item["teacher_id"] for item in body["assignments"]} == {"S1": "T1", "S2": "T2"}
    assert all(item["phase"] == 1 for item in body["assignments"])
    assert body["unassigned"] == []
    assert body["stats"]["total_assigned"] == 2
    assert body["assignments"][0]["lat"] == 49.12


def test_solve_endpoint_honours_threshold_and_anchor_options(api_client: TestClient):
    stages = [{"id": f"S{index}", "student_id": f"E{index}", "lat": 49.12, "lon": 6.17} for index in range(4)]
    teachers = [
        {"id": "A", "capacity": 10, "lat": 49.12, "lon": 6.18},
        {"id": "B", "capacity": 10, "lat": 49.13, "lon": 6.18},
    ]
    pairs = [
        {"teacher_id": tid, "stage_id": stage["id"], "distance_km": 8.0, "duration_min": 10.0}
        for stage in stages
        for tid in ("A", "B")
    ]
    weights = {"weight_duration": 0, "weight_distance": 0, "weight_balance": 100, "weight_affinity": 0}

    def loads(options: dict) -> dict[str, int]:
        body = api_client.post(
            "/api/matching/solve", json={"stages": stages, "teachers": teachers, "pairs": pairs, "options": options}
        ).json()
        counts: dict[str, int] = {}
        for item in body["assignments"]:
            counts[item["teacher_id"]] = counts.get(item["teacher_id"], 0) + 1
        return counts

    assert loads({**weights, "improvement_threshold": 1.0}) == {"A": 2, "B": 2}
    assert loads({**weights, "improvement_threshold": 1000.0}) == {"A": 3, "B": 1}

    lone = {
        "stages": [{"id": "NORTH", "student_id": "E9", "lat": 49.5, "lon": 6.0}],
        "teachers": [{"id": "T1", "capacity": 2, "lat": 49.3, "lon": 6.0}],
        "pairs": [],
    }
    base = {"anchor": {"lat": 49.0, "lon": 6.0}, "balance_fallback_enabled": False}
    disabled = api_client.post(
        "/api/matching/solve", json={**lone, "options": {**base, "anchor_fallback_enabled": False}}
    ).json()
    enabled = api_client.post("/api/matching/solve", json={**lone, "options": base}).json()

    assert disabled["assignments"] == []
    assert enabled["assignments"][0]["phase"] == 3


def test_solve_endpoint_reports_unassigned_reasons(api_client: TestClient):
    payload = {
        "stages": [{"id": "S1", "student_id": "E1", "lat": 49.12, "lon": 6.17}],
        "teachers": [{"id": "T1", "capacity": 0, "lat": 49.12, "lon": 6.18}],
        "pairs": [{"teacher_id": "T1", "stage_id": "S1", "distance_km": 2.0, "duration_min": 5.0}],
    }

    body = api_client.post("/api/matching/solve", json=payload).json()

    assert body["assignments"] == []
    assert body["unassigned"][0]["reasons"] == ["Maximum capacity reached"]


def test_run_endpoint_geocodes_routes_and_solves(api_client: TestClient):
    payload = {
        "stages": [{"id": "S1", "student_id": "E1", "address": "4 rue Serpenoise, 57000 Metz"}],
        "teachers": [{"id": "T1", "last_name": "Martin", "capacity": 2, "lat": 49.13, "lon": 6.16}],
    }

    response = api_client.post("/api/matching/run", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["assignments"][0]["teacher_id"] == "T1"
    assert body["geocoding"]["stages_ok_full"] == 1
    assert body["routing"]["total"] == 1
    assert "pairs" not in body["routing"]
