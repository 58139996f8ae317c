import pytest

from src.affectation.models.domain import GeoPoint
from src.affectation.services.geospatial import (
    angular_difference,
    bearing_degrees,
    bounding_box,
    cone_angle,
    distance_between,
    haversine_km,
    is_in_bounding_box,
    nearest_within,
)

METZ = GeoPoint(49.1193, 6.1757)
THIONVILLE = GeoPoint(49.3579, 6.1683)
NANCY = GeoPoint(48.6921, 6.1844)


def test_haversine_zero_and_symmetric():
    assert haversine_km(METZ.lat, METZ.lon, METZ.lat, METZ.lon) == 0
    assert distance_between(METZ, THIONVILLE) == distance_between(THIONVILLE, METZ)
    assert distance_between(METZ, THIONVILLE) == pytest.approx(26.5, abs=1.0)


def test_bearing_cardinal_directions():
    assert bearing_degrees(49.0, 6.0, 50.0, 6.0) == pytest.approx(0.0, abs=1e-9)
    assert bearing_degrees(49.0, 6.0, 48.0, 6.0) == pytest.approx(180.0, abs=1e-9)
    assert bearing_degrees(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0, abs=1e-9)


def test_angular_difference_wraps_around():
    assert angular_difference(350.0, 10.0) == pytest.approx(20.0)
    assert angular_difference(10.0, 190.0) == pytest.approx(180.0)
    assert angular_difference(90.0, 90.0) == 0


def test_point_on_reference_bearing_is_inside_cone():
    anchor = GeoPoint(49.0, 6.0)
    reference = GeoPoint(49.5, 6.0)
    on_axis = GeoPoint(49.2, 6.0)

    assert cone_angle(anchor, reference, on_axis) == pytest.approx(0.0, abs=1e-9)


def test_point_at_opposite_bearing_is_outside_cone():
    anchor = GeoPoint(49.0, 6.0)
    reference = GeoPoint(49.5, 6.0)
    opposite = GeoPoint(48.5, 6.0)

    assert cone_angle(anchor, reference, opposite) == pytest.approx(180.0, abs=1e-9)


def test_bounding_box_widens_longitude_with_latitude():
    area = bounding_box(49.0, 6.0, 50.0)
    min_lon, min_lat, max_lon, max_lat = area.bounds

    assert max_lat - 49.0 == pytest.approx(50.0 / 111.0)
    assert max_lon - 6.0 > max_lat - 49.0
    assert is_in_bounding_box(49.1, 6.1, area)
    assert not is_in_bounding_box(51.0, 6.0, area)


def test_nearest_within_filters_sorts_and_truncates():
    items = {"nancy": NANCY, "thionville": THIONVILLE, "nowhere": None, "paris": GeoPoint(48.8566, 2.3522)}

    result = nearest_within(METZ, list(items), items.get, max_distance_km=100.0, limit=1)
    assert [name for name, _ in result] == ["thionville"]

    result = nearest_within(METZ, list(items), items.get, max_distance_km=100.0)
    assert [name for name, _ in result] == ["thionville", "nancy"]
    assert result[0][1] < result[1][1]
