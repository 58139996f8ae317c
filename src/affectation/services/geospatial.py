"""Geospatial helper functions."""

from __future__ import annotations

import math
from typing import Callable, Iterable, TypeVar

from shapely.geometry import Point, Polygon, box

from ..models.domain import GeoPoint

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.0

T = TypeVar("T")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_km(a.lat, a.lon, b.lat, b.lon)


def bearing_degrees(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the initial bearing from (lat1, lon1) to (lat2, lon2)."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_lambda = math.radians(lon2 - lon1)
    y = math.sin(delta_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda)
    bearing = math.degrees(math.atan2(y, x))
    return (bearing + 360) % 360


def angular_difference(bearing_a: float, bearing_b: float) -> float:
    """Smallest angle between two bearings, in [0, 180]."""

    diff = abs(bearing_a - bearing_b) % 360
    return min(diff, 360 - diff)


def cone_angle(anchor: GeoPoint, reference: GeoPoint, candidate: GeoPoint) -> float:
    """Angle at ``anchor`` between the directions of ``reference`` and ``candidate``."""

    reference_bearing = bearing_degrees(anchor.lat, anchor.lon, reference.lat, reference.lon)
    candidate_bearing = bearing_degrees(anchor.lat, anchor.lon, candidate.lat, candidate.lon)
    return angular_difference(reference_bearing, candidate_bearing)


def bounding_box(lat: float, lon: float, radius_km: float) -> Polygon:
    """Axis-aligned (lon, lat) box covering a radius around a point.

    Longitude half-width is corrected by the cosine of the latitude.
    """

    lat_delta = radius_km / KM_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    lon_delta = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return box(lon - lon_delta, lat - lat_delta, lon + lon_delta, lat + lat_delta)


def is_in_bounding_box(lat: float, lon: float, area: Polygon) -> bool:
    return area.covers(Point(lon, lat))


def nearest_within(
    reference: GeoPoint,
    items: Iterable[T],
    locate: Callable[[T], GeoPoint | None],
    *,
    max_distance_km: float,
    limit: int | None = None,
) -> list[tuple[T, float]]:
    """Return ``(item, distance_km)`` for items within ``max_distance_km``, nearest first.

    Items are first screened with a bounding box, then filtered with the exact
    haversine distance. Items without a location are skipped. Ties keep input order.
    """

    area = bounding_box(reference.lat, reference.lon, max_distance_km)
    survivors: list[tuple[T, float]] = []
    for item in items:
        point = locate(item)
        if point is None or not is_in_bounding_box(point.lat, point.lon, area):
            continue
        distance = distance_between(reference, point)
        if distance <= max_distance_km:
            survivors.append((item, distance))
    survivors.sort(key=lambda entry: entry[1])
    if limit is not None:
        survivors = survivors[:limit]
    return survivors

