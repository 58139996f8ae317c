"""Geocode and route caches: storage backends plus the repository enforcing upsert rules."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from ..models.domain import (
    GeoConfidence,
    GeocodeCacheEntry,
    GeoPoint,
    GeoPrecision,
    GeoStatus,
    RouteCacheEntry,
    utcnow,
)
from ..services.hashing import hash_address, hash_route_key, normalize_address, round_coord

logger = logging.getLogger(__name__)

MANUAL_PROVIDER = "manual"


class CacheStore(Protocol):
    """Key-value contract consumed by the resolvers."""

    def get_geocode(self, address_hash: str) -> Optional[GeocodeCacheEntry]: ...

    def get_route(self, route_key_hash: str) -> Optional[RouteCacheEntry]: ...

    def put_geocode(self, entry: GeocodeCacheEntry) -> None: ...

    def put_route(self, entry: RouteCacheEntry) -> None: ...

    def delete_geocode(self, address_hash: str) -> bool: ...

    def delete_route(self, route_key_hash: str) -> bool: ...

    def list_geocode(self, status: Optional[GeoStatus] = None) -> list[GeocodeCacheEntry]: ...

    def list_routes(self) -> list[RouteCacheEntry]: ...


class InMemoryCacheStore:
    """Dictionary-backed store; the default when no cache file is configured."""

    def __init__(self) -> None:
        self._geocode: dict[str, GeocodeCacheEntry] = {}
        self._routes: dict[str, RouteCacheEntry] = {}

    def get_geocode(self, address_hash: str) -> Optional[GeocodeCacheEntry]:
        return self._geocode.get(address_hash)

    def get_route(self, route_key_hash: str) -> Optional[RouteCacheEntry]:
        return self._routes.get(route_key_hash)

    def put_geocode(self, entry: GeocodeCacheEntry) -> None:
        self._geocode[entry.address_hash] = entry

    def put_route(self, entry: RouteCacheEntry) -> None:
        self._routes[entry.route_key_hash] = entry

    def delete_geocode(self, address_hash: str) -> bool:
        return self._geocode.pop(address_hash, None) is not None

    def delete_route(self, route_key_hash: str) -> bool:
        return self._routes.pop(route_key_hash, None) is not None

    def list_geocode(self, status: Optional[GeoStatus] = None) -> list[GeocodeCacheEntry]:
        entries = list(self._geocode.values())
        if status is None:
            return entries
        return [entry for entry in entries if entry.status is status]

    def list_routes(self) -> list[RouteCacheEntry]:
        return list(self._routes.values())


def _geocode_to_dict(entry: GeocodeCacheEntry) -> dict[str, Any]:
    data = asdict(entry)
    data["confidence"] = entry.confidence.value
    data["status"] = entry.status.value
    data["precision"] = entry.precision.value if entry.precision else None
    data["created_at"] = entry.created_at.isoformat()
    data["updated_at"] = entry.updated_at.isoformat()
    return data


def _geocode_from_dict(data: dict[str, Any]) -> GeocodeCacheEntry:
    precision = data.get("precision")
    return GeocodeCacheEntry(
        address_hash=data["address_hash"],
        original_address=data.get("original_address", ""),
        normalized_address=data.get("normalized_address", ""),
        lat=float(data.get("lat", 0.0)),
        lon=float(data.get("lon", 0.0)),
        provider=data.get("provider", ""),
        confidence=GeoConfidence(data.get("confidence", GeoConfidence.UNKNOWN.value)),
        status=GeoStatus.coerce(data.get("status")),
        precision=GeoPrecision(precision) if precision else None,
        query_used=data.get("query_used"),
        error_message=data.get("error_message"),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def _route_to_dict(entry: RouteCacheEntry) -> dict[str, Any]:
    data = asdict(entry)
    data["created_at"] = entry.created_at.isoformat()
    return data


def _route_from_dict(data: dict[str, Any]) -> RouteCacheEntry:
    return RouteCacheEntry(
        route_key_hash=data["route_key_hash"],
        from_lat=float(data["from_lat"]),
        from_lon=float(data["from_lon"]),
        to_lat=float(data["to_lat"]),
        to_lon=float(data["to_lon"]),
        distance_km=float(data["distance_km"]),
        duration_min=float(data["duration_min"]),
        provider=data["provider"],
        created_at=datetime.fromisoformat(data["created_at"]),
    )


class JsonFileCacheStore(InMemoryCacheStore):
    """In-memory store mirrored to a single JSON document after every write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        for item in payload.get("geocode", []):
            entry = _geocode_from_dict(item)
            self._geocode[entry.address_hash] = entry
        for item in payload.get("routes", []):
            route = _route_from_dict(item)
            self._routes[route.route_key_hash] = route
        logger.debug(
            f"Loaded cache file {self.path}: {len(self._geocode)} geocode, {len(self._routes)} route entries"
        )

    def _flush(self) -> None:
        payload = {
            "geocode": [_geocode_to_dict(entry) for entry in self._geocode.values()],
            "routes": [_route_to_dict(entry) for entry in self._routes.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)

    def put_geocode(self, entry: GeocodeCacheEntry) -> None:
        super().put_geocode(entry)
        self._flush()

    def put_route(self, entry: RouteCacheEntry) -> None:
        super().put_route(entry)
        self._flush()

    def delete_geocode(self, address_hash: str) -> bool:
        removed = super().delete_geocode(address_hash)
        if removed:
            self._flush()
        return removed

    def delete_route(self, route_key_hash: str) -> bool:
        removed = super().delete_route(route_key_hash)
        if removed:
            self._flush()
        return removed


def create_cache_store(path: Optional[Path] = None) -> CacheStore:
    if path is None:
        return InMemoryCacheStore()
    return JsonFileCacheStore(path)


class GeoCacheRepository:
    """Upsert rules for the geocode and route caches.

    Geocode entries only move forward: a failure never replaces a success,
    a coarser precision never replaces a finer one, and manual coordinates
    are never replaced by automatic results. Route entries are written once
    per key.
    """

    def __init__(self, store: Optional[CacheStore] = None) -> None:
        self.store = store or InMemoryCacheStore()

    # Geocode -----------------------------------------------------------------

    def get_geocode(self, address: str) -> Optional[GeocodeCacheEntry]:
        return self.store.get_geocode(hash_address(address))

    def upsert_geocode(
        self,
        address: str,
        *,
        lat: float,
        lon: float,
        provider: str,
        confidence: GeoConfidence,
        status: GeoStatus,
        precision: Optional[GeoPrecision] = None,
        query_used: Optional[str] = None,
        error_message: Optional[str] = None,
        normalized_address: Optional[str] = None,
    ) -> GeocodeCacheEntry:
        address_hash = hash_address(address)
        existing = self.store.get_geocode(address_hash)
        if existing is not None and not self._may_replace(existing, status, precision):
            logger.debug(f"Keeping cached {existing.status.value} entry for {address_hash}")
            return existing

        now = utcnow()
        entry = GeocodeCacheEntry(
            address_hash=address_hash,
            original_address=existing.original_address if existing else address,
            normalized_address=normalized_address or normalize_address(address),
            lat=lat,
            lon=lon,
            provider=provider,
            confidence=confidence,
            status=status,
            precision=precision,
            query_used=query_used,
            error_message=error_message,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.store.put_geocode(entry)
        return entry

    @staticmethod
    def _may_replace(existing: GeocodeCacheEntry, status: GeoStatus, precision: Optional[GeoPrecision]) -> bool:
        if existing.status is GeoStatus.MANUAL:
            return status is GeoStatus.MANUAL
        if not existing.status.has_point:
            return True
        if not status.has_point:
            return False
        if status is GeoStatus.MANUAL:
            return True
        current_rank = existing.precision.rank if existing.precision else GeoPrecision.FULL.rank
        new_rank = precision.rank if precision else GeoPrecision.FULL.rank
        return new_rank >= current_rank

    def set_error(
        self,
        address: str,
        provider: str,
        error_message: str,
        *,
        status: GeoStatus = GeoStatus.ERROR,
    ) -> GeocodeCacheEntry:
        return self.upsert_geocode(
            address,
            lat=0.0,
            lon=0.0,
            provider=provider,
            confidence=GeoConfidence.UNKNOWN,
            status=status,
            precision=GeoPrecision.NONE,
            error_message=error_message,
        )

    def set_manual(self, address: str, lat: float, lon: float) -> GeocodeCacheEntry:
        return self.upsert_geocode(
            address,
            lat=lat,
            lon=lon,
            provider=MANUAL_PROVIDER,
            confidence=GeoConfidence.HIGH,
            status=GeoStatus.MANUAL,
            precision=GeoPrecision.FULL,
        )

    def delete_geocode(self, address: str) -> bool:
        return self.store.delete_geocode(hash_address(address))

    def list_geocode(self, status: Optional[GeoStatus] = None) -> list[GeocodeCacheEntry]:
        return self.store.list_geocode(status)

    def count_by_status(self) -> dict[GeoStatus, int]:
        counts = {status: 0 for status in GeoStatus}
        for entry in self.store.list_geocode():
            counts[entry.status] += 1
        return counts

    def check_addresses(self, addresses: Iterable[str]) -> dict[str, Optional[GeocodeCacheEntry]]:
        return {address: self.get_geocode(address) for address in addresses}

    # Routes ------------------------------------------------------------------

    def get_route(self, origin: GeoPoint, destination: GeoPoint, provider: str) -> Optional[RouteCacheEntry]:
        key = hash_route_key(origin.lat, origin.lon, destination.lat, destination.lon, provider)
        return self.store.get_route(key)

    def put_route(
        self,
        origin: GeoPoint,
        destination: GeoPoint,
        *,
        distance_km: float,
        duration_min: float,
        provider: str,
    ) -> RouteCacheEntry:
        """Insert a route unless the key is already cached; returns the stored entry."""
        key = hash_route_key(origin.lat, origin.lon, destination.lat, destination.lon, provider)
        existing = self.store.get_route(key)
        if existing is not None:
            return existing
        entry = RouteCacheEntry(
            route_key_hash=key,
            from_lat=round_coord(origin.lat),
            from_lon=round_coord(origin.lon),
            to_lat=round_coord(destination.lat),
            to_lon=round_coord(destination.lon),
            distance_km=distance_km,
            duration_min=duration_min,
            provider=provider,
        )
        self.store.put_route(entry)
        return entry

    def list_routes(self) -> list[RouteCacheEntry]:
        return self.store.list_routes()

    def route_stats(self) -> dict[str, Any]:
        routes = self.store.list_routes()
        providers: dict[str, int] = {}
        for entry in routes:
            providers[entry.provider] = providers.get(entry.provider, 0) + 1
        count = len(routes)
        return {
            "count": count,
            "providers": providers,
            "avg_distance_km": sum(entry.distance_km for entry in routes) / count if count else 0.0,
            "avg_duration_min": sum(entry.duration_min for entry in routes) / count if count else 0.0,
        }

    def check_routes(
        self, routes: Iterable[tuple[GeoPoint, GeoPoint]], provider: str
    ) -> dict[str, Optional[RouteCacheEntry]]:
        result: dict[str, Optional[RouteCacheEntry]] = {}
        for origin, destination in routes:
            key = hash_route_key(origin.lat, origin.lon, destination.lat, destination.lon, provider)
            result[key] = self.store.get_route(key)
        return result

    # Maintenance -------------------------------------------------------------

    def prune_older_than(self, max_age_days: int = 30, *, now: Optional[datetime] = None) -> dict[str, int]:
        cutoff = (now or utcnow()) - timedelta(days=max_age_days)
        geo_deleted = 0
        for entry in self.store.list_geocode():
            if entry.updated_at < cutoff and self.store.delete_geocode(entry.address_hash):
                geo_deleted += 1
        route_deleted = 0
        for route in self.store.list_routes():
            if route.created_at < cutoff and self.store.delete_route(route.route_key_hash):
                route_deleted += 1
        logger.info(f"Pruned cache older than {max_age_days} days: {geo_deleted} geocode, {route_deleted} routes")
        return {"geo_deleted": geo_deleted, "route_deleted": route_deleted}
