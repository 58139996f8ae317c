"""Resolver instances shared by the HTTP layer.

Each is built once from settings; tests swap them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from ..config import settings
from ..persistence.cache import GeoCacheRepository, create_cache_store
from ..services.geocoding.fallback import GeocodeResolver, build_geocode_resolver
from ..services.routing.service import RouteResolver, build_route_resolver


@lru_cache(maxsize=1)
def get_cache_repository() -> GeoCacheRepository:
    return GeoCacheRepository(create_cache_store(settings.cache_file))


@lru_cache(maxsize=1)
def get_geocode_resolver() -> GeocodeResolver:
    return build_geocode_resolver(settings, cache=get_cache_repository())


@lru_cache(maxsize=1)
def get_route_resolver() -> RouteResolver:
    return build_route_resolver(settings, cache=get_cache_repository())
