"""Address parsing and geocoding endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...schemas.address import AddressParseRequest, GeocodeRequest, GeocodeResponse, ParsedAddressModel
from ...services.address.parser import (
    build_city_query,
    build_townhall_query,
    build_variant_queries,
    parse_address,
)
from ...services.geocoding.fallback import GeocodeResolver
from ..dependencies import get_geocode_resolver

router = APIRouter(tags=["address"])


@router.post("/address/parse", response_model=ParsedAddressModel, status_code=status.HTTP_200_OK)
def parse(payload: AddressParseRequest) -> ParsedAddressModel:
    parsed = parse_address(payload.address)
    return ParsedAddressModel(
        full_address=parsed.full_address,
        street=parsed.street,
        house_number=parsed.house_number,
        postal_code=parsed.postal_code,
        city=parsed.city,
        country=parsed.country.value if parsed.country else None,
        quality=parsed.quality.value,
        issues=[issue.value for issue in parsed.issues],
        city_query=build_city_query(parsed),
        townhall_query=build_townhall_query(parsed),
        variant_queries=build_variant_queries(parsed),
    )


@router.post("/geocode", response_model=GeocodeResponse, status_code=status.HTTP_200_OK)
async def geocode(
    payload: GeocodeRequest,
    resolver: GeocodeResolver = Depends(get_geocode_resolver),
) -> GeocodeResponse:
    """Geocode one address with the fallback cascade."""
    result = await resolver.geocode_with_fallback(
        payload.address,
        force_refresh=payload.force_refresh,
        postal_code=payload.postal_code,
        city=payload.city,
    )
    return GeocodeResponse(
        success=result.success,
        provider=result.provider,
        status=result.status.value,
        precision=result.precision.value,
        lat=result.point.lat if result.point else None,
        lon=result.point.lon if result.point else None,
        confidence=result.confidence.value,
        query_used=result.query_used,
        error_message=result.error_message,
        from_cache=result.from_cache,
    )
