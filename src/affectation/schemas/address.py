"""Address parsing and geocoding request/response schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class AddressParseRequest(BaseModel):
    address: str = Field(..., description="Free-text postal address.")


class ParsedAddressModel(BaseModel):
    full_address: str
    street: Optional[str] = None
    house_number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    quality: str
    issues: List[str] = Field(default_factory=list)
    city_query: Optional[str] = Field(default=None, description="Degraded 'postal code + city' query.")
    townhall_query: Optional[str] = None
    variant_queries: List[str] = Field(default_factory=list)


class GeocodeRequest(BaseModel):
    address: str = Field(..., min_length=1)
    postal_code: Optional[str] = Field(default=None, description="Overrides the parsed postal code.")
    city: Optional[str] = Field(default=None, description="Overrides the parsed city.")
    force_refresh: bool = False


class GeocodeResponse(BaseModel):
    success: bool
    provider: str
    status: str
    precision: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    confidence: str
    query_used: Optional[str] = None
    error_message: Optional[str] = None
    from_cache: bool = False
