"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...config import settings
from ...services.routing.providers import check_health

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


@router.get("/health/routing", status_code=status.HTTP_200_OK)
async def health_routing() -> dict:
    """Probe the configured OSRM backend with a short route."""
    healthy = await check_health(settings.osrm_base_url, settings.osrm_profile)
    return {"service": "osrm", "base_url": settings.osrm_base_url, "healthy": healthy}
