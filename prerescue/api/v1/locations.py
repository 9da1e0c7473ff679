"""Location API endpoints for PreRescue v1.

The host application owns location forms and geocoding; these endpoints
let it push the resulting records to the engine and read them back.
Saving a location does not trigger reconciliation.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from prerescue.api.deps import get_service, http_error
from prerescue.models.emergency import Location
from prerescue.services.errors import PreRescueError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/locations", tags=["locations"])


class SaveLocationRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=100)
    label: str = Field(default="", max_length=200)
    city: str | None = Field(default=None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    region_code: str = Field(..., min_length=1, max_length=50)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


@router.put("/{location_id}")
async def save_location(location_id: str, body: SaveLocationRequest, request: Request) -> dict:
    """Create or replace a location record."""
    registry = get_service(request, "location_registry")
    location = await registry.save_location(Location(id=location_id, **body.model_dump()))
    return location.model_dump(mode="json")


@router.get("")
async def list_locations(request: Request, user_id: str | None = None) -> dict:
    registry = get_service(request, "location_registry")
    locations = await registry.list_locations(user_id)
    return {
        "user_id": user_id,
        "locations": [loc.model_dump(mode="json") for loc in locations],
        "count": len(locations),
    }


@router.get("/{location_id}")
async def get_location(location_id: str, request: Request) -> dict:
    registry = get_service(request, "location_registry")
    try:
        location = await registry.get_location(location_id)
    except PreRescueError as exc:
        raise http_error(exc) from None
    return location.model_dump(mode="json")
