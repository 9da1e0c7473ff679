"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.
"""

from __future__ import annotations

from fastapi import APIRouter

from prerescue.api.v1 import emergencies, health, locations, users

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(emergencies.router)
api_router.include_router(locations.router)
api_router.include_router(users.router)
