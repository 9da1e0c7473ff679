"""User-facing emergency API endpoints for PreRescue v1.

Self-reported safety status, the "am I affected" query used by alert
banners, and the briefing consumed by the chat and voice agents.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from prerescue.api.deps import get_service, http_error
from prerescue.services.errors import PreRescueError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class StatusReportRequest(BaseModel):
    status: str = Field(
        ...,
        description="One of: safe, needs_help, at_home, evacuated, unknown",
    )
    notes: str | None = Field(default=None, max_length=2000)
    location: str | None = Field(default=None, max_length=500, description="Where the user is right now")


@router.post("/{user_id}/emergencies/{emergency_id}/status")
async def report_status(
    user_id: str,
    emergency_id: str,
    body: StatusReportRequest,
    request: Request,
) -> dict:
    """Record the user's own safety status for an emergency.

    A self-report always replaces an automatic ``unknown`` row.
    """
    reconciler = get_service(request, "reconciler")
    try:
        row = await reconciler.on_user_reports_status(
            user_id,
            emergency_id,
            body.status,
            notes=body.notes,
            location_text=body.location,
        )
    except PreRescueError as exc:
        raise http_error(exc) from None
    return {"ok": True, "status": row.model_dump(mode="json")}


@router.get("/{user_id}/statuses")
async def list_user_statuses(user_id: str, request: Request) -> dict:
    statuses = get_service(request, "status_store")
    rows = await statuses.list_by_user(user_id)
    rows.sort(key=lambda r: r.updated_at, reverse=True)
    return {
        "user_id": user_id,
        "statuses": [r.model_dump(mode="json") for r in rows],
        "count": len(rows),
    }


@router.get("/{user_id}/affected")
async def get_affected(user_id: str, request: Request) -> dict:
    """Active emergencies that currently cover any of the user's locations."""
    query = get_service(request, "affected_query")
    emergencies = await query.list_affecting_emergencies(user_id)
    return {
        "user_id": user_id,
        "affected": bool(emergencies),
        "emergencies": [e.model_dump(mode="json") for e in emergencies],
    }


@router.get("/{user_id}/briefing")
async def get_briefing(user_id: str, request: Request) -> dict:
    """Emergency context for the chat and voice agents."""
    service = get_service(request, "briefing")
    briefing = await service.build(user_id)
    return {
        **briefing.model_dump(mode="json"),
        "prompt_context": briefing.to_prompt_context(),
    }
