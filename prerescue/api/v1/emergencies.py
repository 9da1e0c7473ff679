"""Emergency management API endpoints for PreRescue v1.

Operator-facing lifecycle actions (declare, edit, activate, deactivate)
plus reads.  Every lifecycle action is followed by a reconciliation
pass, either scheduled as a background task or run inline depending on
``reconcile_in_background``.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response
from pydantic import BaseModel, Field

from prerescue.api.deps import get_service, http_error
from prerescue.services.errors import PreRescueError
from prerescue.services.reconciler import StatusReconciler
from prerescue.services.registry import EmergencyChange

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/emergencies", tags=["emergencies"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class DeclareEmergencyRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=50, description="e.g. fire, flood, earthquake")
    postal_code: str = Field(..., min_length=1, max_length=20)
    region_code: str = Field(..., min_length=1, max_length=50, description="State or province code")
    radius_miles: float | None = Field(default=None, description="Defaults to the configured radius")
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    description: str | None = Field(default=None, max_length=5000)
    declared_by: str | None = Field(default=None, max_length=100)
    response_directives: str | None = Field(default=None, max_length=10000)
    is_active: bool = True


class EditEmergencyRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    category: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=5000)
    radius_miles: float | None = None
    response_directives: str | None = Field(default=None, max_length=10000)
    postal_code: str | None = Field(default=None, min_length=1, max_length=20)
    region_code: str | None = Field(default=None, min_length=1, max_length=50)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _reconcile_later(reconciler: StatusReconciler, emergency_id: str) -> None:
    try:
        await reconciler.on_emergency_changed(emergency_id)
    except PreRescueError:
        logger.error(
            "api.emergencies.background_reconcile_failed",
            emergency_id=emergency_id,
            exc_info=True,
        )


def _defer(request: Request) -> bool:
    return bool(getattr(request.app.state, "reconcile_in_background", False))


def _change_payload(
    change: EmergencyChange,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    scheduled = False
    if change.reconciliation is None:
        reconciler = get_service(request, "reconciler")
        background_tasks.add_task(_reconcile_later, reconciler, change.emergency.id)
        scheduled = True
    return {
        "emergency": change.emergency.model_dump(mode="json"),
        "reconciliation": change.reconciliation.to_dict() if change.reconciliation else None,
        "reconciliation_scheduled": scheduled,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def declare_emergency(
    body: DeclareEmergencyRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    """Declare a new emergency and reconcile affected users."""
    registry = get_service(request, "emergency_registry")
    try:
        change = await registry.declare(**body.model_dump(), reconcile=not _defer(request))
    except PreRescueError as exc:
        raise http_error(exc) from None
    return _change_payload(change, request, background_tasks)


@router.get("")
async def list_emergencies(request: Request, active_only: bool = False) -> dict:
    """List emergencies, newest first."""
    registry = get_service(request, "emergency_registry")
    emergencies = await (registry.list_active() if active_only else registry.list_all())
    return {
        "emergencies": [e.model_dump(mode="json") for e in emergencies],
        "count": len(emergencies),
    }


@router.get("/{emergency_id}")
async def get_emergency(emergency_id: str, request: Request) -> dict:
    registry = get_service(request, "emergency_registry")
    try:
        emergency = await registry.get(emergency_id)
    except PreRescueError as exc:
        raise http_error(exc) from None
    return emergency.model_dump(mode="json")


@router.patch("/{emergency_id}")
async def edit_emergency(
    emergency_id: str,
    body: EditEmergencyRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    """Edit title, radius, directives or location of an emergency."""
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No editable fields supplied")
    for required in ("title", "category", "postal_code", "region_code"):
        if required in changes and changes[required] is None:
            raise HTTPException(status_code=400, detail=f"'{required}' cannot be cleared")

    registry = get_service(request, "emergency_registry")
    try:
        change = await registry.edit(emergency_id, changes, reconcile=not _defer(request))
    except PreRescueError as exc:
        raise http_error(exc) from None
    return _change_payload(change, request, background_tasks)


@router.post("/{emergency_id}/activate")
async def activate_emergency(
    emergency_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    registry = get_service(request, "emergency_registry")
    try:
        change = await registry.activate(emergency_id, reconcile=not _defer(request))
    except PreRescueError as exc:
        raise http_error(exc) from None
    return _change_payload(change, request, background_tasks)


@router.post("/{emergency_id}/deactivate")
async def deactivate_emergency(
    emergency_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    """Mark an emergency resolved.  Status history is kept and annotated."""
    registry = get_service(request, "emergency_registry")
    try:
        change = await registry.deactivate(emergency_id, reconcile=not _defer(request))
    except PreRescueError as exc:
        raise http_error(exc) from None
    return _change_payload(change, request, background_tasks)


@router.post("/{emergency_id}/reconcile")
async def reconcile_emergency(
    emergency_id: str,
    request: Request,
    response: Response,
) -> dict:
    """Run a reconciliation pass now and report the outcome.

    Returns 207 when some per-user writes failed; re-running is safe.
    """
    reconciler = get_service(request, "reconciler")
    try:
        result = await reconciler.on_emergency_changed(emergency_id)
    except PreRescueError as exc:
        raise http_error(exc) from None
    if result.partial_failure is not None:
        response.status_code = 207
    return result.to_dict()


@router.get("/{emergency_id}/statuses")
async def list_emergency_statuses(emergency_id: str, request: Request) -> dict:
    """All status rows recorded for one emergency."""
    registry = get_service(request, "emergency_registry")
    statuses = get_service(request, "status_store")
    try:
        await registry.get(emergency_id)
    except PreRescueError as exc:
        raise http_error(exc) from None
    rows = await statuses.list_by_emergency(emergency_id)
    rows.sort(key=lambda r: r.user_id)
    return {
        "emergency_id": emergency_id,
        "statuses": [r.model_dump(mode="json") for r in rows],
        "count": len(rows),
    }
