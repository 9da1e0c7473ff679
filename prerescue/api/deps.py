"""Shared helpers for the v1 routers: service lookup and error mapping."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from prerescue.services.errors import (
    InvalidRadius,
    InvalidStatus,
    NotFound,
    PreRescueError,
)


def get_service(request: Request, name: str) -> Any:
    """Return a component from ``app.state`` or fail with 503."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name.replace('_', ' ').title()} not available")
    return service


def http_error(exc: PreRescueError) -> HTTPException:
    """Map engine caller errors onto HTTP status codes."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidRadius, InvalidStatus)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Emergency engine error")
