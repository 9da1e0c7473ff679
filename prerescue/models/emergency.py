"""Core records for emergency matching and safety-status tracking.

``Location`` and ``Emergency`` are owned by the host application and are
read-only to the engine; ``UserEmergencyStatus`` is the one table the
engine writes, keyed by ``(user_id, emergency_id)``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from prerescue.models.enums import SafetyStatus, StatusSource


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GeoPoint(BaseModel):
    """A place identified by postal/region codes and, optionally, coordinates.

    Coordinates are only usable when both latitude and longitude are set;
    otherwise matching falls back to the postal-code heuristic.
    """

    model_config = {"frozen": True}

    postal_code: str
    region_code: str
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Location(BaseModel):
    """A named address record belonging to exactly one user."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str
    label: str = ""
    city: str | None = None
    postal_code: str = Field(..., min_length=1)
    region_code: str = Field(..., min_length=1)
    latitude: float | None = None
    longitude: float | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(
            postal_code=self.postal_code,
            region_code=self.region_code,
            latitude=self.latitude,
            longitude=self.longitude,
        )

    def describe(self) -> str:
        """Human-readable address line, e.g. ``"Oakland, CA 94607"``."""
        tail = f"{self.region_code} {self.postal_code}"
        if self.city:
            return f"{self.city}, {tail}"
        return tail


class Emergency(BaseModel):
    """An operator-declared incident with a geographic centre and radius.

    Emergencies are never deleted; resolving one flips ``is_active`` to
    False so the affected-user history stays queryable.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str
    category: str
    description: str | None = None
    declared_by: str | None = None
    postal_code: str
    region_code: str
    latitude: float | None = None
    longitude: float | None = None
    radius_miles: float = Field(default=10.0, gt=0, allow_inf_nan=False)
    is_active: bool = True
    response_directives: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(
            postal_code=self.postal_code,
            region_code=self.region_code,
            latitude=self.latitude,
            longitude=self.longitude,
        )


class UserEmergencyStatus(BaseModel):
    """Per-user, per-emergency safety record.

    At most one row exists per ``(user_id, emergency_id)``.  Rows are
    created automatically with ``status=unknown`` when a user's location
    enters an emergency's geofence, or directly by a self-report.  On
    deactivation the row is annotated via ``resolved_at`` and
    ``resolution_note``; ``status`` is never touched by the engine once
    a user has reported.
    """

    user_id: str
    emergency_id: str
    status: SafetyStatus = SafetyStatus.UNKNOWN
    source: StatusSource = StatusSource.AUTOMATIC
    notes: str | None = None
    location_text: str | None = None
    resolved_at: datetime | None = None
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.emergency_id)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
