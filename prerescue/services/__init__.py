"""PreRescue engine services -- geofence matching, status reconciliation and queries.

In-memory stores and all engine services are exported eagerly; the
Redis-backed stores live in :mod:`prerescue.services.redis_stores` and
are imported only when that backend is configured.
"""

from __future__ import annotations

from prerescue.services.affected import AffectedQuery
from prerescue.services.briefing import EmergencyBriefing, EmergencyBriefingService
from prerescue.services.errors import (
    GeomatchUnavailable,
    InvalidRadius,
    InvalidStatus,
    NotFound,
    PartialReconciliationFailure,
    PreRescueError,
)
from prerescue.services.geo_matcher import GeoMatcher, haversine_miles
from prerescue.services.reconciler import ReconciliationResult, StatusReconciler
from prerescue.services.registry import EmergencyChange, EmergencyRegistry, LocationRegistry
from prerescue.services.stores import (
    EmergencyStore,
    InMemoryEmergencyStore,
    InMemoryLocationStore,
    InMemoryStatusStore,
    LocationStore,
    StatusStore,
)

__all__ = [
    "AffectedQuery",
    "EmergencyBriefing",
    "EmergencyBriefingService",
    "EmergencyChange",
    "EmergencyRegistry",
    "EmergencyStore",
    "GeoMatcher",
    "GeomatchUnavailable",
    "InMemoryEmergencyStore",
    "InMemoryLocationStore",
    "InMemoryStatusStore",
    "InvalidRadius",
    "InvalidStatus",
    "LocationRegistry",
    "LocationStore",
    "NotFound",
    "PartialReconciliationFailure",
    "PreRescueError",
    "ReconciliationResult",
    "StatusReconciler",
    "StatusStore",
    "haversine_miles",
]
