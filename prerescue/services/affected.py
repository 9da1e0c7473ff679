"""Read-side answer to "which active emergencies affect this user".

Used by dashboards for alert banners and by the chat/voice agent layer
to prioritise responses.  It shares the reconciler's
:class:`GeoMatcher`, so both sides always agree on who is affected.
Results may lag a freshly added location until the next reconciliation
pass for the relevant emergency.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from prerescue.services.errors import InvalidRadius

if TYPE_CHECKING:
    from prerescue.models.emergency import Emergency, Location
    from prerescue.services.geo_matcher import GeoMatcher
    from prerescue.services.stores import EmergencyStore, LocationStore

logger = structlog.get_logger(__name__)


class AffectedQuery:
    """Synchronous, read-only geofence queries for one user."""

    __slots__ = ("_emergencies", "_locations", "_matcher")

    def __init__(
        self,
        *,
        emergencies: EmergencyStore,
        locations: LocationStore,
        matcher: GeoMatcher,
    ) -> None:
        self._emergencies = emergencies
        self._locations = locations
        self._matcher = matcher

    async def list_affecting_emergencies(self, user_id: str) -> list[Emergency]:
        """Active emergencies whose geofence contains at least one of the user's locations."""
        locations = await self._locations.list_locations(user_id)
        if not locations:
            return []

        emergencies = await self._emergencies.list_active()
        affecting = [e for e in emergencies if self._covers_any(e, locations)]

        logger.debug(
            "affected_query.evaluated",
            user_id=user_id,
            locations=len(locations),
            active_emergencies=len(emergencies),
            affecting=len(affecting),
        )
        return affecting

    async def is_user_affected(self, user_id: str) -> bool:
        return bool(await self.list_affecting_emergencies(user_id))

    def _covers_any(self, emergency: Emergency, locations: list[Location]) -> bool:
        try:
            return any(
                self._matcher.within_radius(loc.point, emergency.point, emergency.radius_miles)
                for loc in locations
            )
        except InvalidRadius:
            logger.warning(
                "affected_query.emergency_skipped",
                emergency_id=emergency.id,
                radius_miles=emergency.radius_miles,
            )
            return False
