"""Emergency and location registries.

:class:`EmergencyRegistry` validates and persists operator actions on
emergencies (declare, edit, activate, deactivate) and hands every change
to the :class:`StatusReconciler` afterwards.  Emergencies are never
deleted.

:class:`LocationRegistry` is the engine's read view of user locations.
Saving a location does not trigger reconciliation; the next pass for
each emergency picks it up.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from prerescue.models.emergency import Emergency, Location
from prerescue.services.errors import NotFound
from prerescue.services.geo_matcher import validate_radius

if TYPE_CHECKING:
    from prerescue.services.reconciler import ReconciliationResult, StatusReconciler
    from prerescue.services.stores import EmergencyStore, LocationStore

logger = structlog.get_logger(__name__)

# Fields an operator may change after declaration.
EDITABLE_FIELDS: Final[frozenset[str]] = frozenset({
    "title",
    "category",
    "description",
    "radius_miles",
    "response_directives",
    "postal_code",
    "region_code",
    "latitude",
    "longitude",
})


@dataclass
class EmergencyChange:
    """An emergency after a lifecycle write, plus its reconciliation pass.

    ``reconciliation`` is None when the caller deferred the pass.
    """

    emergency: Emergency
    reconciliation: ReconciliationResult | None = None


class EmergencyRegistry:
    """Lifecycle store for emergency declarations.

    Parameters
    ----------
    store:
        Backing :class:`EmergencyStore`.
    reconciler:
        Invoked with the emergency id after every successful write.
    default_radius_miles:
        Radius used when :meth:`declare` is called without one.
    """

    __slots__ = ("_default_radius_miles", "_reconciler", "_store")

    def __init__(
        self,
        store: EmergencyStore,
        reconciler: StatusReconciler,
        *,
        default_radius_miles: float = 10.0,
    ) -> None:
        validate_radius(default_radius_miles)
        self._store = store
        self._reconciler = reconciler
        self._default_radius_miles = default_radius_miles

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, emergency_id: str) -> Emergency:
        emergency = await self._store.get(emergency_id)
        if emergency is None:
            raise NotFound("emergency", emergency_id)
        return emergency

    async def list_active(self) -> list[Emergency]:
        return await self._store.list_active()

    async def list_all(self) -> list[Emergency]:
        return await self._store.list_all()

    # ------------------------------------------------------------------
    # Lifecycle writes
    # ------------------------------------------------------------------

    async def declare(
        self,
        *,
        title: str,
        category: str,
        postal_code: str,
        region_code: str,
        radius_miles: float | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        description: str | None = None,
        declared_by: str | None = None,
        response_directives: str | None = None,
        is_active: bool = True,
        reconcile: bool = True,
    ) -> EmergencyChange:
        """Declare a new emergency, active by default."""
        radius = self._default_radius_miles if radius_miles is None else radius_miles
        validate_radius(radius)

        emergency = Emergency(
            title=title,
            category=category,
            description=description,
            declared_by=declared_by,
            postal_code=postal_code,
            region_code=region_code,
            latitude=latitude,
            longitude=longitude,
            radius_miles=radius,
            is_active=is_active,
            response_directives=response_directives,
        )
        await self._store.save(emergency)

        logger.info(
            "emergency_registry.declared",
            emergency_id=emergency.id,
            category=category,
            region_code=region_code,
            postal_code=postal_code,
            radius_miles=radius,
            is_active=is_active,
        )
        return await self._after_write(emergency, reconcile)

    async def edit(
        self,
        emergency_id: str,
        changes: dict[str, Any],
        *,
        reconcile: bool = True,
    ) -> EmergencyChange:
        """Apply operator edits; unknown fields raise ``ValueError``."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        if "radius_miles" in changes:
            validate_radius(changes["radius_miles"])

        emergency = await self.get(emergency_id)
        updated = Emergency.model_validate(
            {**emergency.model_dump(), **changes, "updated_at": datetime.now(UTC)}
        )
        await self._store.save(updated)

        logger.info(
            "emergency_registry.edited",
            emergency_id=emergency_id,
            fields=sorted(changes),
        )
        return await self._after_write(updated, reconcile)

    async def activate(self, emergency_id: str, *, reconcile: bool = True) -> EmergencyChange:
        return await self._set_active(emergency_id, True, reconcile)

    async def deactivate(self, emergency_id: str, *, reconcile: bool = True) -> EmergencyChange:
        return await self._set_active(emergency_id, False, reconcile)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _set_active(
        self, emergency_id: str, is_active: bool, reconcile: bool
    ) -> EmergencyChange:
        emergency = await self.get(emergency_id)
        if emergency.is_active != is_active:
            emergency = emergency.model_copy(
                update={"is_active": is_active, "updated_at": datetime.now(UTC)}
            )
            await self._store.save(emergency)
            logger.info(
                "emergency_registry.activated" if is_active else "emergency_registry.deactivated",
                emergency_id=emergency_id,
            )
        return await self._after_write(emergency, reconcile)

    async def _after_write(self, emergency: Emergency, reconcile: bool) -> EmergencyChange:
        if not reconcile:
            return EmergencyChange(emergency=emergency)
        result = await self._reconciler.on_emergency_changed(emergency.id)
        return EmergencyChange(emergency=emergency, reconciliation=result)


class LocationRegistry:
    """Read access to user locations, plus the host application's save hook."""

    __slots__ = ("_store",)

    def __init__(self, store: LocationStore) -> None:
        self._store = store

    async def list_locations(self, user_id: str | None = None) -> list[Location]:
        return await self._store.list_locations(user_id)

    async def get_location(self, location_id: str) -> Location:
        location = await self._store.get(location_id)
        if location is None:
            raise NotFound("location", location_id)
        return location

    async def save_location(self, location: Location) -> Location:
        await self._store.save(location)
        logger.info(
            "location_registry.saved",
            location_id=location.id,
            owner_id=location.owner_id,
            has_coordinates=location.point.has_coordinates,
        )
        return location
