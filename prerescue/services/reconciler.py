"""Status reconciliation -- keeps ``UserEmergencyStatus`` consistent with emergencies.

Triggered after every emergency lifecycle change (declare, edit,
activate, deactivate) and on user self-reports.

Pass semantics
--------------
* Locations are grouped by owner; an owner is affected when any of
  their locations is inside the geofence.  The nearest matching
  location supplies the row's ``location_text``.
* Active emergency: a row with ``status=unknown`` is created only when
  none exists.  Existing rows keep ``status`` and ``notes``; automatic
  rows get their location context refreshed.  Reactivation clears the
  resolved annotation on every row of the emergency.
* Inactive emergency: every row of the emergency gains a resolved
  annotation (set once, never appended) and keeps its ``status``.
* Writes that would change nothing are skipped, so running a pass twice
  leaves the table identical.
* Every write is a field-level merge (or a create-only insert) guarded
  by the values it was computed from, so a concurrent self-report and a
  concurrent pass never overwrite each other's fields.

Failure handling
----------------
Per-user writes run concurrently under a semaphore and are isolated: a
failed write is logged and collected, the rest of the pass continues,
and the caller receives a :class:`ReconciliationResult` describing the
partial failure.  Re-running the pass is always safe.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Awaitable, Final

import structlog

from prerescue.models.emergency import Emergency, Location, UserEmergencyStatus
from prerescue.models.enums import SafetyStatus, StatusSource
from prerescue.services.errors import (
    InvalidRadius,
    InvalidStatus,
    NotFound,
    PartialReconciliationFailure,
)
from prerescue.services.geo_matcher import GeoMatcher, validate_radius

if TYPE_CHECKING:
    from prerescue.services.stores import EmergencyStore, LocationStore, StatusStore

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RESOLUTION_NOTE: Final[str] = "Emergency has been deactivated"

_CREATED = "created"
_UPDATED = "updated"
_UNCHANGED = "unchanged"


def _auto_note(radius_miles: float) -> str:
    return f"Automatically added due to proximity to emergency (within {radius_miles:g} miles)"


# ---------------------------------------------------------------------------
# ReconciliationResult dataclass
# ---------------------------------------------------------------------------


@dataclass
class ReconciliationResult:
    """Report produced by one reconciliation pass."""

    emergency_id: str
    emergency_active: bool
    affected_count: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    failed_user_ids: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def partial_failure(self) -> PartialReconciliationFailure | None:
        if not self.failed_user_ids:
            return None
        return PartialReconciliationFailure(
            emergency_id=self.emergency_id,
            affected_count=self.affected_count,
            failed_user_ids=list(self.failed_user_ids),
            errors=list(self.errors),
        )

    def raise_for_failures(self) -> None:
        failure = self.partial_failure
        if failure is not None:
            raise failure

    def to_dict(self) -> dict:
        """Serialise to a JSON-compatible dictionary."""
        return {
            "emergency_id": self.emergency_id,
            "emergency_active": self.emergency_active,
            "affected_count": self.affected_count,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "failed_user_ids": self.failed_user_ids,
            "errors": [str(e) for e in self.errors],
            "duration_seconds": round(self.duration_seconds, 4),
        }


# ---------------------------------------------------------------------------
# StatusReconciler
# ---------------------------------------------------------------------------


class StatusReconciler:
    """Orchestrates geofence scans and status upserts.

    Parameters
    ----------
    emergencies, locations, statuses:
        Injected stores (see :mod:`prerescue.services.stores`).
    matcher:
        The shared :class:`GeoMatcher`; :class:`AffectedQuery` must be
        built with the same instance.
    max_concurrency:
        Upper bound on simultaneous per-user writes within one pass.
    """

    __slots__ = ("_emergencies", "_locations", "_matcher", "_max_concurrency", "_statuses")

    def __init__(
        self,
        *,
        emergencies: EmergencyStore,
        locations: LocationStore,
        statuses: StatusStore,
        matcher: GeoMatcher,
        max_concurrency: int = 8,
    ) -> None:
        self._emergencies = emergencies
        self._locations = locations
        self._statuses = statuses
        self._matcher = matcher
        self._max_concurrency = max_concurrency

    @property
    def matcher(self) -> GeoMatcher:
        return self._matcher

    # ------------------------------------------------------------------
    # Emergency lifecycle hook
    # ------------------------------------------------------------------

    async def on_emergency_changed(self, emergency_id: str) -> ReconciliationResult:
        """Re-scan every location against one emergency and reconcile rows.

        ``affected_count`` is the number of users the pass covers: the
        geofenced owners (plus, on reactivation, annotated rows outside
        the geofence) for an active emergency, and every status row of
        the emergency for an inactive one.

        Raises
        ------
        NotFound
            The emergency does not exist.
        InvalidRadius
            The emergency is active and its stored radius is unusable.
        """
        start = time.monotonic()
        emergency = await self._emergencies.get(emergency_id)
        if emergency is None:
            raise NotFound("emergency", emergency_id)

        rows = sorted(
            await self._statuses.list_by_emergency(emergency.id),
            key=lambda r: r.user_id,
        )
        locations_scanned = 0
        jobs: list[tuple[str, Awaitable[str]]]
        if emergency.is_active:
            validate_radius(emergency.radius_miles)
            locations = await self._locations.list_locations()
            locations_scanned = len(locations)
            affected = self.affected_owners(emergency, locations)
            jobs = [
                (owner_id, self._mark_affected(emergency, owner_id, location))
                for owner_id, location in sorted(affected.items())
            ]
            jobs.extend(
                (row.user_id, self._clear_resolution(row))
                for row in rows
                if row.user_id not in affected and row.resolved_at is not None
            )
        else:
            jobs = [(row.user_id, self._mark_resolved(row)) for row in rows]

        result = ReconciliationResult(
            emergency_id=emergency.id,
            emergency_active=emergency.is_active,
            affected_count=len(jobs),
        )

        logger.info(
            "reconciler.pass_start",
            emergency_id=emergency.id,
            emergency_active=emergency.is_active,
            locations_scanned=locations_scanned,
            affected_count=result.affected_count,
        )

        await self._run_bounded(jobs, result)
        result.duration_seconds = time.monotonic() - start

        log = logger.warning if result.failed_user_ids else logger.info
        log(
            "reconciler.pass_complete",
            emergency_id=emergency.id,
            emergency_active=emergency.is_active,
            affected_count=result.affected_count,
            rows_created=result.rows_created,
            rows_updated=result.rows_updated,
            failures=len(result.failed_user_ids),
            duration_seconds=round(result.duration_seconds, 4),
        )
        return result

    async def reconcile_active(self) -> list[ReconciliationResult]:
        """Run a pass for every active emergency.

        Picks up locations added since the last lifecycle event.
        """
        results: list[ReconciliationResult] = []
        for emergency in await self._emergencies.list_active():
            try:
                results.append(await self.on_emergency_changed(emergency.id))
            except InvalidRadius:
                logger.warning(
                    "reconciler.emergency_skipped",
                    emergency_id=emergency.id,
                    radius_miles=emergency.radius_miles,
                )
        return results

    def affected_owners(
        self, emergency: Emergency, locations: list[Location]
    ) -> dict[str, Location]:
        """Map each affected owner to their nearest location inside the geofence."""
        nearest: dict[str, tuple[float, str, Location]] = {}
        for location in locations:
            if not self._matcher.within_radius(
                location.point, emergency.point, emergency.radius_miles
            ):
                continue
            candidate = (
                self._matcher.distance(location.point, emergency.point),
                location.id,
                location,
            )
            current = nearest.get(location.owner_id)
            if current is None or candidate[:2] < current[:2]:
                nearest[location.owner_id] = candidate
        return {owner_id: entry[2] for owner_id, entry in nearest.items()}

    # ------------------------------------------------------------------
    # User self-report
    # ------------------------------------------------------------------

    async def on_user_reports_status(
        self,
        user_id: str,
        emergency_id: str,
        status: str,
        notes: str | None = None,
        location_text: str | None = None,
    ) -> UserEmergencyStatus:
        """Record a user's own status report.

        Always overwrites status, notes and location, whether or not the
        user is inside the geofence.  The report is a field-level merge, so
        a resolved annotation on the row is never cleared by it.  A report
        that lands on an emergency deactivated in the meantime gains the
        annotation.

        Raises
        ------
        InvalidStatus
            ``status`` is not one of :class:`SafetyStatus`.
        NotFound
            The emergency does not exist.
        """
        try:
            safety_status = SafetyStatus(status)
        except ValueError:
            raise InvalidStatus(status) from None

        emergency = await self._emergencies.get(emergency_id)
        if emergency is None:
            raise NotFound("emergency", emergency_id)

        now = datetime.now(UTC)
        report: dict[str, Any] = {
            "status": safety_status,
            "source": StatusSource.SELF_REPORT,
            "notes": notes,
            "location_text": location_text,
            "updated_at": now,
        }

        created = False
        saved = await self._statuses.update(user_id, emergency_id, report)
        if saved is None:
            row = UserEmergencyStatus(
                user_id=user_id,
                emergency_id=emergency_id,
                resolved_at=None if emergency.is_active else now,
                resolution_note=None if emergency.is_active else RESOLUTION_NOTE,
                created_at=now,
                **report,
            )
            created = await self._statuses.insert_if_absent(row)
            if created:
                saved = row
            else:
                # A concurrent writer created the row first; merge into it.
                saved = await self._statuses.update(user_id, emergency_id, report)
        if saved is None:
            raise NotFound("status", f"{user_id}/{emergency_id}")

        if saved.resolved_at is None:
            saved = await self._annotate_if_deactivated(saved)

        logger.info(
            "reconciler.status_reported",
            user_id=user_id,
            emergency_id=emergency_id,
            status=safety_status.value,
            created=created,
            resolved=saved.is_resolved,
        )
        return saved

    # ------------------------------------------------------------------
    # Internal: per-user writes
    # ------------------------------------------------------------------

    async def _run_bounded(
        self,
        jobs: list[tuple[str, Awaitable[str]]],
        result: ReconciliationResult,
    ) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run(user_id: str, job: Awaitable[str]) -> None:
            async with semaphore:
                try:
                    outcome = await job
                except Exception as exc:
                    logger.error(
                        "reconciler.write_failed",
                        emergency_id=result.emergency_id,
                        user_id=user_id,
                        error=str(exc),
                    )
                    result.failed_user_ids.append(user_id)
                    result.errors.append(exc)
                    return
            if outcome == _CREATED:
                result.rows_created += 1
            elif outcome == _UPDATED:
                result.rows_updated += 1

        await asyncio.gather(*(_run(user_id, job) for user_id, job in jobs))
        result.failed_user_ids.sort()

    async def _mark_affected(
        self, emergency: Emergency, owner_id: str, location: Location
    ) -> str:
        now = datetime.now(UTC)
        location_text = location.describe()
        row = UserEmergencyStatus(
            user_id=owner_id,
            emergency_id=emergency.id,
            status=SafetyStatus.UNKNOWN,
            source=StatusSource.AUTOMATIC,
            notes=_auto_note(emergency.radius_miles),
            location_text=location_text,
            created_at=now,
            updated_at=now,
        )
        if await self._statuses.insert_if_absent(row):
            return _CREATED

        existing = await self._statuses.get(owner_id, emergency.id)
        if existing is None:
            return _UNCHANGED

        outcome = _UNCHANGED
        if existing.source == StatusSource.AUTOMATIC and existing.location_text != location_text:
            # Skipped if the user reported in the meantime.
            refreshed = await self._statuses.update(
                owner_id,
                emergency.id,
                {"location_text": location_text, "updated_at": now},
                only_if={
                    "source": StatusSource.AUTOMATIC,
                    "location_text": existing.location_text,
                },
            )
            if refreshed is not None:
                outcome = _UPDATED
        if await self._clear_resolution(existing) == _UPDATED:
            outcome = _UPDATED
        return outcome

    async def _clear_resolution(self, row: UserEmergencyStatus) -> str:
        if row.resolved_at is None:
            return _UNCHANGED
        updated = await self._statuses.update(
            row.user_id,
            row.emergency_id,
            {"resolved_at": None, "resolution_note": None, "updated_at": datetime.now(UTC)},
            only_if={"resolved_at": row.resolved_at},
        )
        return _UPDATED if updated is not None else _UNCHANGED

    async def _mark_resolved(self, row: UserEmergencyStatus) -> str:
        if row.resolved_at is not None:
            return _UNCHANGED
        now = datetime.now(UTC)
        updated = await self._statuses.update(
            row.user_id,
            row.emergency_id,
            {"resolved_at": now, "resolution_note": RESOLUTION_NOTE, "updated_at": now},
            only_if={"resolved_at": None},
        )
        return _UPDATED if updated is not None else _UNCHANGED

    async def _annotate_if_deactivated(self, row: UserEmergencyStatus) -> UserEmergencyStatus:
        emergency = await self._emergencies.get(row.emergency_id)
        if emergency is None or emergency.is_active:
            return row
        now = datetime.now(UTC)
        annotated = await self._statuses.update(
            row.user_id,
            row.emergency_id,
            {"resolved_at": now, "resolution_note": RESOLUTION_NOTE},
            only_if={"resolved_at": None},
        )
        return annotated if annotated is not None else row
