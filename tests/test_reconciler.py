"""Tests for the StatusReconciler.

Covers automatic row creation, idempotence, self-report precedence,
deactivation annotation, nearest-location selection, bounded
concurrency, partial-failure collection and interleaved writers on
one row.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from prerescue.models.emergency import Emergency, Location, UserEmergencyStatus
from prerescue.models.enums import SafetyStatus, StatusSource
from prerescue.services.errors import (
    InvalidRadius,
    InvalidStatus,
    NotFound,
    PartialReconciliationFailure,
)
from prerescue.services.geo_matcher import GeoMatcher
from prerescue.services.reconciler import RESOLUTION_NOTE, StatusReconciler
from prerescue.services.stores import (
    InMemoryEmergencyStore,
    InMemoryLocationStore,
    InMemoryStatusStore,
)

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FlakyStatusStore(InMemoryStatusStore):
    """Fails every write for the configured users."""

    __slots__ = ("failing_users",)

    def __init__(self, failing_users: set[str]) -> None:
        super().__init__()
        self.failing_users = failing_users

    async def insert_if_absent(self, row: UserEmergencyStatus) -> bool:
        if row.user_id in self.failing_users:
            raise ConnectionError(f"write refused for {row.user_id}")
        return await super().insert_if_absent(row)

    async def update(
        self,
        user_id: str,
        emergency_id: str,
        fields: dict[str, Any],
        *,
        only_if: dict[str, Any] | None = None,
    ) -> UserEmergencyStatus | None:
        if user_id in self.failing_users:
            raise ConnectionError(f"write refused for {user_id}")
        return await super().update(user_id, emergency_id, fields, only_if=only_if)


class SlowStatusStore(InMemoryStatusStore):
    """Records the peak number of concurrent inserts."""

    __slots__ = ("in_flight", "peak")

    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def insert_if_absent(self, row: UserEmergencyStatus) -> bool:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.001)
            return await super().insert_if_absent(row)
        finally:
            self.in_flight -= 1


class RacingStatusStore(InMemoryStatusStore):
    """Runs ``before_update`` once, just before the first update touching ``trigger``.

    Lets a test interleave a second writer between a caller's read and
    its write.
    """

    __slots__ = ("before_update", "trigger")

    def __init__(self, trigger: str) -> None:
        super().__init__()
        self.trigger = trigger
        self.before_update: Callable[[], Awaitable[Any]] | None = None

    async def update(
        self,
        user_id: str,
        emergency_id: str,
        fields: dict[str, Any],
        *,
        only_if: dict[str, Any] | None = None,
    ) -> UserEmergencyStatus | None:
        if self.before_update is not None and self.trigger in fields:
            hook, self.before_update = self.before_update, None
            await hook()
        return await super().update(user_id, emergency_id, fields, only_if=only_if)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def emergencies() -> InMemoryEmergencyStore:
    return InMemoryEmergencyStore()


@pytest.fixture
def locations() -> InMemoryLocationStore:
    return InMemoryLocationStore()


@pytest.fixture
def statuses() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def reconciler(
    emergencies: InMemoryEmergencyStore,
    locations: InMemoryLocationStore,
    statuses: InMemoryStatusStore,
) -> StatusReconciler:
    return StatusReconciler(
        emergencies=emergencies,
        locations=locations,
        statuses=statuses,
        matcher=GeoMatcher(),
    )


def _emergency(**overrides: Any) -> Emergency:
    data: dict[str, Any] = {
        "id": "em-1",
        "title": "Mission Bay Fire",
        "category": "fire",
        "postal_code": "94105",
        "region_code": "CA",
        "radius_miles": 10.0,
    }
    data.update(overrides)
    return Emergency(**data)


def _location(owner_id: str, **overrides: Any) -> Location:
    data: dict[str, Any] = {
        "id": f"loc-{owner_id}",
        "owner_id": owner_id,
        "label": "Home",
        "city": "San Francisco",
        "postal_code": "94105",
        "region_code": "CA",
    }
    data.update(overrides)
    return Location(**data)


# ---------------------------------------------------------------------------
# Automatic row creation
# ---------------------------------------------------------------------------


class TestActivePass:
    async def test_user_inside_geofence_gets_unknown_row(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 1
        assert result.rows_created == 1
        assert result.partial_failure is None
        row = await statuses.get("u1", "em-1")
        assert row is not None
        assert row.status == SafetyStatus.UNKNOWN
        assert row.source == StatusSource.AUTOMATIC
        assert row.notes == "Automatically added due to proximity to emergency (within 10 miles)"
        assert row.location_text == "San Francisco, CA 94105"
        assert row.resolved_at is None

    async def test_zero_users_in_range(self, emergencies, locations, statuses, reconciler) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1", postal_code="10001", region_code="NY"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 0
        assert result.rows_created == 0
        assert result.errors == []
        assert statuses.size == 0

    async def test_two_locations_one_row(self, emergencies, locations, statuses, reconciler) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1", id="loc-a", label="Home", postal_code="94107"))
        await locations.save(_location("u1", id="loc-b", label="Work", postal_code="94105"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 1
        rows = await statuses.list_by_user("u1")
        assert len(rows) == 1
        # The nearest location supplies the context.
        assert rows[0].location_text == "San Francisco, CA 94105"

    async def test_coordinates_exclude_same_postal_location(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency(radius_miles=5, latitude=37.7897, longitude=-122.3942))
        await locations.save(_location("u1", latitude=37.7897 + 0.11868, longitude=-122.3942))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 0
        assert await statuses.get("u1", "em-1") is None

    async def test_unusable_postal_code_is_not_affected(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1", postal_code="UNKNOWN"))
        await locations.save(_location("u2"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 1
        assert result.errors == []
        assert await statuses.get("u1", "em-1") is None

    async def test_unknown_emergency_raises(self, reconciler) -> None:
        with pytest.raises(NotFound):
            await reconciler.on_emergency_changed("missing")

    async def test_reconcile_active_skips_inactive(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency(id="em-1"))
        await emergencies.save(_emergency(id="em-2", is_active=False))
        await locations.save(_location("u1"))

        results = await reconciler.reconcile_active()

        assert [r.emergency_id for r in results] == ["em-1"]
        assert await statuses.get("u1", "em-2") is None


# ---------------------------------------------------------------------------
# Idempotence and precedence
# ---------------------------------------------------------------------------


class TestIdempotence:
    async def test_second_pass_changes_nothing(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        for owner in ("u1", "u2", "u3"):
            await locations.save(_location(owner))

        await reconciler.on_emergency_changed("em-1")
        first = sorted((r.model_dump() for r in await statuses.list_by_emergency("em-1")), key=str)

        result = await reconciler.on_emergency_changed("em-1")
        second = sorted((r.model_dump() for r in await statuses.list_by_emergency("em-1")), key=str)

        assert result.rows_created == 0
        assert result.rows_updated == 0
        assert first == second

    async def test_deactivation_twice_is_idempotent(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await emergencies.save(_emergency(is_active=False))

        await reconciler.on_emergency_changed("em-1")
        first = await statuses.get("u1", "em-1")
        result = await reconciler.on_emergency_changed("em-1")
        second = await statuses.get("u1", "em-1")

        assert result.rows_updated == 0
        assert first == second


class TestSelfReportPrecedence:
    async def test_report_survives_reconciliation(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")

        await reconciler.on_user_reports_status("u1", "em-1", "safe", notes="All good", location_text="Shelter")
        await reconciler.on_emergency_changed("em-1")

        row = await statuses.get("u1", "em-1")
        assert row.status == SafetyStatus.SAFE
        assert row.source == StatusSource.SELF_REPORT
        assert row.notes == "All good"
        assert row.location_text == "Shelter"

    async def test_report_outside_geofence_is_accepted(self, emergencies, statuses, reconciler) -> None:
        await emergencies.save(_emergency())

        row = await reconciler.on_user_reports_status("far-away", "em-1", "needs_help")

        assert row.status == SafetyStatus.NEEDS_HELP
        assert await statuses.get("far-away", "em-1") is not None

    async def test_report_overwrites_previous_report(self, emergencies, statuses, reconciler) -> None:
        await emergencies.save(_emergency())
        first = await reconciler.on_user_reports_status("u1", "em-1", "needs_help", notes="Trapped")
        second = await reconciler.on_user_reports_status("u1", "em-1", "evacuated")

        assert second.status == SafetyStatus.EVACUATED
        assert second.notes is None
        assert second.created_at == first.created_at
        assert statuses.size == 1

    async def test_invalid_status_rejected(self, emergencies, statuses, reconciler) -> None:
        await emergencies.save(_emergency())
        with pytest.raises(InvalidStatus):
            await reconciler.on_user_reports_status("u1", "em-1", "fine")
        assert statuses.size == 0

    async def test_unknown_emergency_rejected(self, reconciler) -> None:
        with pytest.raises(NotFound):
            await reconciler.on_user_reports_status("u1", "missing", "safe")

    async def test_report_on_inactive_emergency_is_annotated(self, emergencies, reconciler) -> None:
        await emergencies.save(_emergency(is_active=False))

        row = await reconciler.on_user_reports_status("u1", "em-1", "safe")

        assert row.is_resolved
        assert row.resolution_note == RESOLUTION_NOTE


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_deactivation_preserves_status_and_annotates(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await locations.save(_location("u2"))
        await reconciler.on_emergency_changed("em-1")
        await reconciler.on_user_reports_status("u1", "em-1", "evacuated")

        await emergencies.save(_emergency(is_active=False))
        result = await reconciler.on_emergency_changed("em-1")

        assert result.emergency_active is False
        assert result.affected_count == 2
        assert result.rows_updated == 2
        u1 = await statuses.get("u1", "em-1")
        u2 = await statuses.get("u2", "em-1")
        assert u1.status == SafetyStatus.EVACUATED
        assert u2.status == SafetyStatus.UNKNOWN
        for row in (u1, u2):
            assert row.resolved_at is not None
            assert row.resolution_note == RESOLUTION_NOTE

    async def test_deactivation_creates_no_rows(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency(is_active=False))
        await locations.save(_location("u1"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.rows_created == 0
        assert statuses.size == 0

    async def test_reactivation_clears_annotation(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await emergencies.save(_emergency(is_active=False))
        await reconciler.on_emergency_changed("em-1")

        await emergencies.save(_emergency(is_active=True))
        result = await reconciler.on_emergency_changed("em-1")

        row = await statuses.get("u1", "em-1")
        assert result.rows_updated == 1
        assert row.resolved_at is None
        assert row.resolution_note is None

    async def test_moved_location_refreshes_automatic_row(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")

        await locations.save(_location("u1", city="Oakland", postal_code="94107"))
        result = await reconciler.on_emergency_changed("em-1")

        row = await statuses.get("u1", "em-1")
        assert result.rows_updated == 1
        assert row.location_text == "Oakland, CA 94107"
        assert row.status == SafetyStatus.UNKNOWN

    async def test_location_leaving_geofence_keeps_row(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")

        await locations.save(_location("u1", postal_code="10001", region_code="NY"))
        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 0
        assert await statuses.get("u1", "em-1") is not None


# ---------------------------------------------------------------------------
# Concurrency and failures
# ---------------------------------------------------------------------------


class TestFailureHandling:
    async def test_partial_failure_is_collected(self, emergencies, locations) -> None:
        statuses = FlakyStatusStore({"u2"})
        reconciler = StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=GeoMatcher(),
        )
        await emergencies.save(_emergency())
        for owner in ("u1", "u2", "u3"):
            await locations.save(_location(owner))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 3
        assert result.rows_created == 2
        assert result.failed_user_ids == ["u2"]
        assert isinstance(result.errors[0], ConnectionError)
        failure = result.partial_failure
        assert isinstance(failure, PartialReconciliationFailure)
        assert failure.affected_count == 3
        with pytest.raises(PartialReconciliationFailure):
            result.raise_for_failures()
        assert result.to_dict()["errors"] == ["write refused for u2"]

    async def test_rerun_after_recovery_completes(self, emergencies, locations) -> None:
        statuses = FlakyStatusStore({"u2"})
        reconciler = StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=GeoMatcher(),
        )
        await emergencies.save(_emergency())
        for owner in ("u1", "u2"):
            await locations.save(_location(owner))
        await reconciler.on_emergency_changed("em-1")

        statuses.failing_users.clear()
        result = await reconciler.on_emergency_changed("em-1")

        assert result.rows_created == 1
        assert result.partial_failure is None
        assert statuses.size == 2

    async def test_concurrency_is_bounded(self, emergencies, locations) -> None:
        statuses = SlowStatusStore()
        reconciler = StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=GeoMatcher(),
            max_concurrency=2,
        )
        await emergencies.save(_emergency())
        for i in range(10):
            await locations.save(_location(f"u{i}"))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.rows_created == 10
        assert 1 <= statuses.peak <= 2

    async def test_deactivation_count_covers_every_annotated_row(
        self, emergencies, locations
    ) -> None:
        statuses = FlakyStatusStore(set())
        reconciler = StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=GeoMatcher(),
        )
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await reconciler.on_user_reports_status("far-1", "em-1", "safe")
        await reconciler.on_user_reports_status("far-2", "em-1", "needs_help")

        statuses.failing_users.update({"u1", "far-1", "far-2"})
        await emergencies.save(_emergency(is_active=False))
        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 3
        assert result.failed_user_ids == ["far-1", "far-2", "u1"]
        assert "failed for 3 of 3 affected users" in str(result.partial_failure)


# ---------------------------------------------------------------------------
# Reactivation
# ---------------------------------------------------------------------------


class TestReactivation:
    async def test_reactivation_clears_rows_outside_geofence(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await reconciler.on_user_reports_status("far-away", "em-1", "safe")
        await emergencies.save(_emergency(is_active=False))
        await reconciler.on_emergency_changed("em-1")

        await emergencies.save(_emergency(is_active=True))
        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 2
        assert result.rows_updated == 2
        for user_id in ("u1", "far-away"):
            row = await statuses.get(user_id, "em-1")
            assert row.resolved_at is None
            assert row.resolution_note is None
        assert (await statuses.get("far-away", "em-1")).status == SafetyStatus.SAFE

    async def test_second_active_pass_touches_nothing(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency())
        await reconciler.on_user_reports_status("far-away", "em-1", "safe")

        result = await reconciler.on_emergency_changed("em-1")

        assert result.affected_count == 0
        assert result.rows_updated == 0


# ---------------------------------------------------------------------------
# Concurrent writers on the same row
# ---------------------------------------------------------------------------


class TestConcurrentWriters:
    def _reconciler(self, emergencies, locations, statuses) -> StatusReconciler:
        return StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=GeoMatcher(),
        )

    async def test_deactivation_during_report_keeps_annotation(self, emergencies, locations) -> None:
        statuses = RacingStatusStore(trigger="status")
        reconciler = self._reconciler(emergencies, locations, statuses)
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")

        async def deactivate() -> None:
            await emergencies.save(_emergency(is_active=False))
            await reconciler.on_emergency_changed("em-1")

        statuses.before_update = deactivate
        saved = await reconciler.on_user_reports_status("u1", "em-1", "safe", location_text="Shelter")

        row = await statuses.get("u1", "em-1")
        assert statuses.before_update is None
        assert row.status == SafetyStatus.SAFE
        assert row.location_text == "Shelter"
        assert row.resolved_at is not None
        assert row.resolution_note == RESOLUTION_NOTE
        assert saved.is_resolved

    async def test_deactivation_before_first_report_annotates_new_row(
        self, emergencies, locations
    ) -> None:
        statuses = RacingStatusStore(trigger="status")
        reconciler = self._reconciler(emergencies, locations, statuses)
        await emergencies.save(_emergency())

        async def deactivate() -> None:
            await emergencies.save(_emergency(is_active=False))
            await reconciler.on_emergency_changed("em-1")

        statuses.before_update = deactivate
        saved = await reconciler.on_user_reports_status("u1", "em-1", "needs_help")

        row = await statuses.get("u1", "em-1")
        assert row.status == SafetyStatus.NEEDS_HELP
        assert row.resolution_note == RESOLUTION_NOTE
        assert saved.is_resolved

    async def test_report_during_location_refresh_is_not_overwritten(
        self, emergencies, locations
    ) -> None:
        statuses = RacingStatusStore(trigger="location_text")
        reconciler = self._reconciler(emergencies, locations, statuses)
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await locations.save(_location("u1", city="Oakland", postal_code="94107"))

        async def report() -> None:
            await reconciler.on_user_reports_status("u1", "em-1", "safe", location_text="Shelter")

        statuses.before_update = report
        result = await reconciler.on_emergency_changed("em-1")

        row = await statuses.get("u1", "em-1")
        assert statuses.before_update is None
        assert result.rows_updated == 0
        assert row.source == StatusSource.SELF_REPORT
        assert row.status == SafetyStatus.SAFE
        assert row.location_text == "Shelter"


# ---------------------------------------------------------------------------
# Unusable stored radius
# ---------------------------------------------------------------------------


class TestUnusableRadius:
    async def test_active_pass_rejects_zero_radius(self, emergencies, locations, statuses, reconciler) -> None:
        await emergencies.save(_emergency().model_copy(update={"radius_miles": 0.0}))
        await locations.save(_location("u1"))

        with pytest.raises(InvalidRadius):
            await reconciler.on_emergency_changed("em-1")
        assert statuses.size == 0

    async def test_reconcile_active_skips_bad_emergency(
        self, emergencies, locations, statuses, reconciler
    ) -> None:
        await emergencies.save(_emergency(id="bad").model_copy(update={"radius_miles": float("nan")}))
        await emergencies.save(_emergency(id="good"))
        await locations.save(_location("u1"))

        results = await reconciler.reconcile_active()

        assert [r.emergency_id for r in results] == ["good"]
        assert await statuses.get("u1", "good") is not None

    async def test_deactivation_ignores_radius(self, emergencies, locations, statuses, reconciler) -> None:
        await emergencies.save(_emergency())
        await locations.save(_location("u1"))
        await reconciler.on_emergency_changed("em-1")
        await emergencies.save(_emergency(is_active=False).model_copy(update={"radius_miles": 0.0}))

        result = await reconciler.on_emergency_changed("em-1")

        assert result.rows_updated == 1
