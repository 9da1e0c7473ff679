"""Tests for AffectedQuery and its agreement with the reconciler."""

from __future__ import annotations

from typing import Any

import pytest

from prerescue.models.emergency import Emergency, Location
from prerescue.services.affected import AffectedQuery
from prerescue.services.geo_matcher import GeoMatcher
from prerescue.services.reconciler import StatusReconciler
from prerescue.services.stores import (
    InMemoryEmergencyStore,
    InMemoryLocationStore,
    InMemoryStatusStore,
)


@pytest.fixture
def emergencies() -> InMemoryEmergencyStore:
    return InMemoryEmergencyStore()


@pytest.fixture
def locations() -> InMemoryLocationStore:
    return InMemoryLocationStore()


@pytest.fixture
def matcher() -> GeoMatcher:
    return GeoMatcher()


@pytest.fixture
def query(emergencies, locations, matcher) -> AffectedQuery:
    return AffectedQuery(emergencies=emergencies, locations=locations, matcher=matcher)


def _emergency(emergency_id: str, **overrides: Any) -> Emergency:
    data: dict[str, Any] = {
        "id": emergency_id,
        "title": f"Emergency {emergency_id}",
        "category": "flood",
        "postal_code": "94105",
        "region_code": "CA",
        "radius_miles": 10.0,
    }
    data.update(overrides)
    return Emergency(**data)


class TestAffectedQuery:
    async def test_user_without_locations_is_not_affected(self, emergencies, query) -> None:
        await emergencies.save(_emergency("em-1"))
        assert await query.is_user_affected("nobody") is False
        assert await query.list_affecting_emergencies("nobody") == []

    async def test_user_inside_geofence(self, emergencies, locations, query) -> None:
        await emergencies.save(_emergency("em-1"))
        await locations.save(Location(owner_id="u1", postal_code="94110", region_code="CA"))

        affecting = await query.list_affecting_emergencies("u1")

        assert [e.id for e in affecting] == ["em-1"]
        assert await query.is_user_affected("u1") is True

    async def test_inactive_emergencies_are_ignored(self, emergencies, locations, query) -> None:
        await emergencies.save(_emergency("em-1", is_active=False))
        await locations.save(Location(owner_id="u1", postal_code="94105", region_code="CA"))

        assert await query.is_user_affected("u1") is False

    async def test_any_location_counts(self, emergencies, locations, query) -> None:
        await emergencies.save(_emergency("em-1"))
        await locations.save(Location(owner_id="u1", postal_code="10001", region_code="NY"))
        await locations.save(Location(owner_id="u1", postal_code="94105", region_code="CA"))

        assert await query.is_user_affected("u1") is True

    async def test_multiple_emergencies(self, emergencies, locations, query) -> None:
        await emergencies.save(_emergency("em-1"))
        await emergencies.save(_emergency("em-2", postal_code="94107"))
        await emergencies.save(_emergency("em-3", postal_code="10001", region_code="NY"))
        await locations.save(Location(owner_id="u1", postal_code="94105", region_code="CA"))

        affecting = await query.list_affecting_emergencies("u1")

        assert sorted(e.id for e in affecting) == ["em-1", "em-2"]

    async def test_agrees_with_reconciler(self, emergencies, locations, matcher, query) -> None:
        statuses = InMemoryStatusStore()
        reconciler = StatusReconciler(
            emergencies=emergencies,
            locations=locations,
            statuses=statuses,
            matcher=matcher,
        )
        await emergencies.save(
            _emergency("em-1", radius_miles=5, latitude=37.7897, longitude=-122.3942)
        )
        fixtures = {
            "near-coords": {"postal_code": "94105", "latitude": 37.80, "longitude": -122.40},
            "far-coords": {"postal_code": "94105", "latitude": 37.7897 + 0.11868, "longitude": -122.3942},
            "near-postal": {"postal_code": "94110"},
            "far-postal": {"postal_code": "94170"},
            "bad-postal": {"postal_code": "N/A"},
        }
        for owner, fields in fixtures.items():
            await locations.save(Location(owner_id=owner, region_code="CA", **fields))

        await reconciler.on_emergency_changed("em-1")

        with_rows = {r.user_id for r in await statuses.list_by_emergency("em-1")}
        affected = {owner for owner in fixtures if await query.is_user_affected(owner)}
        assert with_rows == affected == {"near-coords", "near-postal"}

    async def test_unusable_stored_radius_is_skipped(self, emergencies, locations, query) -> None:
        await emergencies.save(_emergency("em-bad").model_copy(update={"radius_miles": 0.0}))
        await emergencies.save(_emergency("em-good"))
        await locations.save(Location(owner_id="u1", postal_code="94105", region_code="CA"))

        affecting = await query.list_affecting_emergencies("u1")

        assert [e.id for e in affecting] == ["em-good"]
        assert await query.is_user_affected("u1") is True
