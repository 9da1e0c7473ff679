"""Store interfaces consumed by the engine, plus in-memory implementations.

The engine never talks to a database directly; it receives these stores
through its constructors.  The in-memory versions are process-local and
guarded by an :class:`asyncio.Lock` (sufficient for single-process async
workloads and for tests); :mod:`prerescue.services.redis_stores` provides
shared, persistent versions of the same protocols.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from prerescue.models.emergency import Emergency, Location, UserEmergencyStatus

# ---------------------------------------------------------------------------
# Store protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class EmergencyStore(Protocol):
    """Emergency declarations keyed by opaque id."""

    async def get(self, emergency_id: str) -> Emergency | None: ...

    async def save(self, emergency: Emergency) -> None: ...

    async def list_all(self) -> list[Emergency]: ...

    async def list_active(self) -> list[Emergency]: ...


@runtime_checkable
class LocationStore(Protocol):
    """User-owned locations; ``list_locations(None)`` returns every location."""

    async def get(self, location_id: str) -> Location | None: ...

    async def save(self, location: Location) -> None: ...

    async def list_locations(self, owner_id: str | None = None) -> list[Location]: ...


@runtime_checkable
class StatusStore(Protocol):
    """``UserEmergencyStatus`` rows with upsert-on-conflict semantics.

    Every write is atomic per ``(user_id, emergency_id)`` row.
    ``update`` merges only the given fields and, when ``only_if`` is
    passed, applies the merge only if every listed field still holds the
    expected value; it returns None when the row is missing or the
    condition no longer holds.
    """

    async def get(self, user_id: str, emergency_id: str) -> UserEmergencyStatus | None: ...

    async def insert_if_absent(self, row: UserEmergencyStatus) -> bool: ...

    async def upsert(self, row: UserEmergencyStatus) -> UserEmergencyStatus: ...

    async def update(
        self,
        user_id: str,
        emergency_id: str,
        fields: dict[str, Any],
        *,
        only_if: dict[str, Any] | None = None,
    ) -> UserEmergencyStatus | None: ...

    async def list_by_user(self, user_id: str) -> list[UserEmergencyStatus]: ...

    async def list_by_emergency(self, emergency_id: str) -> list[UserEmergencyStatus]: ...


def matches(row: UserEmergencyStatus, only_if: dict[str, Any] | None) -> bool:
    """True when every ``only_if`` field of ``row`` equals the expected value."""
    if not only_if:
        return True
    return all(getattr(row, name) == expected for name, expected in only_if.items())


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryEmergencyStore:
    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[str, Emergency] = {}
        self._lock = asyncio.Lock()

    async def get(self, emergency_id: str) -> Emergency | None:
        async with self._lock:
            emergency = self._data.get(emergency_id)
            return emergency.model_copy() if emergency is not None else None

    async def save(self, emergency: Emergency) -> None:
        async with self._lock:
            self._data[emergency.id] = emergency.model_copy()

    async def list_all(self) -> list[Emergency]:
        async with self._lock:
            return sorted(
                (e.model_copy() for e in self._data.values()),
                key=lambda e: e.created_at,
                reverse=True,
            )

    async def list_active(self) -> list[Emergency]:
        return [e for e in await self.list_all() if e.is_active]


class InMemoryLocationStore:
    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[str, Location] = {}
        self._lock = asyncio.Lock()

    async def get(self, location_id: str) -> Location | None:
        async with self._lock:
            location = self._data.get(location_id)
            return location.model_copy() if location is not None else None

    async def save(self, location: Location) -> None:
        async with self._lock:
            self._data[location.id] = location.model_copy()

    async def list_locations(self, owner_id: str | None = None) -> list[Location]:
        async with self._lock:
            return [
                loc.model_copy()
                for loc in self._data.values()
                if owner_id is None or loc.owner_id == owner_id
            ]


class InMemoryStatusStore:
    """Dictionary keyed by ``(user_id, emergency_id)``.

    Rows are copied on the way in and out so callers can never mutate
    stored state without going through a write method.
    """

    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], UserEmergencyStatus] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str, emergency_id: str) -> UserEmergencyStatus | None:
        async with self._lock:
            row = self._data.get((user_id, emergency_id))
            return row.model_copy() if row is not None else None

    async def insert_if_absent(self, row: UserEmergencyStatus) -> bool:
        async with self._lock:
            if row.key in self._data:
                return False
            self._data[row.key] = row.model_copy()
            return True

    async def upsert(self, row: UserEmergencyStatus) -> UserEmergencyStatus:
        async with self._lock:
            self._data[row.key] = row.model_copy()
            return row.model_copy()

    async def update(
        self,
        user_id: str,
        emergency_id: str,
        fields: dict[str, Any],
        *,
        only_if: dict[str, Any] | None = None,
    ) -> UserEmergencyStatus | None:
        async with self._lock:
            existing = self._data.get((user_id, emergency_id))
            if existing is None or not matches(existing, only_if):
                return None
            merged = existing.model_copy(update=fields)
            self._data[merged.key] = merged
            return merged.model_copy()

    async def list_by_user(self, user_id: str) -> list[UserEmergencyStatus]:
        async with self._lock:
            return [r.model_copy() for r in self._data.values() if r.user_id == user_id]

    async def list_by_emergency(self, emergency_id: str) -> list[UserEmergencyStatus]:
        async with self._lock:
            return [r.model_copy() for r in self._data.values() if r.emergency_id == emergency_id]

    @property
    def size(self) -> int:
        """Number of stored rows."""
        return len(self._data)
