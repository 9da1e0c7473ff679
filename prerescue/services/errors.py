"""Error taxonomy for the emergency matching engine.

``NotFound``, ``InvalidRadius`` and ``InvalidStatus`` are caller errors
and are raised synchronously.  ``PartialReconciliationFailure`` is never
raised mid-pass; it is assembled from the per-user failures of a
finished pass.  ``GeomatchUnavailable`` is raised by
``GeoMatcher.distance`` and degraded to "not affected" by
``GeoMatcher.within_radius``.
"""

from __future__ import annotations

from prerescue.models.enums import SafetyStatus


class PreRescueError(Exception):
    """Base class for all engine errors."""


class NotFound(PreRescueError):
    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class InvalidRadius(PreRescueError):
    def __init__(self, radius_miles: float) -> None:
        self.radius_miles = radius_miles
        super().__init__(f"radius_miles must be a finite number greater than 0, got {radius_miles!r}")


class InvalidStatus(PreRescueError):
    def __init__(self, value: object) -> None:
        self.value = value
        valid = ", ".join(s.value for s in SafetyStatus)
        super().__init__(f"Invalid status {value!r}. Valid statuses: {valid}")


class GeomatchUnavailable(PreRescueError):
    def __init__(self, postal_a: str, postal_b: str) -> None:
        self.postal_a = postal_a
        self.postal_b = postal_b
        super().__init__(
            f"Cannot estimate distance between postal codes {postal_a!r} and "
            f"{postal_b!r} without coordinates"
        )


class PartialReconciliationFailure(PreRescueError):
    """One or more per-user writes failed during a reconciliation pass.

    The pass itself ran to completion; re-running it is safe.
    """

    def __init__(
        self,
        emergency_id: str,
        affected_count: int,
        failed_user_ids: list[str],
        errors: list[Exception],
    ) -> None:
        self.emergency_id = emergency_id
        self.affected_count = affected_count
        self.failed_user_ids = failed_user_ids
        self.errors = errors
        super().__init__(
            f"Reconciliation of emergency '{emergency_id}' failed for "
            f"{len(failed_user_ids)} of {affected_count} affected users"
        )
