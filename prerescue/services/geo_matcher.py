"""Single source of truth for "is this place inside that geofence".

Every component that decides whether a location is affected by an
emergency goes through :class:`GeoMatcher`, so alert banners, agent
prioritisation and the status table can never disagree.

Distance rules:
    * Both points carry coordinates -> great-circle (Haversine) distance
      in miles.  This path always wins when available.
    * Otherwise -> a deterministic postal-code heuristic: the absolute
      difference of the normalised postal codes times a slope, plus a
      penalty when the region codes differ, capped at a maximum.  It is
      symmetric and returns 0 for identical postal/region pairs.
"""

from __future__ import annotations

import math
import re
from typing import Final

import structlog

from prerescue.models.emergency import GeoPoint
from prerescue.services.errors import GeomatchUnavailable, InvalidRadius

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Haversine distance calculation
# ---------------------------------------------------------------------------

_EARTH_RADIUS_MILES: Final[float] = 3958.8

_NON_DIGITS = re.compile(r"\D")


def haversine_miles(
    lat1: float, lon1: float, lat2: float, lon2: float
) -> float:
    """Calculate the great-circle distance between two points on Earth.

    Parameters
    ----------
    lat1, lon1:
        Latitude and longitude of point 1 in decimal degrees.
    lat2, lon2:
        Latitude and longitude of point 2 in decimal degrees.

    Returns
    -------
    float
        Distance in miles.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    # Rounding can push ``a`` a hair above 1 for antipodal points.
    a = min(a, 1.0)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return _EARTH_RADIUS_MILES * c


def validate_radius(radius_miles: float | None) -> float:
    """Return ``radius_miles`` if it is a finite number above 0.

    Raises
    ------
    InvalidRadius
        The radius is missing, zero, negative, NaN or infinite.
    """
    if radius_miles is None or not math.isfinite(radius_miles) or radius_miles <= 0:
        raise InvalidRadius(radius_miles)
    return radius_miles


# ---------------------------------------------------------------------------
# GeoMatcher
# ---------------------------------------------------------------------------


class GeoMatcher:
    """Pure, reproducible distance estimate and geofence test.

    Parameters
    ----------
    miles_per_postal_unit:
        Heuristic slope applied to the numeric postal-code difference.
    region_penalty_miles:
        Added when the two points lie in different regions.
    max_heuristic_miles:
        Upper bound on any heuristic estimate.
    postal_digits:
        Number of leading digits kept when normalising a postal code,
        so ``"94105-1234"`` and ``"94105"`` compare equal.

    Usage::

        matcher = GeoMatcher()
        matcher.within_radius(location.point, emergency.point, emergency.radius_miles)
    """

    __slots__ = (
        "_max_heuristic_miles",
        "_miles_per_postal_unit",
        "_postal_digits",
        "_region_penalty_miles",
    )

    def __init__(
        self,
        *,
        miles_per_postal_unit: float = 0.1,
        region_penalty_miles: float = 50.0,
        max_heuristic_miles: float = 500.0,
        postal_digits: int = 5,
    ) -> None:
        self._miles_per_postal_unit = miles_per_postal_unit
        self._region_penalty_miles = region_penalty_miles
        self._max_heuristic_miles = max_heuristic_miles
        self._postal_digits = postal_digits

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def distance(self, a: GeoPoint, b: GeoPoint) -> float:
        """Estimated distance in miles between two points.

        Raises
        ------
        GeomatchUnavailable
            Coordinates are missing and a postal code has no usable digits.
        """
        if a.has_coordinates and b.has_coordinates:
            return haversine_miles(a.latitude, a.longitude, b.latitude, b.longitude)  # type: ignore[arg-type]
        return self._postal_distance(a, b)

    def within_radius(self, a: GeoPoint, b: GeoPoint, radius_miles: float) -> bool:
        """Return True when ``distance(a, b) <= radius_miles``.

        A point pair that cannot be matched is treated as *not* within
        the radius and logged for operators.
        """
        validate_radius(radius_miles)
        try:
            return self.distance(a, b) <= radius_miles
        except GeomatchUnavailable as exc:
            logger.warning(
                "geo_matcher.unavailable",
                postal_a=exc.postal_a,
                postal_b=exc.postal_b,
                region_a=a.region_code,
                region_b=b.region_code,
            )
            return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _postal_distance(self, a: GeoPoint, b: GeoPoint) -> float:
        same_region = _normalise_region(a.region_code) == _normalise_region(b.region_code)
        if same_region and a.postal_code.strip() == b.postal_code.strip():
            return 0.0

        num_a = self._normalise_postal(a.postal_code)
        num_b = self._normalise_postal(b.postal_code)
        if num_a is None or num_b is None:
            raise GeomatchUnavailable(a.postal_code, b.postal_code)

        distance = abs(num_a - num_b) * self._miles_per_postal_unit
        if not same_region:
            distance += self._region_penalty_miles

        return min(distance, self._max_heuristic_miles)

    def _normalise_postal(self, postal_code: str) -> int | None:
        digits = _NON_DIGITS.sub("", postal_code)[: self._postal_digits]
        if not digits:
            return None
        return int(digits)


def _normalise_region(region_code: str) -> str:
    return region_code.strip().upper()
