from prerescue.models.emergency import (
    Emergency,
    GeoPoint,
    Location,
    UserEmergencyStatus,
)
from prerescue.models.enums import SafetyStatus, StatusSource

__all__ = [
    "Emergency",
    "GeoPoint",
    "Location",
    "SafetyStatus",
    "StatusSource",
    "UserEmergencyStatus",
]
