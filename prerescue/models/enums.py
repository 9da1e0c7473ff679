from __future__ import annotations

from enum import StrEnum


class SafetyStatus(StrEnum):
    """Closed set of safety states a user can be in for one emergency."""

    __slots__ = ()

    SAFE = "safe"
    NEEDS_HELP = "needs_help"
    AT_HOME = "at_home"
    EVACUATED = "evacuated"
    UNKNOWN = "unknown"


class StatusSource(StrEnum):
    __slots__ = ()

    AUTOMATIC = "automatic"
    SELF_REPORT = "self_report"
