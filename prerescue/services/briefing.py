"""Emergency briefing for the chat and voice agent layer.

Before answering a user, the agents need to know whether that user is
inside an active emergency, what the operators have instructed for it,
and what the user has already reported.  This service gathers those
facts in one call and renders them as plain-text prompt context.

``response_directives`` are operator text and are passed through exactly
as stored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from prerescue.models.emergency import Emergency, UserEmergencyStatus

if TYPE_CHECKING:
    from prerescue.services.affected import AffectedQuery
    from prerescue.services.stores import EmergencyStore, StatusStore

logger = structlog.get_logger(__name__)


class EmergencyBriefing(BaseModel):
    """Everything the agent layer needs to prioritise one user."""

    user_id: str
    is_affected: bool
    affecting_emergencies: list[Emergency] = Field(default_factory=list)
    statuses: list[UserEmergencyStatus] = Field(default_factory=list)
    active_emergency_count: int = 0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_prompt_context(self) -> str:
        """Render the briefing as the text block agents embed in their prompts."""
        titles = {e.id: e.title for e in self.affecting_emergencies}

        lines = ["AFFECTING EMERGENCIES:"]
        if self.affecting_emergencies:
            for e in self.affecting_emergencies:
                lines.append(
                    f"- {e.title} ({e.category}) in {e.region_code} {e.postal_code}, "
                    f"{e.radius_miles:g} mile radius"
                )
                if e.response_directives:
                    lines.append(f"  Directives: {e.response_directives}")
        else:
            lines.append("No active emergencies")

        lines.append("")
        lines.append("USER STATUS:")
        if self.statuses:
            for s in self.statuses:
                title = titles.get(s.emergency_id, s.emergency_id)
                lines.append(f"- {title}: {s.status.value} ({s.location_text or 'No location'})")
        else:
            lines.append("No status updates")

        lines.append("")
        lines.append(f"Active emergencies system-wide: {self.active_emergency_count}")
        return "\n".join(lines)


class EmergencyBriefingService:
    """Builds :class:`EmergencyBriefing` objects on demand."""

    __slots__ = ("_affected", "_emergencies", "_statuses")

    def __init__(
        self,
        *,
        affected: AffectedQuery,
        emergencies: EmergencyStore,
        statuses: StatusStore,
    ) -> None:
        self._affected = affected
        self._emergencies = emergencies
        self._statuses = statuses

    async def build(self, user_id: str) -> EmergencyBriefing:
        active = await self._emergencies.list_active()
        active_ids = {e.id for e in active}
        affecting = await self._affected.list_affecting_emergencies(user_id)

        # A self-report can exist for an active emergency whose geofence
        # does not cover the user; it still belongs in the briefing.
        statuses = [
            s for s in await self._statuses.list_by_user(user_id)
            if s.emergency_id in active_ids
        ]
        statuses.sort(key=lambda s: s.updated_at, reverse=True)

        briefing = EmergencyBriefing(
            user_id=user_id,
            is_affected=bool(affecting),
            affecting_emergencies=affecting,
            statuses=statuses,
            active_emergency_count=len(active),
        )

        logger.info(
            "briefing.built",
            user_id=user_id,
            is_affected=briefing.is_affected,
            affecting=len(affecting),
            statuses=len(statuses),
        )
        return briefing
