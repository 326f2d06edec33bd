"""Event port — abstract interface for the real-time room channel.

Core modules publish through this protocol, never through a specific
transport. Payloads always carry roomId, message and timestamp.
"""

from __future__ import annotations

from typing import Any, Protocol

SCHEDULE_CONFIRMED = "schedule-confirmed"
NEGOTIATION_UPDATED = "negotiation-updated"
NEGOTIATION_MESSAGE = "negotiation-message"
TRAVEL_MODE_CHANGED = "travel-mode-changed"


class RoomEventPublisher(Protocol):
    """Abstract event publisher used by core modules."""

    async def publish(self, room_id: str, event: str, payload: dict[str, Any]) -> None: ...
