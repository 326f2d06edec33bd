"""Per-room debounce map for chatty events.

Held by the service that owns it and passed around explicitly; the clock
is injected so tests can move time by hand.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta


class RoomDebouncer:
    """Allows at most one emission per room within `window`."""

    def __init__(self, window: timedelta, clock: Callable[[], datetime]) -> None:
        self._window = window
        self._clock = clock
        self._last: dict[str, datetime] = {}

    def should_emit(self, room_id: str) -> bool:
        now = self._clock()
        last = self._last.get(room_id)
        if last is not None and now - last < self._window:
            return False
        self._last[room_id] = now
        return True

    def reset(self, room_id: str) -> None:
        self._last.pop(room_id, None)
