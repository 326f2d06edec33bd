"""
RoomSync — Auto-Confirm Scheduler.

A pure pipeline, find_due_rooms() → process_room(), driven by whatever
ticker the host provides (the bot's job queue in production, a direct
call with a fake clock in tests). Rooms are processed independently: a
failure is logged and the sweep moves on. A room whose deadline passed
keeps being retried every sweep until it is confirmed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from roomsync.core.errors import AlreadyConfirmedError

if TYPE_CHECKING:
    from roomsync.core.confirmation import ConfirmationEngine, ConfirmationResult
    from roomsync.data.db import RoomDB
    from roomsync.data.models import Room

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    confirmed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class AutoConfirmScheduler:
    """Confirms rooms whose auto-confirm deadline has passed."""

    def __init__(self, room_db: RoomDB, engine: ConfirmationEngine, clock: Callable[[], datetime]) -> None:
        self._room_db = room_db
        self._engine = engine
        self._clock = clock

    def find_due_rooms(self) -> list[Room]:
        return self._room_db.find_due_rooms(self._clock())

    async def process_room(self, room: Room) -> ConfirmationResult:
        logger.info("Auto-confirming room %s (deadline %s)", room.id, room.auto_confirm_at)
        return await self._engine.confirm(room.id)

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        for room in self.find_due_rooms():
            try:
                await self.process_room(room)
                report.confirmed.append(room.id)
            except AlreadyConfirmedError:
                # A manual confirmation won the race
                report.skipped.append(room.id)
            except Exception as exc:
                logger.exception("Auto-confirm failed for room %s", room.id)
                report.failed[room.id] = str(exc)
        if report.confirmed or report.failed:
            logger.info(
                "Auto-confirm sweep: %d confirmed, %d skipped, %d failed",
                len(report.confirmed), len(report.skipped), len(report.failed),
            )
        return report
