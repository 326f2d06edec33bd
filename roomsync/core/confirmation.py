"""
RoomSync — Confirmation Engine.

The terminal operation of a room: assigned slots are merged per
(user, date) and written into every participant's personal calendar,
the consumed parts of their preferences are cut out (with a per-room
backup) and the room is marked confirmed.

Mutual exclusion comes from RoomDB.claim_confirmation: exactly one caller
can move confirmed_at from NULL, so a manual confirm racing the
auto-confirm sweep yields one success and one AlreadyConfirmedError.
User documents are saved with compare-and-swap and a bounded retry that
reloads the user and reapplies the same changes. Reapplying is
idempotent: calendar entries are deduplicated and preference removal is
a no-op once the consumed ranges are gone.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from roomsync.core.errors import AlreadyConfirmedError, NotFoundError, NothingToConfirmError
from roomsync.core.ledger import assigned_slots, is_assigned, require_owner
from roomsync.core.preferences import remove_consumed_preferences
from roomsync.core.retry import RetryPolicy, retry_on_conflict
from roomsync.core.time_units import Block, day_of_week, merge_consecutive
from roomsync.data.db import ActivityLogDB, RoomDB, UserDB
from roomsync.data.models import PersonalTime, Room, TimeSlot, TravelMode, User
from roomsync.ports.event_port import SCHEDULE_CONFIRMED, RoomEventPublisher

logger = logging.getLogger(__name__)

MEMBER_COLOR = "#10B981"
OWNER_COLOR = "#3B82F6"
TRAVEL_COLOR = "#FFA500"
TRAVEL_LABEL = "Travel"


@dataclass
class ConfirmationResult:
    confirmed_slots_count: int
    merged_slots_count: int
    affected_members_count: int
    confirmed_travel_mode: TravelMode


# ---------------------------------------------------------------------------
# Calendar materialization (pure, applied to a freshly loaded User)
# ---------------------------------------------------------------------------


def _next_id(user: User) -> int:
    return max((pt.id for pt in user.personal_times), default=0) + 1


def add_calendar_entries(
    user: User, blocks: list[Block], title: str, color: str, *, match_title: str | None = None,
) -> int:
    """Append one personal-time entry per block, skipping exact duplicates.

    Duplicates share (date, start, end) and, when match_title is given,
    contain that text in their title. Returns the number added.
    """
    added = 0
    for block in blocks:
        duplicate = any(
            pt.specific_date == block.date
            and pt.start_time == block.start_time
            and pt.end_time == block.end_time
            and (match_title is None or match_title in pt.title)
            for pt in user.personal_times
        )
        if duplicate:
            continue
        user.personal_times.append(PersonalTime(
            id=_next_id(user),
            title=title,
            start_time=block.start_time,
            end_time=block.end_time,
            days=[day_of_week(block.date)],
            specific_date=block.date,
            color=color,
        ))
        added += 1
    return added


@dataclass
class _UserChanges:
    """Everything one user receives from a confirmation, computed once from the room."""

    user_id: str
    consumed: list[TimeSlot]
    own_blocks: list[Block]
    own_title: str
    member_blocks: dict[str, list[Block]] | None = None     # owner only
    travel_blocks: list[Block] | None = None                # owner only

    def apply(self, user: User, room: Room, names: dict[str, str], now: datetime) -> None:
        remove_consumed_preferences(user, self.consumed, room.id, now)
        add_calendar_entries(user, self.own_blocks, self.own_title, MEMBER_COLOR)
        for member_id, blocks in (self.member_blocks or {}).items():
            name = names[member_id]
            add_calendar_entries(user, blocks, f"{room.name} - {name}", OWNER_COLOR, match_title=name)
        if self.travel_blocks:
            add_calendar_entries(
                user, self.travel_blocks, f"{room.name} - {TRAVEL_LABEL}", TRAVEL_COLOR,
                match_title=TRAVEL_LABEL,
            )


class ConfirmationEngine:
    """Confirms rooms. All collaborators are injected."""

    def __init__(
        self,
        room_db: RoomDB,
        user_db: UserDB,
        activity_db: ActivityLogDB,
        publisher: RoomEventPublisher,
        clock: Callable[[], datetime],
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._room_db = room_db
        self._user_db = user_db
        self._activity_db = activity_db
        self._publisher = publisher
        self._clock = clock
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def confirm(
        self, room_id: str, actor_id: str | None = None, actor_name: str = "system",
    ) -> ConfirmationResult:
        """Confirm a room once. actor_id None means an unattended (auto) confirmation.

        Raises NotFoundError, AuthorizationError, AlreadyConfirmedError,
        NothingToConfirmError or ConcurrencyError.
        """
        room = self._room_db.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found.")
        if actor_id is not None:
            require_owner(room, actor_id, "confirm the schedule")
        if room.confirmed_at is not None:
            raise AlreadyConfirmedError(room_id)
        slots = assigned_slots(room)
        if not slots:
            raise NothingToConfirmError(room_id)

        now = self._clock()
        if not self._room_db.claim_confirmation(room_id, now):
            raise AlreadyConfirmedError(room_id)

        try:
            result = await self._commit(room, slots, now)
        except Exception:
            self._room_db.release_confirmation(room_id, now)
            raise

        self._activity_db.log_activity(
            room_id, actor_id, actor_name, "confirm_schedule",
            f"Confirmed {result.confirmed_slots_count} slot(s) as {result.merged_slots_count} "
            f"block(s) for {result.affected_members_count} member(s) and the owner",
            {
                "confirmedSlotsCount": result.confirmed_slots_count,
                "mergedSlotsCount": result.merged_slots_count,
                "affectedMembersCount": result.affected_members_count,
                "confirmedTravelMode": result.confirmed_travel_mode.value,
            },
        )
        await self._publisher.publish(room_id, SCHEDULE_CONFIRMED, {
            "roomId": room_id,
            "message": f"The schedule of {room.name} has been confirmed.",
            "timestamp": now.isoformat(),
        })
        logger.info(
            "Room %s confirmed by %s: %d slot(s), %d block(s), %d member(s)",
            room_id, actor_id or "auto-confirm", result.confirmed_slots_count,
            result.merged_slots_count, result.affected_members_count,
        )
        return result

    def _plan(self, room: Room, slots: list[TimeSlot], names: dict[str, str]) -> list[_UserChanges]:
        blocks_by_user: dict[str, list[Block]] = {}
        for block in merge_consecutive(slots):
            blocks_by_user.setdefault(block.owner, []).append(block)
        travel_blocks = merge_consecutive(room.travel_time_slots)
        owner_name = names[room.owner]

        changes: list[_UserChanges] = []
        for user_id, blocks in blocks_by_user.items():
            if user_id == room.owner:
                continue
            changes.append(_UserChanges(
                user_id=user_id,
                consumed=[s for s in slots if s.user == user_id],
                own_blocks=blocks,
                own_title=f"{room.name} - {owner_name}",
            ))
        changes.append(_UserChanges(
            user_id=room.owner,
            consumed=[*slots, *room.travel_time_slots],
            own_blocks=blocks_by_user.get(room.owner, []),
            own_title=f"{room.name} - {owner_name}",
            member_blocks={uid: b for uid, b in blocks_by_user.items() if uid != room.owner},
            travel_blocks=travel_blocks,
        ))
        return changes

    def _load_user(self, user_id: str) -> User:
        user = self._user_db.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        return user

    async def _commit(self, room: Room, slots: list[TimeSlot], now: datetime) -> ConfirmationResult:
        user_ids = {s.user for s in slots} | {room.owner}
        names = {uid: self._load_user(uid).display_name or uid for uid in user_ids}
        changes = self._plan(room, slots, names)

        for change in changes:
            async def save_one(change: _UserChanges = change) -> User:
                user = self._load_user(change.user_id)
                change.apply(user, room, names, now)
                return self._user_db.save_user(user)

            await retry_on_conflict(save_one, self._retry, sleep=self._sleep)

        travel_mode = room.current_travel_mode or TravelMode.NORMAL
        confirmed_keys = {(s.user, s.date, s.start_time, s.end_time) for s in slots}

        async def save_room() -> Room:
            fresh = self._room_db.get_room(room.id)
            if fresh is None:
                raise NotFoundError(f"Room {room.id} not found.")
            fresh.confirmed_at = now
            fresh.auto_confirm_at = None
            fresh.confirmed_travel_mode = travel_mode
            for slot in fresh.time_slots:
                if is_assigned(slot) and (slot.user, slot.date, slot.start_time, slot.end_time) in confirmed_keys:
                    slot.confirmed_to_personal_calendar = True
            return self._room_db.save_room(fresh)

        await retry_on_conflict(save_room, self._retry, sleep=self._sleep)

        return ConfirmationResult(
            confirmed_slots_count=len(slots),
            merged_slots_count=len(merge_consecutive(slots)),
            affected_members_count=len({s.user for s in slots}),
            confirmed_travel_mode=travel_mode,
        )
