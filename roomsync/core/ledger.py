"""
RoomSync — Room Slot Ledger.

The authoritative list of claimed, assigned and confirmed slots of a room.
Submissions replace a member's whole claim set; the owner can assign a slot
to a member; common-slot detection reports intervals claimed by more than
one member, which is the input of the negotiation state machine.

All functions mutate the Room document in place and raise on permission
or validation failures. Persisting is the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from roomsync.core.errors import AuthorizationError, InvalidSlotError, NotFoundError
from roomsync.core.time_units import (
    day_sort_key,
    minutes_to_time,
    split_midnight,
    time_to_minutes,
    weekday_name,
)
from roomsync.data.models import (
    CarryOverEntry,
    ProgressEntry,
    SlotStatus,
    TimeSlot,
)

if TYPE_CHECKING:
    from roomsync.data.models import Room

logger = logging.getLogger(__name__)


@dataclass
class SlotRequest:
    """A slot as submitted by a member, before it enters the ledger."""

    date: str
    start_time: str
    end_time: str
    priority: int = 3
    subject: str = ""


@dataclass
class CommonSlotGroup:
    """Slots sharing (day, start_time) across more than one member."""

    day: str
    start_time: str
    end_time: str
    members: list[str] = field(default_factory=list)
    slots: list[TimeSlot] = field(default_factory=list)


@dataclass
class CommonSlotReport:
    total_slots: int
    common_slots: list[CommonSlotGroup]

    @property
    def conflict_count(self) -> int:
        return len(self.common_slots)


# ---------------------------------------------------------------------------
# Permission helpers
# ---------------------------------------------------------------------------


def require_owner(room: Room, user_id: str, action: str) -> None:
    if not room.is_owner(user_id):
        logger.warning("Authorization denied: %s is not owner of room %s (%s)", user_id, room.id, action)
        raise AuthorizationError(f"Only the room owner can {action}.")


def require_member(room: Room, user_id: str, action: str) -> None:
    if not room.is_member(user_id):
        logger.warning("Authorization denied: %s is not a member of room %s (%s)", user_id, room.id, action)
        raise AuthorizationError(f"You are not a member of this room and cannot {action}.")


# ---------------------------------------------------------------------------
# Slot normalization
# ---------------------------------------------------------------------------


def _normalize(request: SlotRequest) -> list[tuple[str, str]]:
    """Validate times and split midnight-crossing requests into same-day pieces."""
    try:
        start = time_to_minutes(request.start_time)
        end = time_to_minutes(request.end_time)
        weekday_name(request.date)
    except ValueError as exc:
        raise InvalidSlotError(f"Invalid slot {request.date} {request.start_time}-{request.end_time}: {exc}") from exc
    if start == end:
        raise InvalidSlotError(f"Empty slot {request.date} {request.start_time}-{request.end_time}")
    if not 1 <= request.priority <= 5:
        raise InvalidSlotError(f"Priority must be between 1 and 5, got {request.priority}")
    return [
        (minutes_to_time(seg.start), minutes_to_time(seg.end))
        for seg in split_midnight(start, end)
    ]


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


def submit_slots(
    room: Room, user_id: str, requests: list[SlotRequest], now: datetime,
) -> list[TimeSlot]:
    """Replace ALL of a member's slots with the supplied set.

    Latest submission wins: earlier claims of this member are dropped even
    when the new set is empty.
    """
    require_member(room, user_id, "submit slots")

    new_slots: list[TimeSlot] = []
    for req in requests:
        for start_time, end_time in _normalize(req):
            new_slots.append(
                TimeSlot(
                    user=user_id,
                    date=req.date,
                    day=weekday_name(req.date),
                    start_time=start_time,
                    end_time=end_time,
                    priority=req.priority,
                    status=SlotStatus.CONFIRMED,
                    claimed_at=now,
                    subject=req.subject,
                )
            )

    room.time_slots = [s for s in room.time_slots if s.user != user_id] + new_slots
    logger.info("User %s submitted %d slot(s) to room %s", user_id, len(new_slots), room.id)
    return new_slots


def remove_slot(room: Room, user_id: str, iso_date: str, start_time: str, end_time: str) -> bool:
    """Delete exactly the matching slot owned by user_id. Returns whether one was removed."""
    before = len(room.time_slots)
    room.time_slots = [
        s for s in room.time_slots
        if not (
            s.user == user_id
            and s.date == iso_date
            and s.start_time == start_time
            and s.end_time == end_time
        )
    ]
    removed = len(room.time_slots) < before
    if removed:
        logger.info("User %s removed slot %s %s-%s from room %s", user_id, iso_date, start_time, end_time, room.id)
    return removed


def assign_slot(
    room: Room,
    owner_id: str,
    iso_date: str,
    start_time: str,
    end_time: str,
    target_user_id: str,
    now: datetime,
) -> TimeSlot:
    """Owner-only: assign an interval to a member, replacing any prior assignment of it."""
    require_owner(room, owner_id, "assign slots")
    if not room.is_member(target_user_id):
        raise NotFoundError(f"User {target_user_id} is not a member of this room.")

    (start_time, end_time), *rest = _normalize(SlotRequest(iso_date, start_time, end_time))
    if rest:
        raise InvalidSlotError("Assignments cannot cross midnight; assign each day separately.")

    day = weekday_name(iso_date)
    room.time_slots = [
        s for s in room.time_slots
        if not (
            s.assigned_by
            and s.date == iso_date
            and s.start_time == start_time
            and s.end_time == end_time
        )
    ]
    slot = TimeSlot(
        user=target_user_id,
        date=iso_date,
        day=day,
        start_time=start_time,
        end_time=end_time,
        status=SlotStatus.CONFIRMED,
        assigned_by=owner_id,
        assigned_at=now,
        claimed_at=now,
    )
    room.time_slots.append(slot)
    logger.info(
        "Owner %s assigned %s %s-%s to %s in room %s",
        owner_id, iso_date, start_time, end_time, target_user_id, room.id,
    )
    return slot


def find_common_slots(room: Room) -> CommonSlotReport:
    """Group slots by (day, start_time); report groups with more than one member.

    Sorted by fixed weekday order, then start time.
    """
    groups: dict[tuple[str, str], CommonSlotGroup] = {}
    for slot in room.time_slots:
        if slot.is_travel:
            continue
        key = (slot.day, slot.start_time)
        group = groups.get(key)
        if group is None:
            group = groups[key] = CommonSlotGroup(slot.day, slot.start_time, slot.end_time)
        group.slots.append(slot)
        if slot.user not in group.members:
            group.members.append(slot.user)

    common = sorted(
        (g for g in groups.values() if len(g.members) > 1),
        key=lambda g: (day_sort_key(g.day), g.start_time),
    )
    return CommonSlotReport(total_slots=len(groups), common_slots=common)


def is_assigned(slot: TimeSlot) -> bool:
    return slot.status == SlotStatus.CONFIRMED and bool(slot.assigned_by) and not slot.is_travel


def assigned_slots(room: Room) -> list[TimeSlot]:
    """Slots eligible for confirmation: confirmed status and an assigner."""
    return [s for s in room.time_slots if is_assigned(s)]


# ---------------------------------------------------------------------------
# Member bookkeeping
# ---------------------------------------------------------------------------


def reset_carry_over(room: Room, owner_id: str, now: datetime) -> int:
    """Owner-only: zero every member's carry-over, recording the reset."""
    require_owner(room, owner_id, "reset carry-over times")
    reset = 0
    for member in room.members:
        if member.carry_over > 0:
            previous = member.carry_over
            member.carry_over = 0.0
            member.carry_over_history.append(
                CarryOverEntry(week=now, amount=-previous, reason="admin_reset", timestamp=now)
            )
            reset += 1
    logger.info("Reset carry-over for %d member(s) in room %s", reset, room.id)
    return reset


def reset_progress(room: Room, owner_id: str, now: datetime) -> int:
    """Owner-only: zero every member's completed time, recording the reset."""
    require_owner(room, owner_id, "reset completed times")
    reset = 0
    for member in room.members:
        if member.total_progress_time > 0:
            member.progress_history.append(
                ProgressEntry(date=now, action="reset", previous_value=member.total_progress_time)
            )
            member.total_progress_time = 0.0
            reset += 1
    logger.info("Reset progress for %d member(s) in room %s", reset, room.id)
    return reset
