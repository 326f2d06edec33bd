"""
RoomSync — Negotiation State Machine.

A negotiation is opened for every (date, start_time) claimed by two or
more distinct members. It moves from `active` to one of two terminal
states:

    active ──resolve / force_resolve / consensus──► resolved
    active ──auto_resolve_timeouts─────────────────► timedOut

Reaching a terminal state rewrites the room's ledger: the losers' slots
for the contested start are dropped and the winner's slot is stamped as
assigned, so at most one confirmed claim remains for that interval.

Timeout policy: the earliest claim (`claimed_at`) wins; equal or missing
timestamps fall back to the higher priority, then the lowest user id.
Members who yielded are only considered when every member yielded.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from roomsync.core.errors import NegotiationClosedError, NotFoundError, PreconditionError
from roomsync.core.ledger import find_common_slots, require_member, require_owner
from roomsync.core.time_units import Interval, week_start
from roomsync.data.models import (
    CarryOverEntry,
    ConflictingMember,
    MemberResponse,
    Negotiation,
    NegotiationMessage,
    NegotiationStatus,
    Resolution,
    SlotInfo,
    SlotStatus,
    TimeSlot,
)

if TYPE_CHECKING:
    from roomsync.data.models import Room

logger = logging.getLogger(__name__)

YIELD_CARRY_OVER = "carry_over"


def _get_active(room: Room, negotiation_id: str) -> Negotiation:
    nego = room.negotiation(negotiation_id)
    if nego is None:
        raise NotFoundError(f"Negotiation {negotiation_id} not found in room {room.id}.")
    if nego.is_terminal:
        raise NegotiationClosedError(negotiation_id)
    return nego


def _system_message(nego: Negotiation, text: str, now: datetime) -> None:
    nego.messages.append(NegotiationMessage(sender=None, text=text, sent_at=now, is_system=True))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def sync_negotiations(room: Room, now: datetime) -> list[Negotiation]:
    """Open a negotiation for every contested (date, start_time) not already being negotiated."""
    tracked = {
        (n.slot_info.date, n.slot_info.start_time)
        for n in room.negotiations
        if n.status == NegotiationStatus.ACTIVE
    }
    created: list[Negotiation] = []

    for group in find_common_slots(room).common_slots:
        by_date: dict[str, list[TimeSlot]] = {}
        for slot in group.slots:
            by_date.setdefault(slot.date, []).append(slot)

        for slot_date, slots in sorted(by_date.items()):
            users = {s.user for s in slots}
            if len(users) < 2 or (slot_date, group.start_time) in tracked:
                continue

            members: dict[str, ConflictingMember] = {}
            for slot in slots:
                cm = members.get(slot.user)
                if cm is None:
                    members[slot.user] = ConflictingMember(
                        user=slot.user, priority=slot.priority, claimed_at=slot.claimed_at,
                    )
                elif slot.claimed_at and (cm.claimed_at is None or slot.claimed_at < cm.claimed_at):
                    cm.claimed_at = slot.claimed_at

            nego = Negotiation(
                id=uuid.uuid4().hex[:8],
                room_id=room.id,
                slot_info=SlotInfo(
                    date=slot_date,
                    day=group.day,
                    start_time=group.start_time,
                    end_time=max(s.end_time for s in slots),
                ),
                week_start=week_start(slot_date),
                conflicting_members=sorted(members.values(), key=lambda m: m.user),
                created_at=now,
            )
            _system_message(
                nego,
                f"{len(members)} members claimed {slot_date} {group.start_time}. "
                "Claim or yield to settle it.",
                now,
            )
            room.negotiations.append(nego)
            tracked.add((slot_date, group.start_time))
            created.append(nego)
            logger.info(
                "Negotiation %s opened in room %s for %s %s (%d members)",
                nego.id, room.id, slot_date, group.start_time, len(members),
            )
    return created


def active_negotiations(room: Room) -> list[Negotiation]:
    return [n for n in room.negotiations if n.status == NegotiationStatus.ACTIVE]


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------


def add_message(room: Room, negotiation_id: str, sender: str, text: str, now: datetime) -> NegotiationMessage:
    nego = _get_active(room, negotiation_id)
    if not room.is_owner(sender) and nego.member(sender) is None:
        require_owner(room, sender, "post in a negotiation you are not part of")
    message = NegotiationMessage(sender=sender, text=text, sent_at=now)
    nego.messages.append(message)
    return message


def respond(
    room: Room,
    negotiation_id: str,
    user_id: str,
    response: MemberResponse,
    now: datetime,
    yield_option: str | None = None,
) -> Negotiation:
    """Record a claim or yield. Resolves by consensus when one claims and the rest yield."""
    require_member(room, user_id, "respond to negotiations")
    nego = _get_active(room, negotiation_id)
    cm = nego.member(user_id)
    if cm is None:
        raise PreconditionError("Only members involved in this conflict can respond.")
    if response == MemberResponse.PENDING:
        raise PreconditionError("Use cancel_response to withdraw a response.")

    for other in active_negotiations(room):
        if other.id == nego.id or other.week_start != nego.week_start:
            continue
        other_cm = other.member(user_id)
        if other_cm is not None and other_cm.response != MemberResponse.PENDING:
            raise PreconditionError(
                f"You already responded to negotiation {other.id} this week; "
                "withdraw that response first."
            )

    cm.response = response
    cm.yield_option = yield_option if response == MemberResponse.YIELD else None
    cm.responded_at = now
    logger.info("Member %s responded %s in negotiation %s", user_id, response.value, nego.id)

    claimers = [m for m in nego.conflicting_members if m.response == MemberResponse.CLAIM]
    yielders = [m for m in nego.conflicting_members if m.response == MemberResponse.YIELD]
    if len(claimers) == 1 and len(yielders) == len(nego.conflicting_members) - 1:
        _apply_resolution(room, nego, claimers[0].user, None, "consensus", now)
    return nego


def cancel_response(room: Room, negotiation_id: str, user_id: str, now: datetime) -> Negotiation:
    nego = _get_active(room, negotiation_id)
    cm = nego.member(user_id)
    if cm is None:
        raise PreconditionError("Only members involved in this conflict can withdraw a response.")
    cm.response = MemberResponse.PENDING
    cm.yield_option = None
    cm.responded_at = None
    _system_message(nego, f"{user_id} withdrew their response.", now)
    logger.info("Member %s withdrew response in negotiation %s", user_id, nego.id)
    return nego


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve(room: Room, negotiation_id: str, resolver_id: str, winner_id: str, now: datetime) -> Negotiation:
    """Owner picks the winner among members who have not yielded."""
    require_owner(room, resolver_id, "resolve negotiations")
    nego = _get_active(room, negotiation_id)
    winner = nego.member(winner_id)
    if winner is None:
        raise NotFoundError(f"{winner_id} is not part of negotiation {negotiation_id}.")
    if winner.response == MemberResponse.YIELD:
        raise PreconditionError(f"{winner_id} yielded this slot; use force resolve to override.")
    _apply_resolution(room, nego, winner_id, resolver_id, "owner", now)
    return nego


def force_resolve(room: Room, negotiation_id: str, owner_id: str, winner_id: str, now: datetime) -> Negotiation:
    """Owner override: ignores responses entirely."""
    require_owner(room, owner_id, "force-resolve negotiations")
    nego = _get_active(room, negotiation_id)
    if nego.member(winner_id) is None:
        raise NotFoundError(f"{winner_id} is not part of negotiation {negotiation_id}.")
    _apply_resolution(room, nego, winner_id, owner_id, "force", now)
    return nego


def _timeout_winner(nego: Negotiation) -> str:
    candidates = [m for m in nego.conflicting_members if m.response != MemberResponse.YIELD]
    if not candidates:
        candidates = list(nego.conflicting_members)
    candidates.sort(
        key=lambda m: (m.claimed_at is None, m.claimed_at or nego.created_at, -m.priority, m.user)
    )
    return candidates[0].user


def auto_resolve_timeouts(room: Room, now: datetime, timeout: timedelta) -> list[Negotiation]:
    """Time out every active negotiation older than `timeout`, applying the default policy."""
    timed_out: list[Negotiation] = []
    for nego in active_negotiations(room):
        if nego.created_at + timeout > now:
            continue
        winner = _timeout_winner(nego)
        _apply_resolution(room, nego, winner, None, "timeout", now)
        timed_out.append(nego)
    return timed_out


def _apply_resolution(
    room: Room,
    nego: Negotiation,
    winner_id: str,
    resolved_by: str | None,
    policy: str,
    now: datetime,
) -> None:
    info = nego.slot_info
    assigner = resolved_by or room.owner

    room.time_slots = [
        s for s in room.time_slots
        if s.is_travel
        or s.user == winner_id
        or not (s.date == info.date and s.start_time == info.start_time)
    ]

    winning = [
        s for s in room.time_slots
        if s.user == winner_id and s.date == info.date
        and s.start_time == info.start_time and not s.is_travel
    ]
    if not winning:
        winning = [TimeSlot(
            user=winner_id,
            date=info.date,
            day=info.day,
            start_time=info.start_time,
            end_time=info.end_time,
            claimed_at=now,
        )]
        room.time_slots.append(winning[0])
    for slot in winning:
        slot.status = SlotStatus.CONFIRMED
        slot.assigned_by = assigner
        slot.assigned_at = now

    hours = Interval.parse(info.start_time, info.end_time).duration / 60
    for cm in nego.conflicting_members:
        if cm.user == winner_id or cm.response != MemberResponse.YIELD:
            continue
        if cm.yield_option != YIELD_CARRY_OVER:
            continue
        member = room.member(cm.user)
        if member is None:
            continue
        if any(h.negotiation_id == nego.id for h in member.carry_over_history):
            continue
        member.carry_over += hours
        member.carry_over_history.append(CarryOverEntry(
            week=now, amount=hours, reason="negotiation_yield",
            timestamp=now, negotiation_id=nego.id,
        ))

    nego.status = NegotiationStatus.TIMED_OUT if policy == "timeout" else NegotiationStatus.RESOLVED
    nego.resolution = Resolution(winner=winner_id, resolved_at=now, resolved_by=resolved_by, policy=policy)
    _system_message(
        nego, f"{winner_id} gets {info.date} {info.start_time}-{info.end_time} ({policy}).", now,
    )
    logger.info(
        "Negotiation %s in room %s %s: winner %s (%s)",
        nego.id, room.id, nego.status.value, winner_id, policy,
    )
