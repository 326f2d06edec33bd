"""
RoomSync — Travel-Aware Recalculator.

Reshapes a room's assigned schedule for a travel mode. Each member's
assigned slots are merged into activity blocks; per date the blocks are
visited in start order, chaining travel legs from the owner's home to
the first member, then from member to member. A leg sits immediately
before its block.

Blocked windows: when a leg plus its block intersects a room-wide
blocked window, both move forward so the leg starts at the window's end.
Only the first conflicting window is handled; the shifted block is not
re-checked. A shift that would run past midnight is skipped.

Travel durations come from the Distance Matrix API when a key is set,
else from a Haversine estimate at a fixed average speed per mode. Both
are rounded up to whole 10-minute slots.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from roomsync.core.errors import AddressRequiredError, PreconditionError
from roomsync.core.ledger import is_assigned
from roomsync.core.time_units import (
    MINUTES_PER_DAY,
    Block,
    Interval,
    ceil_to_slot,
    day_of_week,
    expand_interval,
    merge_consecutive,
    minutes_to_time,
    split_midnight,
    time_to_minutes,
)
from roomsync.data.models import TimeSlot, TravelMode
from roomsync.integrations.google_maps import TravelTimeResult, get_travel_time

if TYPE_CHECKING:
    from roomsync.data.models import Room, User

logger = logging.getLogger(__name__)

# Average speeds (km/h) for the Haversine fallback
FALLBACK_SPEED_KMH = {
    TravelMode.WALKING: 5,
    TravelMode.BICYCLING: 15,
    TravelMode.TRANSIT: 25,
    TravelMode.DRIVING: 40,
}

WALKING_MAX_LEG_MINUTES = 60

_EARTH_RADIUS_M = 6_371_000


@dataclass
class TravelEstimate:
    duration_seconds: int
    distance_meters: int
    source: str             # "provider" | "fallback"

    @property
    def slot_minutes(self) -> int:
        return ceil_to_slot(self.duration_seconds / 60)


@dataclass
class TravelLeg:
    member: str
    date: str
    start: int
    end: int
    distance_meters: int
    source: str
    shifted: bool = False

    @property
    def duration_minutes(self) -> int:
        return self.end - self.start


@dataclass
class TravelPlan:
    mode: TravelMode
    time_slots: list[TimeSlot] = field(default_factory=list)
    travel_slots: list[TimeSlot] = field(default_factory=list)
    legs: list[TravelLeg] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Travel time
# ---------------------------------------------------------------------------


def haversine_meters(origin: tuple[float, float], destination: tuple[float, float]) -> float:
    """Great-circle distance between two (lat, lng) points."""
    lat1, lng1 = map(math.radians, origin)
    lat2, lng2 = map(math.radians, destination)
    a = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    )
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(a))


def estimate_travel(
    origin: tuple[float, float], destination: tuple[float, float], mode: TravelMode,
) -> TravelEstimate:
    """Haversine distance at the mode's average speed, rounded up to whole slots."""
    meters = haversine_meters(origin, destination)
    minutes = meters / 1000 / FALLBACK_SPEED_KMH[mode] * 60
    return TravelEstimate(
        duration_seconds=ceil_to_slot(minutes) * 60,
        distance_meters=round(meters),
        source="fallback",
    )


ProviderFn = Callable[[tuple[float, float], tuple[float, float], str, str], Awaitable[TravelTimeResult | None]]


class TravelTimeService:
    """Directions provider with a deterministic fallback. Never raises for provider errors."""

    def __init__(self, api_key: str | None = None, provider: ProviderFn = get_travel_time) -> None:
        if api_key is None:
            from roomsync.config import settings
            api_key = settings.GOOGLE_MAPS_API_KEY
        self._api_key = api_key
        self._provider = provider

    async def travel_time(
        self, origin: tuple[float, float], destination: tuple[float, float], mode: TravelMode,
    ) -> TravelEstimate:
        if origin == destination:
            return TravelEstimate(duration_seconds=0, distance_meters=0, source="fallback")
        if self._api_key:
            result = await self._provider(origin, destination, mode.value, self._api_key)
            if result is not None:
                return TravelEstimate(
                    duration_seconds=result.duration_seconds,
                    distance_meters=result.distance_meters,
                    source="provider",
                )
            logger.warning("Directions provider failed for %s → %s (%s), using estimate", origin, destination, mode.value)
        return estimate_travel(origin, destination, mode)


# ---------------------------------------------------------------------------
# Blocked windows
# ---------------------------------------------------------------------------


def blocked_windows(room: Room, iso_date: str) -> list[Interval]:
    """Room-wide blocked intervals that apply on iso_date, sorted by start."""
    raw: list[tuple[str, str]] = [(b.start_time, b.end_time) for b in room.settings.blocked_times]
    dow = day_of_week(iso_date)
    for exc in room.settings.room_exceptions:
        if exc.type == "daily_recurring":
            if exc.day_of_week is None or exc.day_of_week == dow:
                raw.append((exc.start_time, exc.end_time))
        elif exc.type == "date_specific" and exc.start_date:
            end_date = exc.end_date or exc.start_date
            if exc.start_date[:10] <= iso_date <= end_date[:10]:
                raw.append((exc.start_time, exc.end_time))

    windows: list[Interval] = []
    for start_time, end_time in raw:
        try:
            windows.extend(split_midnight(time_to_minutes(start_time), time_to_minutes(end_time)))
        except ValueError:
            logger.warning("Ignoring malformed blocked window %s-%s in room %s", start_time, end_time, room.id)
    return sorted(windows)


# ---------------------------------------------------------------------------
# Recalculation
# ---------------------------------------------------------------------------


def _location(user: User | None, user_id: str, role: str) -> tuple[float, float]:
    if user is None or not user.has_location:
        raise AddressRequiredError(user_id, role)
    return (user.address_lat, user.address_lng)


def _expand(template: TimeSlot, iso_date: str, start: int, end: int, **updates) -> list[TimeSlot]:
    return [
        template.model_copy(update={
            "date": iso_date,
            "start_time": minutes_to_time(unit.start),
            "end_time": minutes_to_time(unit.end),
            **updates,
        })
        for unit in expand_interval(start, end)
    ]


async def recalculate(
    room: Room, mode: TravelMode, users: dict[str, User], service: TravelTimeService,
) -> TravelPlan:
    """Compute the room's schedule under `mode` without mutating the room."""
    base = room.original_time_slots if room.original_time_slots is not None else room.time_slots
    if mode == TravelMode.NORMAL:
        return TravelPlan(mode=mode, time_slots=[s.model_copy() for s in base])

    activity = [s for s in base if is_assigned(s)]
    passthrough = [s.model_copy() for s in base if not is_assigned(s)]

    owner_loc = _location(users.get(room.owner), room.owner, "owner")
    blocks = merge_consecutive(activity, tag_of=lambda s: s.assigned_by)
    member_locs = {b.owner: _location(users.get(b.owner), b.owner, "member") for b in blocks}

    by_date: dict[str, list[Block]] = {}
    for block in blocks:
        by_date.setdefault(block.date, []).append(block)

    plan = TravelPlan(mode=mode, time_slots=passthrough)
    for iso_date in sorted(by_date):
        windows = blocked_windows(room, iso_date)
        origin = owner_loc
        for block in sorted(by_date[iso_date], key=lambda b: (b.start, b.owner)):
            destination = member_locs[block.owner]
            estimate = await service.travel_time(origin, destination, mode)
            minutes = estimate.slot_minutes
            if mode == TravelMode.WALKING and minutes > WALKING_MAX_LEG_MINUTES:
                raise PreconditionError(
                    f"Walking to {block.owner} on {iso_date} takes {minutes} minutes; "
                    f"walking mode allows at most {WALKING_MAX_LEG_MINUTES}. Choose another mode."
                )

            travel_start = max(0, block.start - minutes)
            if travel_start > block.start - minutes:
                logger.warning("Travel leg to %s on %s clipped at midnight", block.owner, iso_date)
            start, end = block.start, block.end
            shifted = False
            for window in windows:
                if travel_start < window.end and end > window.start:
                    delta = window.end - travel_start
                    if end + delta > MINUTES_PER_DAY:
                        logger.warning(
                            "Block %s %s-%s for %s cannot move past blocked window without crossing midnight",
                            iso_date, block.start_time, block.end_time, block.owner,
                        )
                    else:
                        travel_start += delta
                        start += delta
                        end += delta
                        shifted = True
                    break

            template = block.sources[0]
            plan.time_slots.extend(_expand(template, iso_date, start, end))
            if start > travel_start:
                plan.travel_slots.extend(_expand(
                    template, iso_date, travel_start, start,
                    is_travel=True, subject="travel", confirmed_to_personal_calendar=False,
                ))
            plan.legs.append(TravelLeg(
                member=block.owner, date=iso_date, start=travel_start, end=start,
                distance_meters=estimate.distance_meters, source=estimate.source, shifted=shifted,
            ))
            origin = destination

    logger.info(
        "Recalculated room %s for %s: %d block(s), %d travel slot(s)",
        room.id, mode.value, len(blocks), len(plan.travel_slots),
    )
    return plan


def apply_travel_plan(room: Room, plan: TravelPlan) -> None:
    if plan.mode == TravelMode.NORMAL:
        if room.original_time_slots is not None:
            room.time_slots = room.original_time_slots
        room.original_time_slots = None
        room.travel_time_slots = []
    else:
        if room.original_time_slots is None:
            room.original_time_slots = [s.model_copy() for s in room.time_slots]
        room.time_slots = plan.time_slots
        room.travel_time_slots = plan.travel_slots
    room.current_travel_mode = plan.mode


def invalidate_travel_plan(room: Room) -> bool:
    """Restore the pre-travel ledger before it is edited. Returns whether a plan was dropped."""
    if room.original_time_slots is None:
        return False
    room.time_slots = room.original_time_slots
    room.original_time_slots = None
    room.travel_time_slots = []
    room.current_travel_mode = None
    logger.info("Travel plan of room %s invalidated by a ledger change", room.id)
    return True
