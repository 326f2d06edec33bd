"""
RoomSync — Preference Store.

Each user's stated availability: recurring weekly entries, one-off
exceptions and the committed personal calendar. Confirmation consumes
the parts of a preference that became real commitments and keeps a
single-generation backup per room so they can be restored.

Operates on User documents in place; persisting them is the caller's job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from roomsync.core.time_units import (
    Interval,
    day_of_week,
    minutes_to_time,
    split_around_claims,
    split_midnight,
    time_to_minutes,
)
from roomsync.data.models import DeletedPreferenceBackup, PreferenceEntry

if TYPE_CHECKING:
    from roomsync.data.models import TimeSlot, User

logger = logging.getLogger(__name__)


@dataclass
class _ConsumedDay:
    day_of_week: int
    ranges: list[Interval] = field(default_factory=list)


def _consumed_by_date(slots: Iterable[TimeSlot]) -> dict[str, _ConsumedDay]:
    """Group consumed slot ranges by date, keeping them unmerged."""
    by_date: dict[str, _ConsumedDay] = {}
    for slot in slots:
        entry = by_date.setdefault(slot.date, _ConsumedDay(day_of_week(slot.date)))
        for seg in split_midnight(time_to_minutes(slot.start_time), time_to_minutes(slot.end_time)):
            entry.ranges.append(seg)
    return by_date


def _claims_for(pref: PreferenceEntry, consumed: dict[str, _ConsumedDay]) -> list[Interval]:
    """Consumed ranges that apply to a preference entry.

    A dated entry matches only its own date; a recurring entry matches
    every consumed date falling on its weekday.
    """
    claims: list[Interval] = []
    for iso_date, day in sorted(consumed.items()):
        if pref.specific_date:
            matches = pref.specific_date == iso_date
        else:
            matches = pref.day_of_week == day.day_of_week
        if matches:
            claims.extend(day.ranges)
    return claims


def _entry(pref: PreferenceEntry, interval: Interval) -> PreferenceEntry:
    start, end = interval.format()
    return pref.model_copy(update={"start_time": start, "end_time": end})


def _split_entries(
    entries: list[PreferenceEntry], consumed: dict[str, _ConsumedDay],
) -> tuple[list[PreferenceEntry], list[PreferenceEntry]]:
    kept: list[PreferenceEntry] = []
    removed: list[PreferenceEntry] = []
    for pref in entries:
        claims = _claims_for(pref, consumed)
        if not claims:
            kept.append(pref)
            continue
        segments = split_midnight(time_to_minutes(pref.start_time), time_to_minutes(pref.end_time))
        for seg in segments:
            remaining, cut = split_around_claims(seg, claims)
            kept.extend(_entry(pref, r) for r in remaining)
            removed.extend(_entry(pref, c) for c in cut)
    return kept, removed


def remove_consumed_preferences(
    user: User,
    consumed_slots: Iterable[TimeSlot],
    room_id: str,
    now: datetime,
) -> list[PreferenceEntry]:
    """Cut consumed intervals out of a user's preferences and back them up.

    Every defaultSchedule / scheduleExceptions entry matching a consumed
    slot's date (or weekday) is replaced by its remaining segments. The
    removed pieces replace any earlier backup for the same room; when
    nothing overlapped, an earlier backup is left untouched so a repeat
    run cannot erase it.

    Returns the removed entries.
    """
    consumed = _consumed_by_date(consumed_slots)
    if not consumed:
        return []

    user.default_schedule, removed_default = _split_entries(user.default_schedule, consumed)
    user.schedule_exceptions, removed_exceptions = _split_entries(user.schedule_exceptions, consumed)
    removed = removed_default + removed_exceptions

    if removed:
        user.deleted_preferences_by_room = [
            b for b in user.deleted_preferences_by_room if b.room_id != room_id
        ]
        user.deleted_preferences_by_room.append(
            DeletedPreferenceBackup(
                room_id=room_id,
                deleted_times=removed_default,
                deleted_exceptions=removed_exceptions,
                deleted_at=now,
            )
        )
        logger.info(
            "Removed %d preference segment(s) from user %s for room %s",
            len(removed), user.id, room_id,
        )
    return removed


def coalesce_preferences(entries: list[PreferenceEntry]) -> list[PreferenceEntry]:
    """Join touching or overlapping entries sharing day, date and priority."""
    groups: dict[tuple[int, str | None, int], list[Interval]] = {}
    for pref in entries:
        key = (pref.day_of_week, pref.specific_date, pref.priority)
        for seg in split_midnight(time_to_minutes(pref.start_time), time_to_minutes(pref.end_time)):
            groups.setdefault(key, []).append(seg)

    result: list[PreferenceEntry] = []
    for (dow, specific_date, priority), intervals in groups.items():
        intervals.sort()
        current = intervals[0]
        for iv in intervals[1:]:
            if iv.start <= current.end:
                current = Interval(current.start, max(current.end, iv.end))
            else:
                result.append(_make(dow, specific_date, priority, current))
                current = iv
        result.append(_make(dow, specific_date, priority, current))
    result.sort(key=lambda p: (p.day_of_week, p.specific_date or "", p.start_time))
    return result


def _make(dow: int, specific_date: str | None, priority: int, iv: Interval) -> PreferenceEntry:
    return PreferenceEntry(
        day_of_week=dow,
        start_time=minutes_to_time(iv.start),
        end_time=minutes_to_time(iv.end),
        priority=priority,
        specific_date=specific_date,
    )


def restore_preferences(user: User, room_id: str) -> int:
    """Put the backed-up preferences of a room back where they were cut from.

    defaultSchedule pieces go back to defaultSchedule and scheduleExceptions
    pieces to scheduleExceptions. Returns the number of restored entries
    (0 when no backup exists).
    """
    backup = next((b for b in user.deleted_preferences_by_room if b.room_id == room_id), None)
    if backup is None:
        return 0

    user.default_schedule = coalesce_preferences(user.default_schedule + backup.deleted_times)
    if backup.deleted_exceptions:
        user.schedule_exceptions = coalesce_preferences(user.schedule_exceptions + backup.deleted_exceptions)
    restored = len(backup.deleted_times) + len(backup.deleted_exceptions)
    user.deleted_preferences_by_room = [
        b for b in user.deleted_preferences_by_room if b.room_id != room_id
    ]
    logger.info(
        "Restored %d preference segment(s) for user %s from room %s",
        restored, user.id, room_id,
    )
    return restored


def add_preferences(user: User, entries: Iterable[PreferenceEntry]) -> int:
    """Additively insert preference entries, ignoring exact duplicates."""
    added = 0
    for entry in entries:
        Interval.parse(entry.start_time, entry.end_time)  # validates both times
        if entry not in user.default_schedule:
            user.default_schedule.append(entry)
            added += 1
    return added


def remove_preference(
    user: User,
    day: int,
    start_time: str,
    end_time: str,
    specific_date: str | None = None,
) -> bool:
    """Delete one preference entry by exact match. Returns whether it existed."""
    before = len(user.default_schedule)
    user.default_schedule = [
        p for p in user.default_schedule
        if not (
            p.day_of_week == day
            and p.start_time == start_time
            and p.end_time == end_time
            and p.specific_date == specific_date
        )
    ]
    return len(user.default_schedule) < before
