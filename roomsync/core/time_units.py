"""Time Unit Model — pure interval arithmetic.

Times travel as "HH:MM" strings at the edges and as integer minutes since
midnight everywhere in between. The atomic slot is 10 minutes.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

SLOT_MINUTES = 10
MINUTES_PER_DAY = 24 * 60

# Fixed weekday order used for every sorted report
DAY_ORDER = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# date.weekday() is Monday-based; day_of_week numbers are Sunday-based (0 = Sunday)
_SUNDAY_BASED = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]


def time_to_minutes(time_str: str) -> int:
    """Convert "HH:MM" to minutes since midnight. "24:00" is a valid end.

    Raises ValueError on malformed input.
    """
    if not time_str or ":" not in time_str:
        raise ValueError(f"No colon in time: {time_str!r}")
    hour_part, minute_part = time_str.strip().split(":", 1)
    hour, minute = int(hour_part), int(minute_part[:2])
    if not (0 <= minute <= 59) or not (0 <= hour <= 24) or (hour == 24 and minute):
        raise ValueError(f"Hour/minute out of range: {time_str!r}")
    return hour * 60 + minute


def minutes_to_time(minutes: int) -> str:
    """Convert minutes since midnight to "HH:MM" (1440 renders as "24:00")."""
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError(f"Minutes out of range: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def ceil_to_slot(minutes: float) -> int:
    """Round a duration up to the next whole slot."""
    if minutes <= 0:
        return 0
    return int(math.ceil(minutes / SLOT_MINUTES)) * SLOT_MINUTES


def weekday_name(iso_date: str) -> str:
    """Lowercase weekday name for an ISO date string."""
    return DAY_ORDER[date.fromisoformat(iso_date).weekday()]


def day_of_week(iso_date: str) -> int:
    """Sunday-based weekday number (0 = Sunday) for an ISO date string."""
    return (date.fromisoformat(iso_date).weekday() + 1) % 7


def day_name_to_number(day: str) -> int:
    """Sunday-based weekday number for a weekday name."""
    return _SUNDAY_BASED.index(day.lower())


def week_start(iso_date: str) -> str:
    """ISO date of the Monday starting the week that contains iso_date."""
    d = date.fromisoformat(iso_date)
    return (d - timedelta(days=d.weekday())).isoformat()


def day_sort_key(day: str) -> int:
    try:
        return DAY_ORDER.index(day.lower())
    except ValueError:
        return len(DAY_ORDER)


def date_at(iso_date: str, minutes: int) -> datetime:
    """Naive datetime for a date plus minutes since midnight."""
    return datetime.fromisoformat(iso_date) + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Intervals
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open [start, end) in minutes since midnight."""

    start: int
    end: int

    @classmethod
    def parse(cls, start_time: str, end_time: str) -> Interval:
        return cls(time_to_minutes(start_time), time_to_minutes(end_time))

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and self.end > other.start

    def format(self) -> tuple[str, str]:
        return minutes_to_time(self.start), minutes_to_time(self.end)


def overlaps_any(start: int, end: int, busy: Iterable[tuple[int, int]]) -> bool:
    """Check if [start, end) overlaps with any busy interval."""
    for bs, be in busy:
        if start < be and end > bs:
            return True
    return False


def split_midnight(start: int, end: int) -> list[Interval]:
    """Split an interval that wraps past midnight into same-day segments.

    22:00–08:00 becomes [22:00–24:00, 00:00–08:00]. Non-wrapping intervals
    come back unchanged as a single segment. An empty interval is an error.
    """
    if start == end:
        raise ValueError("Empty interval")
    if start < end:
        return [Interval(start, end)]
    segments = [Interval(start, MINUTES_PER_DAY)]
    if end > 0:
        segments.append(Interval(0, end))
    return segments


def join_midnight(segments: Sequence[Interval]) -> Interval:
    """Inverse of split_midnight: recombine segments into one (possibly wrapping) interval.

    The returned Interval has start > end when it wraps midnight.
    """
    if len(segments) == 1:
        return segments[0]
    late, early = segments
    if late.end != MINUTES_PER_DAY or early.start != 0:
        raise ValueError("Segments do not meet at midnight")
    return Interval(late.start, early.end)


# ---------------------------------------------------------------------------
# Merge / split primitives
# ---------------------------------------------------------------------------


@dataclass
class Block:
    """A merged run of consecutive slots owned by one user on one date."""

    owner: str
    date: str
    start: int
    end: int
    tag: Hashable = None
    sources: list[Any] = field(default_factory=list)

    @property
    def start_time(self) -> str:
        return minutes_to_time(self.start)

    @property
    def end_time(self) -> str:
        return minutes_to_time(self.end)

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)


def merge_consecutive(
    slots: Iterable[Any],
    *,
    owner_of: Callable[[Any], str] = lambda s: s.user,
    date_of: Callable[[Any], str] = lambda s: s.date,
    tag_of: Callable[[Any], Hashable] | None = None,
) -> list[Block]:
    """Merge slots into blocks per (owner, date).

    A slot joins the running block iff block.end == slot.start (and, when
    tag_of is given, the tags match); otherwise it starts a new block.
    Output is sorted by owner, date, start.
    """
    groups: dict[tuple[str, str], list[Any]] = {}
    for slot in slots:
        groups.setdefault((owner_of(slot), date_of(slot)), []).append(slot)

    blocks: list[Block] = []
    for (owner, day), group in sorted(groups.items()):
        group.sort(key=lambda s: time_to_minutes(s.start_time))
        current: Block | None = None
        for slot in group:
            start = time_to_minutes(slot.start_time)
            end = time_to_minutes(slot.end_time)
            tag = tag_of(slot) if tag_of else None
            if current is not None and current.end == start and current.tag == tag:
                current.end = end
                current.sources.append(slot)
            else:
                if current is not None:
                    blocks.append(current)
                current = Block(owner=owner, date=day, start=start, end=end, tag=tag, sources=[slot])
        if current is not None:
            blocks.append(current)
    return blocks


def expand_interval(start: int, end: int, step: int = SLOT_MINUTES) -> list[Interval]:
    """Re-expand an interval into step-sized atomic units (last unit may be shorter)."""
    units = []
    t = start
    while t < end:
        units.append(Interval(t, min(t + step, end)))
        t += step
    return units


def expand_block(block: Block, step: int = SLOT_MINUTES) -> list[Interval]:
    return expand_interval(block.start, block.end, step)


def split_around_claims(
    interval: Interval, claimed: Iterable[Interval],
) -> tuple[list[Interval], list[Interval]]:
    """Remove claimed ranges from a preference interval.

    Returns (remaining, removed): the ordered sub-intervals left after every
    claim is applied in turn, and the overlaps that were cut out. Each claim
    leaves zero, one or two pieces of every segment it touches, so
    remaining + removed always partitions the original interval exactly.
    """
    segments = [interval]
    removed: list[Interval] = []
    for claim in claimed:
        next_segments: list[Interval] = []
        for seg in segments:
            overlap_start = max(seg.start, claim.start)
            overlap_end = min(seg.end, claim.end)
            if overlap_start >= overlap_end:
                next_segments.append(seg)
                continue
            removed.append(Interval(overlap_start, overlap_end))
            if seg.start < claim.start:
                next_segments.append(Interval(seg.start, claim.start))
            if seg.end > claim.end:
                next_segments.append(Interval(claim.end, seg.end))
        segments = next_segments
    return sorted(segments), sorted(removed)


def shift(interval: Interval, delta: int) -> Interval:
    return replace(interval, start=interval.start + delta, end=interval.end + delta)
