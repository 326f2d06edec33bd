"""
RoomSync — Data Models.

Rooms and users are persisted as whole documents. The Room owns its time
slots and negotiations; each User owns their preferences and personal
calendar. Times are "HH:MM" strings and dates ISO "YYYY-MM-DD" strings at
this boundary; the core converts them to minutes since midnight.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class TravelMode(str, Enum):
    NORMAL = "normal"
    TRANSIT = "transit"
    DRIVING = "driving"
    BICYCLING = "bicycling"
    WALKING = "walking"


class SlotStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CONFLICT = "conflict"


class NegotiationStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    TIMED_OUT = "timedOut"


class MemberResponse(str, Enum):
    PENDING = "pending"
    CLAIM = "claim"
    YIELD = "yield"


# ---------------------------------------------------------------------------
# Room aggregate
# ---------------------------------------------------------------------------


class TimeSlot(BaseModel):
    """A single claim or assignment at slot granularity.

    JSON example:
    {
        "user": "u1",
        "date": "2025-03-03",
        "day": "monday",
        "start_time": "09:00",
        "end_time": "09:10",
        "priority": 3,
        "status": "confirmed"
    }
    """
    user: str
    date: str               # ISO format YYYY-MM-DD
    day: str                # lowercase weekday name, e.g. "monday"
    start_time: str         # HH:MM
    end_time: str           # HH:MM ("24:00" allowed as an end)
    priority: int = Field(default=3, ge=1, le=5)
    status: SlotStatus = SlotStatus.CONFIRMED
    assigned_by: str | None = None
    assigned_at: datetime | None = None
    claimed_at: datetime | None = None
    is_travel: bool = False
    subject: str = ""
    confirmed_to_personal_calendar: bool = False


class CarryOverEntry(BaseModel):
    week: datetime
    amount: float           # hours; negative for resets
    reason: str             # "negotiation_yield" | "admin_reset" | ...
    timestamp: datetime
    negotiation_id: str | None = None


class ProgressEntry(BaseModel):
    date: datetime
    action: str             # "reset"
    previous_value: float


class RoomMember(BaseModel):
    user: str
    joined_at: datetime | None = None
    priority: int = Field(default=3, ge=1, le=5)
    carry_over: float = 0.0         # hours owed from yielded negotiations
    carry_over_history: list[CarryOverEntry] = Field(default_factory=list)
    total_progress_time: float = 0.0
    progress_history: list[ProgressEntry] = Field(default_factory=list)


class BlockedTime(BaseModel):
    """Room-wide daily window where nothing may be scheduled (e.g. lunch)."""
    name: str = ""
    start_time: str
    end_time: str


class RoomException(BaseModel):
    type: str               # "daily_recurring" | "date_specific"
    name: str = ""
    day_of_week: int | None = None      # 0 = Sunday ... 6 = Saturday
    start_date: str | None = None
    end_date: str | None = None
    start_time: str
    end_time: str


class RoomSettings(BaseModel):
    blocked_times: list[BlockedTime] = Field(default_factory=list)
    room_exceptions: list[RoomException] = Field(default_factory=list)


class SlotInfo(BaseModel):
    date: str
    day: str
    start_time: str
    end_time: str


class ConflictingMember(BaseModel):
    user: str
    priority: int = 3
    claimed_at: datetime | None = None
    response: MemberResponse = MemberResponse.PENDING
    yield_option: str | None = None     # "carry_over" | None
    responded_at: datetime | None = None


class NegotiationMessage(BaseModel):
    sender: str | None      # None for system messages
    text: str
    sent_at: datetime
    is_system: bool = False


class Resolution(BaseModel):
    winner: str
    resolved_at: datetime
    resolved_by: str | None     # None when the timeout sweep decided
    policy: str                 # "owner" | "force" | "consensus" | "timeout"


class Negotiation(BaseModel):
    id: str
    room_id: str
    slot_info: SlotInfo
    week_start: str             # ISO date of the Monday of slot_info.date
    conflicting_members: list[ConflictingMember] = Field(default_factory=list)
    status: NegotiationStatus = NegotiationStatus.ACTIVE
    messages: list[NegotiationMessage] = Field(default_factory=list)
    resolution: Resolution | None = None
    created_at: datetime

    def member(self, user_id: str) -> ConflictingMember | None:
        for cm in self.conflicting_members:
            if cm.user == user_id:
                return cm
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status != NegotiationStatus.ACTIVE


class Room(BaseModel):
    id: str
    name: str
    owner: str
    members: list[RoomMember] = Field(default_factory=list)
    time_slots: list[TimeSlot] = Field(default_factory=list)
    negotiations: list[Negotiation] = Field(default_factory=list)
    settings: RoomSettings = Field(default_factory=RoomSettings)
    confirmed_at: datetime | None = None
    auto_confirm_at: datetime | None = None
    current_travel_mode: TravelMode | None = None
    confirmed_travel_mode: TravelMode | None = None
    travel_time_slots: list[TimeSlot] = Field(default_factory=list)
    # Ledger as it was before the first travel recalculation; "normal" restores it
    original_time_slots: list[TimeSlot] | None = None
    version: int = 0

    def is_owner(self, user_id: str) -> bool:
        return self.owner == user_id

    def is_member(self, user_id: str) -> bool:
        return self.is_owner(user_id) or any(m.user == user_id for m in self.members)

    def member(self, user_id: str) -> RoomMember | None:
        for m in self.members:
            if m.user == user_id:
                return m
        return None

    def negotiation(self, negotiation_id: str) -> Negotiation | None:
        for nego in self.negotiations:
            if nego.id == negotiation_id:
                return nego
        return None


# ---------------------------------------------------------------------------
# User aggregate
# ---------------------------------------------------------------------------


class PreferenceEntry(BaseModel):
    """A stated availability window, recurring weekly unless specific_date is set."""
    day_of_week: int                    # 0 = Sunday ... 6 = Saturday
    start_time: str
    end_time: str
    priority: int = 3
    specific_date: str | None = None


class PersonalTime(BaseModel):
    """A committed block in the user's permanent calendar."""
    id: int
    title: str
    type: str = "personal"
    start_time: str
    end_time: str
    days: list[int] = Field(default_factory=list)   # 0 = Sunday ... 6 = Saturday
    is_recurring: bool = False
    specific_date: str | None = None
    color: str = "#10B981"


class DeletedPreferenceBackup(BaseModel):
    room_id: str
    deleted_times: list[PreferenceEntry] = Field(default_factory=list)
    deleted_exceptions: list[PreferenceEntry] = Field(default_factory=list)
    deleted_at: datetime


class User(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    telegram_user_id: int | None = None
    address: str = ""
    address_lat: float | None = None
    address_lng: float | None = None
    default_schedule: list[PreferenceEntry] = Field(default_factory=list)
    schedule_exceptions: list[PreferenceEntry] = Field(default_factory=list)
    personal_times: list[PersonalTime] = Field(default_factory=list)
    deleted_preferences_by_room: list[DeletedPreferenceBackup] = Field(default_factory=list)
    version: int = 0

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def has_location(self) -> bool:
        return self.address_lat is not None and self.address_lng is not None


class ActivityLogEntry(BaseModel):
    id: int
    room_id: str | None
    user_id: str | None
    user_name: str
    action: str
    details: str = ""
    metadata: dict = Field(default_factory=dict)
    created_at: str = ""
