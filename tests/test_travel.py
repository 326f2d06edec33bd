"""Tests for roomsync.core.travel — travel-aware recalculation."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from roomsync.core.errors import AddressRequiredError, PreconditionError
from roomsync.core.ledger import assign_slot
from roomsync.core.travel import (
    TravelEstimate,
    TravelTimeService,
    apply_travel_plan,
    blocked_windows,
    estimate_travel,
    haversine_meters,
    invalidate_travel_plan,
    recalculate,
)
from roomsync.data.models import BlockedTime, RoomException, TravelMode, User
from roomsync.integrations.google_maps import TravelTimeResult

T0 = datetime(2025, 3, 1, 9, 0)
MON = "2025-03-03"


def _users(owner_loc=(37.5665, 126.978), alice_loc=(37.57, 126.982), bob_loc=(37.58, 126.99)):
    def _u(uid, loc):
        if loc is None:
            return User(id=uid)
        return User(id=uid, address_lat=loc[0], address_lng=loc[1])
    return {"owner": _u("owner", owner_loc), "alice": _u("alice", alice_loc), "bob": _u("bob", bob_loc)}


def _fixed_service(minutes: int):
    service = AsyncMock()
    service.travel_time = AsyncMock(
        return_value=TravelEstimate(duration_seconds=minutes * 60, distance_meters=1000, source="provider")
    )
    return service


def _spans(slots):
    return [(s.start_time, s.end_time) for s in slots]


# ---------------------------------------------------------------------------
# Travel time estimates
# ---------------------------------------------------------------------------


class TestEstimates:
    def test_haversine_one_degree_latitude(self):
        assert haversine_meters((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111_195, rel=1e-3)

    def test_fallback_rounds_up_to_slot(self):
        # ~5.56 km: 8.3 min driving, 66.7 min walking
        driving = estimate_travel((0.0, 0.0), (0.05, 0.0), TravelMode.DRIVING)
        walking = estimate_travel((0.0, 0.0), (0.05, 0.0), TravelMode.WALKING)
        assert driving.slot_minutes == 10
        assert walking.slot_minutes == 70
        assert driving.source == "fallback"

    @pytest.mark.asyncio
    async def test_same_place_is_zero(self):
        service = TravelTimeService(api_key="")
        estimate = await service.travel_time((1.0, 1.0), (1.0, 1.0), TravelMode.DRIVING)
        assert estimate.duration_seconds == 0

    @pytest.mark.asyncio
    async def test_provider_result_used(self):
        provider = AsyncMock(return_value=TravelTimeResult(duration_seconds=754, distance_meters=2300))
        service = TravelTimeService(api_key="key", provider=provider)

        estimate = await service.travel_time((0.0, 0.0), (0.05, 0.0), TravelMode.TRANSIT)

        assert estimate.source == "provider"
        assert estimate.slot_minutes == 20
        provider.assert_awaited_once_with((0.0, 0.0), (0.05, 0.0), "transit", "key")

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        provider = AsyncMock(return_value=None)
        service = TravelTimeService(api_key="key", provider=provider)

        estimate = await service.travel_time((0.0, 0.0), (0.05, 0.0), TravelMode.DRIVING)

        assert estimate.source == "fallback"
        assert estimate.slot_minutes == 10

    @pytest.mark.asyncio
    async def test_no_key_skips_provider(self):
        provider = AsyncMock()
        service = TravelTimeService(api_key="", provider=provider)
        await service.travel_time((0.0, 0.0), (0.05, 0.0), TravelMode.DRIVING)
        provider.assert_not_awaited()


# ---------------------------------------------------------------------------
# Blocked windows
# ---------------------------------------------------------------------------


class TestBlockedWindows:
    def test_blocked_times_and_matching_exceptions(self, make_room):
        room = make_room()
        room.settings.blocked_times = [BlockedTime(name="lunch", start_time="12:00", end_time="13:00")]
        room.settings.room_exceptions = [
            RoomException(type="daily_recurring", day_of_week=1, start_time="18:00", end_time="19:00"),
            RoomException(type="daily_recurring", day_of_week=2, start_time="08:00", end_time="09:00"),
            RoomException(type="date_specific", start_date="2025-03-01", end_date="2025-03-05",
                          start_time="07:00", end_time="07:30"),
        ]

        windows = blocked_windows(room, MON)

        assert [w.format() for w in windows] == [
            ("07:00", "07:30"), ("12:00", "13:00"), ("18:00", "19:00"),
        ]


# ---------------------------------------------------------------------------
# Recalculation
# ---------------------------------------------------------------------------


class TestRecalculate:
    @pytest.mark.asyncio
    async def test_leg_precedes_block(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)

        plan = await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(20))

        assert _spans(plan.travel_slots) == [("09:40", "09:50"), ("09:50", "10:00")]
        assert all(s.is_travel and s.user == "alice" for s in plan.travel_slots)
        assert _spans(plan.time_slots) == [("10:00", "10:10"), ("10:10", "10:20"), ("10:20", "10:30")]
        assert plan.legs[0].start == 9 * 60 + 40
        assert plan.legs[0].shifted is False

    @pytest.mark.asyncio
    async def test_blocked_window_shifts_leg_and_block(self, make_room):
        room = make_room()
        room.settings.blocked_times = [BlockedTime(name="lunch", start_time="12:00", end_time="13:00")]
        assign_slot(room, "owner", MON, "12:00", "13:10", "alice", T0)

        plan = await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(10))

        assert _spans(plan.travel_slots) == [("13:00", "13:10")]
        assert plan.time_slots[0].start_time == "13:10"
        assert plan.time_slots[-1].end_time == "14:20"
        assert plan.legs[0].shifted is True

    @pytest.mark.asyncio
    async def test_only_first_window_is_handled(self, make_room):
        room = make_room()
        room.settings.blocked_times = [
            BlockedTime(start_time="12:00", end_time="13:00"),
            BlockedTime(start_time="13:30", end_time="14:00"),
        ]
        assign_slot(room, "owner", MON, "12:00", "12:30", "alice", T0)

        plan = await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(10))

        # Moved past lunch into the second window, which is not re-checked
        assert _spans(plan.travel_slots) == [("13:00", "13:10")]
        assert plan.time_slots[-1].end_time == "13:40"

    @pytest.mark.asyncio
    async def test_legs_chain_between_members(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "11:00", "alice", T0)
        assign_slot(room, "owner", MON, "13:00", "14:00", "bob", T0)
        service = _fixed_service(10)
        users = _users()

        await recalculate(room, TravelMode.TRANSIT, users, service)

        calls = [c.args[:2] for c in service.travel_time.await_args_list]
        owner = (users["owner"].address_lat, users["owner"].address_lng)
        alice = (users["alice"].address_lat, users["alice"].address_lng)
        bob = (users["bob"].address_lat, users["bob"].address_lng)
        assert calls == [(owner, alice), (alice, bob)]

    @pytest.mark.asyncio
    async def test_leg_clipped_at_midnight(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "00:10", "01:00", "alice", T0)

        plan = await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(30))

        assert _spans(plan.travel_slots) == [("00:00", "00:10")]
        assert plan.time_slots[0].start_time == "00:10"

    @pytest.mark.asyncio
    async def test_unassigned_slots_pass_through(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)
        room.time_slots.append(room.time_slots[0].model_copy(update={
            "user": "bob", "assigned_by": None, "start_time": "15:00", "end_time": "15:10",
        }))

        plan = await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(10))

        assert ("15:00", "15:10") in _spans(plan.time_slots)
        assert all(s.user == "alice" for s in plan.travel_slots)

    @pytest.mark.asyncio
    async def test_owner_without_address(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)

        with pytest.raises(AddressRequiredError) as exc_info:
            await recalculate(room, TravelMode.DRIVING, _users(owner_loc=None), _fixed_service(10))

        assert exc_info.value.role == "owner"

    @pytest.mark.asyncio
    async def test_member_without_address(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "bob", T0)

        with pytest.raises(AddressRequiredError) as exc_info:
            await recalculate(room, TravelMode.DRIVING, _users(bob_loc=None), _fixed_service(10))

        assert exc_info.value.user_id == "bob"

    @pytest.mark.asyncio
    async def test_long_walk_is_rejected(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)

        with pytest.raises(PreconditionError, match="walking"):
            await recalculate(room, TravelMode.WALKING, _users(), _fixed_service(70))

    @pytest.mark.asyncio
    async def test_normal_mode_returns_ledger_unchanged(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)
        service = _fixed_service(10)

        plan = await recalculate(room, TravelMode.NORMAL, {}, service)

        assert _spans(plan.time_slots) == [("10:00", "10:30")]
        assert plan.travel_slots == []
        service.travel_time.assert_not_awaited()


# ---------------------------------------------------------------------------
# Applying plans
# ---------------------------------------------------------------------------


class TestApplyTravelPlan:
    @pytest.mark.asyncio
    async def test_switching_modes_recalculates_from_snapshot(self, make_room):
        room = make_room()
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)

        apply_travel_plan(room, await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(10)))
        assert room.current_travel_mode == TravelMode.DRIVING
        assert _spans(room.travel_time_slots) == [("09:50", "10:00")]

        apply_travel_plan(room, await recalculate(room, TravelMode.TRANSIT, _users(), _fixed_service(30)))
        assert _spans(room.travel_time_slots) == [("09:30", "09:40"), ("09:40", "09:50"), ("09:50", "10:00")]
        assert room.time_slots[0].start_time == "10:00"

        apply_travel_plan(room, await recalculate(room, TravelMode.NORMAL, _users(), _fixed_service(10)))
        assert room.current_travel_mode == TravelMode.NORMAL
        assert room.travel_time_slots == []
        assert room.original_time_slots is None
        assert _spans(room.time_slots) == [("10:00", "10:30")]

    @pytest.mark.asyncio
    async def test_invalidate_restores_snapshot(self, make_room):
        room = make_room()
        room.settings.blocked_times = [BlockedTime(start_time="09:00", end_time="10:00")]
        assign_slot(room, "owner", MON, "10:00", "10:30", "alice", T0)
        apply_travel_plan(room, await recalculate(room, TravelMode.DRIVING, _users(), _fixed_service(10)))
        assert room.time_slots[0].start_time == "10:10"

        assert invalidate_travel_plan(room) is True

        assert _spans(room.time_slots) == [("10:00", "10:30")]
        assert room.travel_time_slots == []
        assert room.current_travel_mode is None
        assert invalidate_travel_plan(room) is False
