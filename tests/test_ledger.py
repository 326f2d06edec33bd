"""Tests for roomsync.core.ledger — slot submission, assignment, conflicts."""

from datetime import datetime

import pytest

from roomsync.core.errors import AuthorizationError, InvalidSlotError, NotFoundError
from roomsync.core.ledger import (
    SlotRequest,
    assign_slot,
    assigned_slots,
    find_common_slots,
    remove_slot,
    reset_carry_over,
    reset_progress,
    submit_slots,
)

NOW = datetime(2025, 3, 1, 9, 0)


# ---------------------------------------------------------------------------
# submit / remove
# ---------------------------------------------------------------------------


class TestSubmitSlots:
    def test_submit_stamps_day_and_claim_time(self, make_room):
        room = make_room()
        slots = submit_slots(room, "alice", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)
        assert len(slots) == 1
        assert slots[0].day == "tuesday"
        assert slots[0].claimed_at == NOW
        assert slots[0].assigned_by is None

    def test_submit_replaces_previous_slots(self, make_room):
        room = make_room()
        submit_slots(room, "alice", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)
        submit_slots(room, "bob", [SlotRequest("2025-03-04", "15:00", "15:30")], NOW)
        submit_slots(room, "alice", [SlotRequest("2025-03-05", "09:00", "09:10")], NOW)

        alice = [s for s in room.time_slots if s.user == "alice"]
        assert [(s.date, s.start_time) for s in alice] == [("2025-03-05", "09:00")]
        assert len([s for s in room.time_slots if s.user == "bob"]) == 1

    def test_empty_submission_clears_member_slots(self, make_room):
        room = make_room()
        submit_slots(room, "alice", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)
        submit_slots(room, "alice", [], NOW)
        assert room.time_slots == []

    def test_midnight_crossing_request_is_split(self, make_room):
        room = make_room()
        slots = submit_slots(room, "alice", [SlotRequest("2025-03-04", "22:00", "08:00")], NOW)
        assert [(s.start_time, s.end_time) for s in slots] == [("22:00", "24:00"), ("00:00", "08:00")]
        assert {s.date for s in slots} == {"2025-03-04"}

    def test_non_member_is_rejected(self, make_room):
        room = make_room()
        with pytest.raises(AuthorizationError):
            submit_slots(room, "mallory", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)

    @pytest.mark.parametrize("start,end", [("14:00", "14:00"), ("xx", "14:30")])
    def test_invalid_times_rejected(self, make_room, start, end):
        room = make_room()
        with pytest.raises(InvalidSlotError):
            submit_slots(room, "alice", [SlotRequest("2025-03-04", start, end)], NOW)

    def test_remove_deletes_only_exact_match(self, make_room):
        room = make_room()
        submit_slots(room, "alice", [
            SlotRequest("2025-03-04", "14:00", "14:30"),
            SlotRequest("2025-03-04", "15:00", "15:30"),
        ], NOW)
        submit_slots(room, "bob", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)

        assert remove_slot(room, "alice", "2025-03-04", "14:00", "14:30") is True
        assert remove_slot(room, "alice", "2025-03-04", "14:00", "14:30") is False
        assert [(s.user, s.start_time) for s in room.time_slots] == [("alice", "15:00"), ("bob", "14:00")]

    def test_remove_keeps_same_weekday_on_other_dates(self, make_room):
        room = make_room()
        submit_slots(room, "alice", [
            SlotRequest("2025-03-04", "14:00", "14:30"),
            SlotRequest("2025-03-11", "14:00", "14:30"),
        ], NOW)

        assert remove_slot(room, "alice", "2025-03-04", "14:00", "14:30") is True
        assert [s.date for s in room.time_slots] == ["2025-03-11"]


# ---------------------------------------------------------------------------
# assign
# ---------------------------------------------------------------------------


class TestAssignSlot:
    def test_owner_assigns_member(self, make_room):
        room = make_room()
        slot = assign_slot(room, "owner", "2025-03-03", "09:00", "10:00", "alice", NOW)
        assert slot.assigned_by == "owner"
        assert slot.assigned_at == NOW
        assert assigned_slots(room) == [slot]

    def test_reassignment_replaces_previous(self, make_room):
        room = make_room()
        assign_slot(room, "owner", "2025-03-03", "09:00", "10:00", "alice", NOW)
        assign_slot(room, "owner", "2025-03-03", "09:00", "10:00", "bob", NOW)
        assert [s.user for s in assigned_slots(room)] == ["bob"]

    def test_non_owner_cannot_assign(self, make_room):
        room = make_room()
        with pytest.raises(AuthorizationError):
            assign_slot(room, "alice", "2025-03-03", "09:00", "10:00", "bob", NOW)

    def test_target_must_be_member(self, make_room):
        room = make_room()
        with pytest.raises(NotFoundError):
            assign_slot(room, "owner", "2025-03-03", "09:00", "10:00", "mallory", NOW)


# ---------------------------------------------------------------------------
# common slots
# ---------------------------------------------------------------------------


class TestFindCommonSlots:
    def test_reports_groups_with_more_than_one_member(self, make_room):
        room = make_room(members=("alice", "bob", "carol"))
        submit_slots(room, "alice", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)
        submit_slots(room, "bob", [SlotRequest("2025-03-04", "14:00", "14:30")], NOW)
        submit_slots(room, "carol", [SlotRequest("2025-03-04", "16:00", "16:30")], NOW)

        report = find_common_slots(room)

        assert report.conflict_count == 1
        group = report.common_slots[0]
        assert (group.day, group.start_time) == ("tuesday", "14:00")
        assert group.members == ["alice", "bob"]
        assert report.total_slots == 2

    def test_sorted_by_weekday_then_start(self, make_room):
        room = make_room()
        requests = [
            SlotRequest("2025-03-09", "08:00", "08:10"),    # sunday
            SlotRequest("2025-03-04", "15:00", "15:10"),    # tuesday
            SlotRequest("2025-03-03", "16:00", "16:10"),    # monday
            SlotRequest("2025-03-04", "09:00", "09:10"),
        ]
        submit_slots(room, "alice", requests, NOW)
        submit_slots(room, "bob", requests, NOW)

        order = [(g.day, g.start_time) for g in find_common_slots(room).common_slots]
        assert order == [
            ("monday", "16:00"), ("tuesday", "09:00"), ("tuesday", "15:00"), ("sunday", "08:00"),
        ]

    def test_same_member_twice_is_not_a_conflict(self, make_room):
        room = make_room()
        submit_slots(room, "alice", [
            SlotRequest("2025-03-04", "14:00", "14:30"),
            SlotRequest("2025-03-11", "14:00", "14:30"),
        ], NOW)
        assert find_common_slots(room).common_slots == []


# ---------------------------------------------------------------------------
# bookkeeping
# ---------------------------------------------------------------------------


class TestMemberBookkeeping:
    def test_reset_carry_over_records_history(self, make_room):
        room = make_room()
        room.members[0].carry_over = 1.5
        assert reset_carry_over(room, "owner", NOW) == 1
        member = room.members[0]
        assert member.carry_over == 0
        assert member.carry_over_history[-1].amount == -1.5
        assert member.carry_over_history[-1].reason == "admin_reset"

    def test_reset_progress_records_previous_value(self, make_room):
        room = make_room()
        room.members[1].total_progress_time = 4.0
        assert reset_progress(room, "owner", NOW) == 1
        assert room.members[1].total_progress_time == 0
        assert room.members[1].progress_history[-1].previous_value == 4.0

    def test_resets_are_owner_only(self, make_room):
        room = make_room()
        with pytest.raises(AuthorizationError):
            reset_carry_over(room, "alice", NOW)
        with pytest.raises(AuthorizationError):
            reset_progress(room, "alice", NOW)
