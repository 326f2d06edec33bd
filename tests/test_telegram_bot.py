"""Tests for roomsync.bot.telegram_bot — command parsing, handlers and authorization.

Handlers are exercised with mocked Update/context objects; the room
service is either a mock or the real one backed by temp-file stores.
"""

from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from roomsync.bot.telegram_bot import (
    _error_text,
    _parse_date,
    _parse_day,
    _parse_range,
    _parse_slot_args,
)
from roomsync.core.errors import (
    AddressRequiredError,
    AlreadyConfirmedError,
    AuthorizationError,
    NotFoundError,
    NothingToConfirmError,
)
from roomsync.data.models import MemberResponse, User


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParseRange:
    def test_pads_hours(self):
        assert _parse_range("9:00-10:30") == ("09:00", "10:30")

    def test_invalid_returns_none(self):
        assert _parse_range("9-10") is None
        assert _parse_range("mornings") is None


class TestParseDate:
    def test_valid(self):
        assert _parse_date("2025-03-04") == "2025-03-04"

    def test_invalid(self):
        assert _parse_date("2025-02-30") is None
        assert _parse_date("tomorrow") is None


class TestParseSlotArgs:
    def test_ranges_follow_latest_date(self):
        room_id, requests = _parse_slot_args(
            ["r1", "2025-03-04", "14:00-15:00", "16:00-17:00", "2025-03-05", "9:00-10:00"]
        )
        assert room_id == "r1"
        assert [(r.date, r.start_time, r.end_time) for r in requests] == [
            ("2025-03-04", "14:00", "15:00"),
            ("2025-03-04", "16:00", "17:00"),
            ("2025-03-05", "09:00", "10:00"),
        ]

    def test_room_only_means_clear(self):
        assert _parse_slot_args(["r1"]) == ("r1", [])

    def test_missing_room(self):
        with pytest.raises(ValueError, match="missing room id"):
            _parse_slot_args([])

    def test_range_before_date(self):
        with pytest.raises(ValueError, match="DATE must come before"):
            _parse_slot_args(["r1", "14:00-15:00"])

    def test_garbage_token(self):
        with pytest.raises(ValueError, match="not a date or time range"):
            _parse_slot_args(["r1", "2025-03-04", "later"])


class TestParseDay:
    def test_names_and_prefixes(self):
        assert _parse_day("mon") == 1
        assert _parse_day("Sunday") == 0
        assert _parse_day("sa") == 6

    def test_invalid(self):
        assert _parse_day("m") is None
        assert _parse_day("someday") is None


class TestErrorText:
    def test_prefixes(self):
        assert _error_text(AlreadyConfirmedError("r1")).startswith("⚠️ Already confirmed")
        assert _error_text(NothingToConfirmError("r1")).startswith("⚠️ Nothing to confirm")
        assert "/address" in _error_text(AddressRequiredError("alice"))
        assert _error_text(AuthorizationError("owner only")).startswith("⛔")
        assert _error_text(NotFoundError("Room x not found.")) == "❌ Room x not found."


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _make_update(user_id=12345, first_name="Olive"):
    """Create a mock Update for a command from an authorized user."""
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.first_name = first_name
    update.effective_user.last_name = None
    update.message.reply_text = AsyncMock()
    return update


def _make_context(service, args=()):
    context = MagicMock()
    context.args = list(args)
    context.bot_data = {"service": service}
    return context


def _mock_service():
    service = MagicMock()
    service.register_user = MagicMock(side_effect=lambda user: user)
    for name in (
        "submit_slots", "respond", "confirm", "set_auto_confirm", "change_travel_mode",
        "add_member", "resolve", "cancel_response", "remove_slot",
    ):
        setattr(service, name, AsyncMock())
    return service


def _reply(update) -> str:
    return update.message.reply_text.call_args.args[0]


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self):
        from roomsync.bot.telegram_bot import cmd_start

        update = _make_update(user_id=99999)  # not in ALLOWED_USER_IDS
        service = _mock_service()
        await cmd_start(update, _make_context(service))

        update.message.reply_text.assert_not_called()
        service.register_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_authorized_user_is_registered(self):
        from roomsync.bot.telegram_bot import cmd_start

        update = _make_update()
        service = _mock_service()
        await cmd_start(update, _make_context(service))

        registered = service.register_user.call_args.args[0]
        assert registered.id == "12345"
        assert registered.telegram_user_id == 12345
        assert "12345" in _reply(update)


class TestCommands:
    @pytest.mark.asyncio
    async def test_newroom_with_real_service(self, service, user_db, room_db):
        from roomsync.bot.telegram_bot import cmd_newroom

        update = _make_update()
        await cmd_newroom(update, _make_context(service, ["Study", "Hall"]))

        assert "Room 'Study Hall' created" in _reply(update)
        assert user_db.get_user("12345").first_name == "Olive"
        assert [r.owner for r in room_db.list_rooms()] == ["12345"]

    @pytest.mark.asyncio
    async def test_submit_usage_on_bad_args(self):
        from roomsync.bot.telegram_bot import cmd_submit

        update = _make_update()
        service = _mock_service()
        await cmd_submit(update, _make_context(service, ["r1", "14:00-15:00"]))

        assert _reply(update).startswith("Usage: /submit")
        service.submit_slots.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_reports_conflicts(self):
        from roomsync.bot.telegram_bot import cmd_submit

        nego = MagicMock()
        nego.id = "abcd1234"
        nego.slot_info.date = "2025-03-04"
        nego.slot_info.start_time = "14:00"
        nego.conflicting_members = [MagicMock(user="12345"), MagicMock(user="bob")]
        service = _mock_service()
        service.submit_slots.return_value = ([MagicMock()], [nego])

        update = _make_update()
        await cmd_submit(update, _make_context(service, ["r1", "2025-03-04", "14:00-15:00"]))

        room_id, user_id, requests = service.submit_slots.await_args.args
        assert (room_id, user_id, len(requests)) == ("r1", "12345", 1)
        assert "Conflict abcd1234" in _reply(update)

    @pytest.mark.asyncio
    async def test_yield_with_carry_over(self):
        from roomsync.bot.telegram_bot import cmd_yield

        service = _mock_service()
        service.respond.return_value = MagicMock(resolution=None)

        update = _make_update()
        await cmd_yield(update, _make_context(service, ["r1", "abcd1234", "carry"]))

        service.respond.assert_awaited_once_with("r1", "abcd1234", "12345", MemberResponse.YIELD, "carry_over")
        assert "yield" in _reply(update)

    @pytest.mark.asyncio
    async def test_remove_passes_calendar_date(self):
        from roomsync.bot.telegram_bot import cmd_remove

        service = _mock_service()
        update = _make_update()
        await cmd_remove(update, _make_context(service, ["r1", "2025-03-04", "14:00-14:30"]))

        service.remove_slot.assert_awaited_once_with("r1", "12345", "2025-03-04", "14:00", "14:30")
        assert "removed" in _reply(update)

    @pytest.mark.asyncio
    async def test_autoconfirm_off(self):
        from roomsync.bot.telegram_bot import cmd_autoconfirm

        service = _mock_service()
        service.set_auto_confirm.return_value = None

        update = _make_update()
        await cmd_autoconfirm(update, _make_context(service, ["r1", "off"]))

        service.set_auto_confirm.assert_awaited_once_with("r1", "12345", None)
        assert "cleared" in _reply(update)

    @pytest.mark.asyncio
    async def test_autoconfirm_minutes(self):
        from roomsync.bot.telegram_bot import cmd_autoconfirm

        service = _mock_service()
        service.set_auto_confirm.return_value = datetime(2025, 3, 1, 10, 30)
        update = _make_update()
        await cmd_autoconfirm(update, _make_context(service, ["r1", "90"]))

        assert service.set_auto_confirm.await_args.args[2] == timedelta(minutes=90)
        assert "2025-03-01 10:30" in _reply(update)

    @pytest.mark.asyncio
    async def test_engine_error_becomes_reply(self):
        from roomsync.bot.telegram_bot import cmd_confirm

        service = _mock_service()
        service.confirm.side_effect = AlreadyConfirmedError("r1")

        update = _make_update()
        await cmd_confirm(update, _make_context(service, ["r1"]))

        assert _reply(update).startswith("⚠️ Already confirmed")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self):
        from roomsync.bot.telegram_bot import cmd_confirm

        service = _mock_service()
        service.confirm.side_effect = RuntimeError("db locked")

        update = _make_update()
        await cmd_confirm(update, _make_context(service, ["r1"]))

        assert _reply(update) == "Something went wrong. Please try again."

    @pytest.mark.asyncio
    async def test_travel_rejects_unknown_mode(self):
        from roomsync.bot.telegram_bot import cmd_travel

        service = _mock_service()
        update = _make_update()
        await cmd_travel(update, _make_context(service, ["r1", "teleport"]))

        assert _reply(update).startswith("Usage: /travel")
        service.change_travel_mode.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_full_flow_against_real_service(self, service, user_db):
        from roomsync.bot.telegram_bot import cmd_addmember, cmd_assign, cmd_confirm, cmd_newroom

        user_db.add_user(User(id="alice", first_name="Alice"))
        update = _make_update()
        await cmd_newroom(update, _make_context(service, ["Math"]))
        room_id = _reply(update).rsplit("Id: ", 1)[1]

        await cmd_addmember(update, _make_context(service, [room_id, "alice"]))
        await cmd_assign(update, _make_context(service, [room_id, "2025-03-04", "9:00-10:00", "alice"]))
        await cmd_confirm(update, _make_context(service, [room_id]))

        assert _reply(update).startswith("🎉 Confirmed 1 slot(s)")
        assert user_db.get_user("alice").personal_times[0].title == "Math - Olive"
