"""Tests for roomsync.adapters.telegram_publisher — room events as chat messages."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from roomsync.adapters.telegram_publisher import TelegramEventPublisher
from roomsync.data.models import User


class TestTelegramEventPublisher:
    @pytest.mark.asyncio
    async def test_sends_to_every_participant_with_telegram(self, seeded, room_db, user_db):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        publisher = TelegramEventPublisher(bot, room_db, user_db)

        await publisher.publish("r1", "schedule-confirmed", {"message": "Confirmed!"})

        chat_ids = [c.kwargs["chat_id"] for c in bot.send_message.await_args_list]
        assert chat_ids == [12345, 222, 333]
        assert all(c.kwargs["text"] == "Confirmed!" for c in bot.send_message.await_args_list)

    @pytest.mark.asyncio
    async def test_skips_users_without_telegram(self, room_db, user_db, make_room):
        user_db.add_user(User(id="owner", telegram_user_id=1))
        user_db.add_user(User(id="alice"))
        room_db.create_room(make_room(members=("alice",)))
        bot = MagicMock()
        bot.send_message = AsyncMock()

        await TelegramEventPublisher(bot, room_db, user_db).publish("r1", "negotiation-updated", {})

        bot.send_message.assert_awaited_once_with(chat_id=1, text="negotiation-updated")

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_others(self, seeded, room_db, user_db):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=[Exception("blocked"), None, None])

        await TelegramEventPublisher(bot, room_db, user_db).publish("r1", "x", {"message": "hi"})

        assert bot.send_message.await_count == 3

    @pytest.mark.asyncio
    async def test_unknown_room_sends_nothing(self, room_db, user_db):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        await TelegramEventPublisher(bot, room_db, user_db).publish("nope", "x", {"message": "hi"})
        bot.send_message.assert_not_awaited()
