"""Telegram event adapter — implements RoomEventPublisher.

Delivers each room event as a chat message to every participant of the
room (owner and members) that has a Telegram id on file.
"""

from __future__ import annotations

import logging
from typing import Any

from telegram import Bot

from roomsync.data.db import RoomDB, UserDB

logger = logging.getLogger(__name__)


class TelegramEventPublisher:
    """Telegram implementation of RoomEventPublisher."""

    def __init__(self, bot: Bot, room_db: RoomDB, user_db: UserDB) -> None:
        self._bot = bot
        self._room_db = room_db
        self._user_db = user_db

    def _recipients(self, room_id: str) -> list[int]:
        room = self._room_db.get_room(room_id)
        if room is None:
            return []
        chat_ids: list[int] = []
        for user_id in [room.owner, *(m.user for m in room.members)]:
            user = self._user_db.get_user(user_id)
            if user is not None and user.telegram_user_id is not None and user.telegram_user_id not in chat_ids:
                chat_ids.append(user.telegram_user_id)
        return chat_ids

    async def publish(self, room_id: str, event: str, payload: dict[str, Any]) -> None:
        text = payload.get("message") or event
        for chat_id in self._recipients(room_id):
            try:
                await self._bot.send_message(chat_id=chat_id, text=text)
            except Exception as exc:
                logger.warning("Failed to deliver %s for room %s to %s: %s", event, room_id, chat_id, exc)
