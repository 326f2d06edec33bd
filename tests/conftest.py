"""Shared test fixtures and configuration.

Sets up fake environment variables so roomsync.config doesn't sys.exit(),
and provides temp-file stores, a hand-driven clock and room builders.
"""

import os

# Patch env vars BEFORE any roomsync imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "")

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0))


@pytest.fixture
def room_db(tmp_path):
    from roomsync.data.db import RoomDB
    return RoomDB(db_path=str(tmp_path / "test_roomsync.db"))


@pytest.fixture
def user_db(tmp_path):
    from roomsync.data.db import UserDB
    return UserDB(db_path=str(tmp_path / "test_roomsync.db"))


@pytest.fixture
def activity_db(tmp_path):
    from roomsync.data.db import ActivityLogDB
    return ActivityLogDB(db_path=str(tmp_path / "test_roomsync.db"))


@pytest.fixture
def publisher():
    pub = AsyncMock()
    pub.publish = AsyncMock()
    return pub


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def make_room():
    """Build an in-memory Room with an owner and members."""
    from roomsync.data.models import Room, RoomMember

    def _make(owner="owner", members=("alice", "bob"), room_id="r1", name="Math"):
        return Room(
            id=room_id,
            name=name,
            owner=owner,
            members=[RoomMember(user=m) for m in members],
        )

    return _make


@pytest.fixture
def engine(room_db, user_db, activity_db, publisher, clock, no_sleep):
    from roomsync.core.confirmation import ConfirmationEngine
    return ConfirmationEngine(room_db, user_db, activity_db, publisher, clock, sleep=no_sleep)


@pytest.fixture
def service(room_db, user_db, activity_db, publisher, engine, clock, no_sleep):
    from roomsync.core.debounce import RoomDebouncer
    from roomsync.core.room_service import RoomService
    from roomsync.core.travel import TravelTimeService
    return RoomService(
        room_db, user_db, activity_db, publisher, engine,
        TravelTimeService(api_key=""),
        RoomDebouncer(timedelta(seconds=5), clock),
        clock, sleep=no_sleep,
    )


@pytest.fixture
def seeded(room_db, user_db, make_room):
    """Owner + alice + bob persisted, with a room r1 and located users."""
    from roomsync.data.models import User

    for uid, first, lat, lng, tg in [
        ("owner", "Olive", 37.5665, 126.9780, 12345),
        ("alice", "Alice", 37.5700, 126.9820, 222),
        ("bob", "Bob", 37.5800, 126.9900, 333),
    ]:
        user_db.add_user(User(
            id=uid, first_name=first, address_lat=lat, address_lng=lng, telegram_user_id=tg,
        ))
    room = room_db.create_room(make_room())
    return room
