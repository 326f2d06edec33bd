"""
RoomSync — Document stores.

Rooms and users persist in SQLite as whole JSON documents next to a
`version` column. Every save is a compare-and-swap on that version: a
writer holding a stale document gets VersionConflictError and must reload.
The few scalars the auto-confirm sweep queries on are mirrored into
their own columns.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from roomsync.data.models import ActivityLogEntry, Room, User

logger = logging.getLogger(__name__)


class VersionConflictError(Exception):
    """A compare-and-swap save found the stored version had moved on."""

    def __init__(self, kind: str, doc_id: str, expected: int) -> None:
        super().__init__(f"{kind} {doc_id} changed since version {expected}")
        self.kind = kind
        self.doc_id = doc_id
        self.expected = expected


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _utc_ts(value: datetime | None) -> str | None:
    """Like _ts, but aware values are normalised to UTC so text order matches time order."""
    if value is not None and value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return _ts(value)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _resolve_path(db_path: str | None) -> str:
    if db_path is None:
        from roomsync.config import settings
        db_path = settings.DATABASE_PATH
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return db_path


class RoomDB:
    """SQLite-backed storage for Room documents."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = _resolve_path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rooms (
                    id                  TEXT PRIMARY KEY,
                    doc                 TEXT    NOT NULL,
                    version             INTEGER NOT NULL DEFAULT 0,
                    confirmed_at        TEXT,
                    auto_confirm_at     TEXT,
                    current_travel_mode TEXT
                )
            """)
        logger.debug("Rooms table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_room(row: sqlite3.Row) -> Room:
        room = Room.model_validate_json(row["doc"])
        room.version = row["version"]
        # The column is authoritative: claim_confirmation writes it directly
        room.confirmed_at = _parse_ts(row["confirmed_at"])
        return room

    def create_room(self, room: Room) -> Room:
        room.version = 0
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rooms
                    (id, doc, version, confirmed_at, auto_confirm_at, current_travel_mode)
                VALUES (?, ?, 0, ?, ?, ?)
                """,
                (
                    room.id, room.model_dump_json(), _ts(room.confirmed_at),
                    _utc_ts(room.auto_confirm_at),
                    room.current_travel_mode.value if room.current_travel_mode else None,
                ),
            )
        logger.info("Room %s '%s' created (owner %s)", room.id, room.name, room.owner)
        return room

    def get_room(self, room_id: str) -> Room | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_room(row)

    def list_rooms(self) -> list[Room]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM rooms ORDER BY id").fetchall()
        return [self._row_to_room(r) for r in rows]

    def save_room(self, room: Room) -> Room:
        """Compare-and-swap the document on room.version; bumps it on success.

        Raises VersionConflictError when another writer saved first.
        """
        expected = room.version
        room.version = expected + 1
        try:
            doc = room.model_dump_json()
        finally:
            room.version = expected
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE rooms
                   SET doc = ?, version = version + 1,
                       confirmed_at = COALESCE(confirmed_at, ?),
                       auto_confirm_at = ?, current_travel_mode = ?
                 WHERE id = ? AND version = ?
                """,
                (
                    doc, _ts(room.confirmed_at), _utc_ts(room.auto_confirm_at),
                    room.current_travel_mode.value if room.current_travel_mode else None,
                    room.id, expected,
                ),
            )
        if cursor.rowcount == 0:
            raise VersionConflictError("Room", room.id, expected)
        room.version = expected + 1
        return room

    def claim_confirmation(self, room_id: str, at: datetime) -> bool:
        """Atomically set confirmed_at if still unset. True when this caller won.

        The claim bumps the version, so writers holding an older copy of the
        room conflict instead of saving over a confirmed slot set.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE rooms SET confirmed_at = ?, version = version + 1 WHERE id = ? AND confirmed_at IS NULL",
                (_ts(at), room_id),
            )
        claimed = cursor.rowcount > 0
        if claimed:
            logger.debug("Confirmation of room %s claimed at %s", room_id, at)
        return claimed

    def release_confirmation(self, room_id: str, at: datetime) -> None:
        """Undo a claim made at `at`, e.g. after a failed user save."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE rooms SET confirmed_at = NULL, version = version + 1 WHERE id = ? AND confirmed_at = ?",
                (room_id, _ts(at)),
            )
        logger.warning("Confirmation claim of room %s released", room_id)

    def find_due_rooms(self, now: datetime) -> list[Room]:
        """Rooms whose auto-confirm deadline passed and that are still unconfirmed."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM rooms
                 WHERE auto_confirm_at IS NOT NULL AND auto_confirm_at <= ?
                   AND confirmed_at IS NULL
                   AND current_travel_mode IS NOT NULL
                 ORDER BY auto_confirm_at, id
                """,
                (_utc_ts(now),),
            ).fetchall()
        return [self._row_to_room(r) for r in rows]


class UserDB:
    """SQLite-backed storage for User documents."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = _resolve_path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id               TEXT PRIMARY KEY,
                    doc              TEXT    NOT NULL,
                    version          INTEGER NOT NULL DEFAULT 0,
                    telegram_user_id INTEGER
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        user = User.model_validate_json(row["doc"])
        user.version = row["version"]
        return user

    def add_user(self, user: User) -> User:
        user.version = 0
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (id, doc, version, telegram_user_id) VALUES (?, ?, 0, ?)",
                (user.id, user.model_dump_json(), user.telegram_user_id),
            )
        logger.info("User %s registered", user.id)
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_by_telegram_id(self, telegram_user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_user_id = ?", (telegram_user_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(r) for r in rows]

    def save_user(self, user: User) -> User:
        """Compare-and-swap on user.version. Raises VersionConflictError when stale."""
        expected = user.version
        user.version = expected + 1
        try:
            doc = user.model_dump_json()
        finally:
            user.version = expected
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE users SET doc = ?, version = version + 1, telegram_user_id = ?
                 WHERE id = ? AND version = ?
                """,
                (doc, user.telegram_user_id, user.id, expected),
            )
        if cursor.rowcount == 0:
            raise VersionConflictError("User", user.id, expected)
        user.version = expected + 1
        return user


class ActivityLogDB:
    """Append-only audit log of room actions."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = _resolve_path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    room_id    TEXT,
                    user_id    TEXT,
                    user_name  TEXT NOT NULL DEFAULT '',
                    action     TEXT NOT NULL,
                    details    TEXT NOT NULL DEFAULT '',
                    metadata   TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)
        logger.debug("Activity log table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=row["id"],
            room_id=row["room_id"],
            user_id=row["user_id"],
            user_name=row["user_name"],
            action=row["action"],
            details=row["details"],
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
        )

    def log_activity(
        self,
        room_id: str | None,
        user_id: str | None,
        user_name: str,
        action: str,
        details: str = "",
        metadata: dict | None = None,
    ) -> ActivityLogEntry:
        created_at = datetime.now().isoformat()
        meta = metadata or {}
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO activity_log
                    (room_id, user_id, user_name, action, details, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (room_id, user_id, user_name, action, details, json.dumps(meta), created_at),
            )
            entry_id = cursor.lastrowid
        logger.debug("Activity #%d %s logged for room %s", entry_id, action, room_id)
        return ActivityLogEntry(
            id=entry_id, room_id=room_id, user_id=user_id, user_name=user_name,
            action=action, details=details, metadata=meta, created_at=created_at,
        )

    def recent_by_room(self, room_id: str, limit: int = 50) -> list[ActivityLogEntry]:
        """Newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_log WHERE room_id = ? ORDER BY id DESC LIMIT ?",
                (room_id, limit),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]
