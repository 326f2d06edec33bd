"""
RoomSync — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module reads its tunables from the `settings` singleton.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from roomsync/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/roomsync.db"

    TIMEZONE: str = "Asia/Seoul"

    # Google Maps Distance Matrix (optional, Haversine fallback without it)
    GOOGLE_MAPS_API_KEY: str = ""

    # Sweeps
    AUTO_CONFIRM_INTERVAL_SECONDS: int = 60
    NEGOTIATION_TIMEOUT_MINUTES: int = 1440
    NEGOTIATION_SWEEP_INTERVAL_SECONDS: int = 300

    # Optimistic concurrency
    SAVE_MAX_ATTEMPTS: int = 3
    SAVE_RETRY_BASE_DELAY_SECONDS: float = 0.1

    # Real-time events
    EVENT_DEBOUNCE_SECONDS: float = 5.0

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("SAVE_MAX_ATTEMPTS", mode="before")
    @classmethod
    def parse_attempts(cls, v: str | int) -> int:
        attempts = int(v)
        if attempts < 1:
            raise ValueError("SAVE_MAX_ATTEMPTS must be at least 1")
        return attempts


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/roomsync.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Seoul"),
        GOOGLE_MAPS_API_KEY=os.getenv("GOOGLE_MAPS_API_KEY", ""),
        AUTO_CONFIRM_INTERVAL_SECONDS=os.getenv("AUTO_CONFIRM_INTERVAL_SECONDS", "60"),
        NEGOTIATION_TIMEOUT_MINUTES=os.getenv("NEGOTIATION_TIMEOUT_MINUTES", "1440"),
        NEGOTIATION_SWEEP_INTERVAL_SECONDS=os.getenv("NEGOTIATION_SWEEP_INTERVAL_SECONDS", "300"),
        SAVE_MAX_ATTEMPTS=os.getenv("SAVE_MAX_ATTEMPTS", "3"),
        SAVE_RETRY_BASE_DELAY_SECONDS=os.getenv("SAVE_RETRY_BASE_DELAY_SECONDS", "0.1"),
        EVENT_DEBOUNCE_SECONDS=os.getenv("EVENT_DEBOUNCE_SECONDS", "5"),
    )


# Singleton, imported by all other modules as:
#   from roomsync.config import settings
settings = _load_settings()
