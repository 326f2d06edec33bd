"""
RoomSync — Telegram Bot.

Telegram is the command surface of the coordination engine: every room
operation (slot submission, assignment, negotiation, travel mode,
confirmation) is a command that maps onto one RoomService call. Two
repeating jobs drive the auto-confirm sweep and the negotiation timeout
sweep.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from roomsync.config import settings
from roomsync.core.errors import (
    AddressRequiredError,
    AlreadyConfirmedError,
    AuthorizationError,
    CoordinationError,
    NothingToConfirmError,
)
from roomsync.core.ledger import SlotRequest
from roomsync.core.time_units import DAY_ORDER, day_name_to_number
from roomsync.data.models import MemberResponse, PreferenceEntry, TravelMode, User

if TYPE_CHECKING:
    from roomsync.core.auto_confirm import AutoConfirmScheduler
    from roomsync.core.room_service import RoomService

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^(\d{1,2}:\d{2})-(\d{1,2}:\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _parse_range(text: str) -> tuple[str, str] | None:
    """Parse 'HH:MM-HH:MM' into zero-padded (start, end), or None."""
    match = _RANGE_RE.match(text.strip())
    if not match:
        return None
    start, end = match.groups()
    return start.zfill(5), end.zfill(5)


def _parse_date(text: str) -> str | None:
    if not _DATE_RE.match(text):
        return None
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        return None


def _parse_slot_args(args: list[str]) -> tuple[str, list[SlotRequest]]:
    """Parse 'ROOM DATE HH:MM-HH:MM [HH:MM-HH:MM ...] [DATE HH:MM-HH:MM ...]'.

    Each range applies to the most recent DATE. Raises ValueError on bad input.
    """
    if len(args) < 1:
        raise ValueError("missing room id")
    room_id, rest = args[0], args[1:]
    current: str | None = None
    requests: list[SlotRequest] = []
    for token in rest:
        parsed_date = _parse_date(token)
        if parsed_date:
            current = parsed_date
            continue
        rng = _parse_range(token)
        if rng is None:
            raise ValueError(f"not a date or time range: {token}")
        if current is None:
            raise ValueError("a DATE must come before the first time range")
        requests.append(SlotRequest(date=current, start_time=rng[0], end_time=rng[1]))
    return room_id, requests


def _parse_day(text: str) -> int | None:
    """Weekday name or prefix ('mon', 'Tuesday') to Sunday-based number."""
    text = text.lower()
    for day in DAY_ORDER:
        if day.startswith(text) and len(text) >= 2:
            return day_name_to_number(day)
    return None


def _error_text(exc: CoordinationError) -> str:
    if isinstance(exc, AlreadyConfirmedError):
        return f"⚠️ Already confirmed. {exc}"
    if isinstance(exc, NothingToConfirmError):
        return f"⚠️ Nothing to confirm. {exc}"
    if isinstance(exc, AddressRequiredError):
        return f"📍 {exc}\nUse /address to set it."
    if isinstance(exc, AuthorizationError):
        return f"⛔ {exc}"
    return f"❌ {exc}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(context: ContextTypes.DEFAULT_TYPE) -> RoomService:
    return context.bot_data["service"]


def _caller(update: Update, context: ContextTypes.DEFAULT_TYPE) -> str:
    """Engine user id of the sender, registering them on first contact."""
    tg_user = update.effective_user
    user = User(
        id=str(tg_user.id),
        first_name=tg_user.first_name or "",
        last_name=tg_user.last_name or "",
        telegram_user_id=tg_user.id,
    )
    return _service(context).register_user(user).id


async def _usage(update: Update, text: str) -> None:
    await update.message.reply_text(f"Usage: {text}")


async def _guarded(update: Update, coro: Coroutine[Any, Any, str]) -> None:
    """Await a service call that renders a reply; map engine errors to replies."""
    try:
        reply = await coro
    except CoordinationError as exc:
        await update.message.reply_text(_error_text(exc))
        return
    except Exception as exc:
        logger.error("Command failed: %s", exc, exc_info=True)
        await update.message.reply_text("Something went wrong. Please try again.")
        return
    await update.message.reply_text(reply)


# ---------------------------------------------------------------------------
# General commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — register and welcome."""
    user_id = _caller(update, context)
    await update.message.reply_text(
        "Welcome to *RoomSync*!\n\n"
        f"Your user id is `{user_id}`.\n"
        "Create a room with /newroom, share its id, and submit your slots "
        "with /submit. Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/newroom NAME — create a room you own\n"
        "/addmember ROOM USER — add a member (owner)\n"
        "/address TEXT|LAT,LNG — set your location\n"
        "/prefer DAY HH:MM-HH:MM [PRIORITY] — add a weekly preference\n"
        "/room ROOM — room overview\n"
        "/submit ROOM DATE HH:MM-HH:MM ... — replace your slots\n"
        "/remove ROOM DATE HH:MM-HH:MM — remove one slot\n"
        "/assign ROOM DATE HH:MM-HH:MM USER — assign a slot (owner)\n"
        "/conflicts ROOM — common-slot report (owner)\n"
        "/negotiations ROOM — active negotiations\n"
        "/say ROOM NEG TEXT — message a negotiation\n"
        "/claim ROOM NEG, /yield ROOM NEG [carry] — respond\n"
        "/withdraw ROOM NEG — withdraw your response\n"
        "/resolve ROOM NEG USER, /forceresolve ROOM NEG USER — decide (owner)\n"
        "/travel ROOM MODE — normal|transit|driving|bicycling|walking (owner)\n"
        "/autoconfirm ROOM MINUTES|off — schedule confirmation (owner)\n"
        "/confirm ROOM — confirm now (owner)\n"
        "/restore ROOM — restore preferences consumed by ROOM\n"
        "/resetcarry ROOM, /resetprogress ROOM — reset counters (owner)\n"
        "/activity ROOM — recent activity",
    )


@authorized_only
async def cmd_newroom(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newroom NAME."""
    if not context.args:
        await _usage(update, "/newroom NAME")
        return
    user_id = _caller(update, context)
    name = " ".join(context.args)

    async def run() -> str:
        room = _service(context).create_room(user_id, name)
        return f"✅ Room '{room.name}' created. Id: {room.id}"

    await _guarded(update, run())


@authorized_only
async def cmd_addmember(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addmember ROOM USER."""
    if len(context.args or []) != 2:
        await _usage(update, "/addmember ROOM USER")
        return
    owner_id = _caller(update, context)
    room_id, member_id = context.args

    async def run() -> str:
        room = await _service(context).add_member(room_id, owner_id, member_id)
        return f"✅ {member_id} is a member of '{room.name}' ({len(room.members)} member(s))."

    await _guarded(update, run())


@authorized_only
async def cmd_address(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /address TEXT — set the caller's location for travel calculation."""
    if not context.args:
        await _usage(update, "/address 37.5665,126.9780 or /address <street address>")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        user = await _service(context).set_address(user_id, " ".join(context.args))
        return f"📍 Location set: {user.address} ({user.address_lat:.5f}, {user.address_lng:.5f})"

    await _guarded(update, run())


@authorized_only
async def cmd_prefer(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /prefer DAY HH:MM-HH:MM [PRIORITY]."""
    args = context.args or []
    day = _parse_day(args[0]) if args else None
    rng = _parse_range(args[1]) if len(args) > 1 else None
    if day is None or rng is None:
        await _usage(update, "/prefer DAY HH:MM-HH:MM [PRIORITY 1-5]")
        return
    try:
        priority = int(args[2]) if len(args) > 2 else 3
    except ValueError:
        await _usage(update, "/prefer DAY HH:MM-HH:MM [PRIORITY 1-5]")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        entry = PreferenceEntry(day_of_week=day, start_time=rng[0], end_time=rng[1], priority=priority)
        added = await _service(context).add_preferences(user_id, [entry])
        return "✅ Preference added." if added else "That preference already exists."

    await _guarded(update, run())


@authorized_only
async def cmd_room(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /room ROOM — overview of slots and status."""
    if len(context.args or []) != 1:
        await _usage(update, "/room ROOM")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        room = _service(context).get_room(context.args[0], user_id)
        lines = [f"{room.name} ({room.id}) — owner {room.owner}"]
        if room.confirmed_at:
            lines.append(f"Confirmed at {room.confirmed_at:%Y-%m-%d %H:%M}")
        elif room.auto_confirm_at:
            lines.append(f"Auto-confirm at {room.auto_confirm_at:%Y-%m-%d %H:%M}")
        lines.append(f"Travel mode: {room.current_travel_mode.value if room.current_travel_mode else 'unset'}")
        for member in room.members:
            lines.append(f"• {member.user}: carry-over {member.carry_over:g}h")
        lines.append(f"{len(room.time_slots)} slot(s), {len(room.travel_time_slots)} travel slot(s)")
        return "\n".join(lines)

    await _guarded(update, run())


@authorized_only
async def cmd_activity(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /activity ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/activity ROOM")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        entries = _service(context).activity(context.args[0], user_id, limit=10)
        if not entries:
            return "No activity yet."
        return "\n".join(f"{e.created_at[:16]} {e.user_name}: {e.details or e.action}" for e in entries)

    await _guarded(update, run())


# ---------------------------------------------------------------------------
# Ledger commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_submit(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /submit ROOM DATE HH:MM-HH:MM ... — replaces all of the caller's slots."""
    try:
        room_id, requests = _parse_slot_args(context.args or [])
    except ValueError as exc:
        await _usage(update, f"/submit ROOM DATE HH:MM-HH:MM [HH:MM-HH:MM ...] ({exc})")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        slots, opened = await _service(context).submit_slots(room_id, user_id, requests)
        reply = f"✅ {len(slots)} slot(s) submitted."
        for nego in opened:
            reply += (
                f"\n⚔️ Conflict {nego.id}: {nego.slot_info.date} {nego.slot_info.start_time} "
                f"with {', '.join(m.user for m in nego.conflicting_members)}"
            )
        return reply

    await _guarded(update, run())


@authorized_only
async def cmd_remove(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /remove ROOM DATE HH:MM-HH:MM."""
    args = context.args or []
    iso_date = _parse_date(args[1]) if len(args) == 3 else None
    rng = _parse_range(args[2]) if len(args) == 3 else None
    if iso_date is None or rng is None:
        await _usage(update, "/remove ROOM DATE HH:MM-HH:MM")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        await _service(context).remove_slot(args[0], user_id, iso_date, rng[0], rng[1])
        return "🗑️ Slot removed."

    await _guarded(update, run())


@authorized_only
async def cmd_assign(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /assign ROOM DATE HH:MM-HH:MM USER."""
    args = context.args or []
    iso_date = _parse_date(args[1]) if len(args) == 4 else None
    rng = _parse_range(args[2]) if len(args) == 4 else None
    if iso_date is None or rng is None:
        await _usage(update, "/assign ROOM DATE HH:MM-HH:MM USER")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        slot = await _service(context).assign_slot(args[0], owner_id, iso_date, rng[0], rng[1], args[3])
        return f"📌 {slot.date} {slot.start_time}-{slot.end_time} assigned to {slot.user}."

    await _guarded(update, run())


@authorized_only
async def cmd_conflicts(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /conflicts ROOM — common-slot report."""
    if len(context.args or []) != 1:
        await _usage(update, "/conflicts ROOM")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        report = _service(context).common_slots(context.args[0], owner_id)
        if not report.common_slots:
            return f"No conflicts across {report.total_slots} slot group(s)."
        lines = [f"{report.conflict_count} conflict(s):"]
        for group in report.common_slots:
            lines.append(f"• {group.day} {group.start_time}-{group.end_time}: {', '.join(group.members)}")
        return "\n".join(lines)

    await _guarded(update, run())


# ---------------------------------------------------------------------------
# Negotiation commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_negotiations(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /negotiations ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/negotiations ROOM")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        negos = _service(context).list_negotiations(context.args[0], user_id)
        if not negos:
            return "No active negotiations."
        lines = []
        for nego in negos:
            responses = ", ".join(f"{m.user}={m.response.value}" for m in nego.conflicting_members)
            lines.append(
                f"{nego.id}: {nego.slot_info.date} {nego.slot_info.start_time}-{nego.slot_info.end_time} ({responses})"
            )
        return "\n".join(lines)

    await _guarded(update, run())


@authorized_only
async def cmd_say(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /say ROOM NEG TEXT."""
    args = context.args or []
    if len(args) < 3:
        await _usage(update, "/say ROOM NEG TEXT")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        await _service(context).post_message(args[0], args[1], user_id, " ".join(args[2:]))
        return "💬 Sent."

    await _guarded(update, run())


async def _respond(update: Update, context: ContextTypes.DEFAULT_TYPE, response: MemberResponse) -> None:
    args = context.args or []
    if len(args) < 2:
        await _usage(update, f"/{response.value} ROOM NEG" + (" [carry]" if response == MemberResponse.YIELD else ""))
        return
    yield_option = "carry_over" if response == MemberResponse.YIELD and args[2:3] == ["carry"] else None
    user_id = _caller(update, context)

    async def run() -> str:
        nego = await _service(context).respond(args[0], args[1], user_id, response, yield_option)
        if nego.resolution is not None:
            return f"🤝 Settled: {nego.resolution.winner} gets {nego.slot_info.date} {nego.slot_info.start_time}."
        return f"✅ Recorded your {response.value}."

    await _guarded(update, run())


@authorized_only
async def cmd_claim(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /claim ROOM NEG."""
    await _respond(update, context, MemberResponse.CLAIM)


@authorized_only
async def cmd_yield(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /yield ROOM NEG [carry]."""
    await _respond(update, context, MemberResponse.YIELD)


@authorized_only
async def cmd_withdraw(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /withdraw ROOM NEG."""
    args = context.args or []
    if len(args) != 2:
        await _usage(update, "/withdraw ROOM NEG")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        await _service(context).cancel_response(args[0], args[1], user_id)
        return "↩️ Response withdrawn."

    await _guarded(update, run())


async def _resolve(update: Update, context: ContextTypes.DEFAULT_TYPE, force: bool) -> None:
    args = context.args or []
    if len(args) != 3:
        await _usage(update, f"/{'forceresolve' if force else 'resolve'} ROOM NEG USER")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        nego = await _service(context).resolve(args[0], args[1], owner_id, args[2], force=force)
        return f"🏁 {nego.resolution.winner} gets {nego.slot_info.date} {nego.slot_info.start_time}."

    await _guarded(update, run())


@authorized_only
async def cmd_resolve(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /resolve ROOM NEG USER."""
    await _resolve(update, context, force=False)


@authorized_only
async def cmd_forceresolve(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /forceresolve ROOM NEG USER."""
    await _resolve(update, context, force=True)


# ---------------------------------------------------------------------------
# Travel, confirmation and bookkeeping commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_travel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /travel ROOM MODE."""
    args = context.args or []
    try:
        mode = TravelMode(args[1].lower()) if len(args) == 2 else None
    except ValueError:
        mode = None
    if mode is None:
        await _usage(update, "/travel ROOM normal|transit|driving|bicycling|walking")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        plan = await _service(context).change_travel_mode(args[0], owner_id, mode)
        if mode == TravelMode.NORMAL:
            return "🚶 Travel mode cleared; original schedule restored."
        shifted = sum(1 for leg in plan.legs if leg.shifted)
        return (
            f"🚗 Travel mode {mode.value}: {len(plan.legs)} leg(s), "
            f"{len(plan.travel_slots)} travel slot(s), {shifted} block(s) moved past blocked times."
        )

    await _guarded(update, run())


@authorized_only
async def cmd_autoconfirm(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /autoconfirm ROOM MINUTES|off."""
    args = context.args or []
    delay: timedelta | None = None
    valid = len(args) == 2
    if valid and args[1].lower() != "off":
        try:
            delay = timedelta(minutes=int(args[1]))
        except ValueError:
            valid = False
    if not valid:
        await _usage(update, "/autoconfirm ROOM MINUTES|off")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        deadline = await _service(context).set_auto_confirm(args[0], owner_id, delay)
        if deadline is None:
            return "⏹️ Auto-confirm cleared."
        return f"⏰ Auto-confirm scheduled for {deadline:%Y-%m-%d %H:%M}."

    await _guarded(update, run())


@authorized_only
async def cmd_confirm(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /confirm ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/confirm ROOM")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        result = await _service(context).confirm(context.args[0], owner_id)
        return (
            f"🎉 Confirmed {result.confirmed_slots_count} slot(s) as "
            f"{result.merged_slots_count} block(s) for {result.affected_members_count} member(s) "
            f"(travel mode: {result.confirmed_travel_mode.value})."
        )

    await _guarded(update, run())


@authorized_only
async def cmd_restore(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /restore ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/restore ROOM")
        return
    user_id = _caller(update, context)

    async def run() -> str:
        restored = await _service(context).restore_preferences(context.args[0], user_id)
        if not restored:
            return "Nothing to restore for this room."
        return f"♻️ Restored {restored} preference segment(s)."

    await _guarded(update, run())


@authorized_only
async def cmd_resetcarry(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /resetcarry ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/resetcarry ROOM")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        count = await _service(context).reset_carry_over(context.args[0], owner_id)
        return f"🔄 Carry-over reset for {count} member(s)."

    await _guarded(update, run())


@authorized_only
async def cmd_resetprogress(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /resetprogress ROOM."""
    if len(context.args or []) != 1:
        await _usage(update, "/resetprogress ROOM")
        return
    owner_id = _caller(update, context)

    async def run() -> str:
        count = await _service(context).reset_progress(context.args[0], owner_id)
        return f"🔄 Completed time reset for {count} member(s)."

    await _guarded(update, run())


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def _clock() -> datetime:
    return datetime.now(ZoneInfo(settings.TIMEZONE))


def build_app(
    service: RoomService | None = None,
    scheduler: AutoConfirmScheduler | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        service: Room service. Defaults to one wired to the SQLite stores
                 and a TelegramEventPublisher on this bot.
        scheduler: Auto-confirm scheduler sharing the service's engine.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if service is None or scheduler is None:
        from roomsync.adapters.telegram_publisher import TelegramEventPublisher
        from roomsync.core.auto_confirm import AutoConfirmScheduler
        from roomsync.core.confirmation import ConfirmationEngine
        from roomsync.core.debounce import RoomDebouncer
        from roomsync.core.retry import RetryPolicy
        from roomsync.core.room_service import RoomService
        from roomsync.core.travel import TravelTimeService
        from roomsync.data.db import ActivityLogDB, RoomDB, UserDB

        room_db, user_db, activity_db = RoomDB(), UserDB(), ActivityLogDB()
        publisher = TelegramEventPublisher(app.bot, room_db, user_db)
        policy = RetryPolicy.from_settings()
        engine = ConfirmationEngine(room_db, user_db, activity_db, publisher, _clock, policy)
        service = service or RoomService(
            room_db, user_db, activity_db, publisher, engine,
            TravelTimeService(settings.GOOGLE_MAPS_API_KEY),
            RoomDebouncer(timedelta(seconds=settings.EVENT_DEBOUNCE_SECONDS), _clock),
            _clock, policy, maps_api_key=settings.GOOGLE_MAPS_API_KEY,
        )
        scheduler = scheduler or AutoConfirmScheduler(room_db, engine, _clock)

    app.bot_data["service"] = service

    commands = {
        "start": cmd_start, "help": cmd_help,
        "newroom": cmd_newroom, "addmember": cmd_addmember,
        "address": cmd_address, "prefer": cmd_prefer,
        "room": cmd_room, "activity": cmd_activity,
        "submit": cmd_submit, "remove": cmd_remove, "assign": cmd_assign,
        "conflicts": cmd_conflicts, "negotiations": cmd_negotiations,
        "say": cmd_say, "claim": cmd_claim, "yield": cmd_yield, "withdraw": cmd_withdraw,
        "resolve": cmd_resolve, "forceresolve": cmd_forceresolve,
        "travel": cmd_travel, "autoconfirm": cmd_autoconfirm, "confirm": cmd_confirm,
        "restore": cmd_restore, "resetcarry": cmd_resetcarry, "resetprogress": cmd_resetprogress,
    }
    for name, handler in commands.items():
        app.add_handler(CommandHandler(name, handler))

    _setup_sweeps(app, service, scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_sweeps(app: Application, service: RoomService, scheduler: AutoConfirmScheduler) -> None:
    """Register the auto-confirm and negotiation timeout sweeps."""
    timeout = timedelta(minutes=settings.NEGOTIATION_TIMEOUT_MINUTES)

    async def _auto_confirm_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.sweep()

    async def _negotiation_timeout_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await service.sweep_negotiation_timeouts(timeout)

    app.job_queue.run_repeating(
        _auto_confirm_job,
        interval=settings.AUTO_CONFIRM_INTERVAL_SECONDS,
        first=settings.AUTO_CONFIRM_INTERVAL_SECONDS,
        name="auto_confirm_sweep",
    )
    app.job_queue.run_repeating(
        _negotiation_timeout_job,
        interval=settings.NEGOTIATION_SWEEP_INTERVAL_SECONDS,
        first=settings.NEGOTIATION_SWEEP_INTERVAL_SECONDS,
        name="negotiation_timeout_sweep",
    )

    logger.info(
        "Sweeps scheduled: auto-confirm every %ds, negotiation timeouts every %ds (timeout %d min)",
        settings.AUTO_CONFIRM_INTERVAL_SECONDS,
        settings.NEGOTIATION_SWEEP_INTERVAL_SECONDS,
        settings.NEGOTIATION_TIMEOUT_MINUTES,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting RoomSync bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
