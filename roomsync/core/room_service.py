"""
RoomSync — UI-Agnostic Room Service.

Orchestrates every room operation: load the room, apply a pure ledger /
negotiation / travel change, save with compare-and-swap (reloading and
reapplying on version conflicts), then write the audit log and publish
events. Each UI adapter calls this service and renders the results or
the CoordinationError it raises.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from roomsync.core import ledger, negotiation, preferences, travel
from roomsync.core.errors import (
    AlreadyConfirmedError,
    NotFoundError,
    PreconditionError,
)
from roomsync.core.retry import RetryPolicy, retry_on_conflict
from roomsync.data.models import (
    MemberResponse,
    Negotiation,
    NegotiationMessage,
    PreferenceEntry,
    Room,
    RoomMember,
    TimeSlot,
    TravelMode,
    User,
)
from roomsync.integrations.google_maps import geocode_address
from roomsync.ports.event_port import (
    NEGOTIATION_MESSAGE,
    NEGOTIATION_UPDATED,
    TRAVEL_MODE_CHANGED,
    RoomEventPublisher,
)

if TYPE_CHECKING:
    from roomsync.core.confirmation import ConfirmationEngine, ConfirmationResult
    from roomsync.core.debounce import RoomDebouncer
    from roomsync.data.db import ActivityLogDB, RoomDB, UserDB
    from roomsync.data.models import ActivityLogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LATLNG_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


class RoomService:
    """Room operations with persistence, audit and events. Collaborators are injected."""

    def __init__(
        self,
        room_db: RoomDB,
        user_db: UserDB,
        activity_db: ActivityLogDB,
        publisher: RoomEventPublisher,
        engine: ConfirmationEngine,
        travel_service: travel.TravelTimeService,
        debouncer: RoomDebouncer,
        clock: Callable[[], datetime],
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        maps_api_key: str = "",
    ) -> None:
        self._room_db = room_db
        self._user_db = user_db
        self._activity_db = activity_db
        self._publisher = publisher
        self._engine = engine
        self._travel = travel_service
        self._debouncer = debouncer
        self._clock = clock
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._maps_api_key = maps_api_key

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _load_room(self, room_id: str) -> Room:
        room = self._room_db.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found.")
        return room

    def _load_user(self, user_id: str) -> User:
        user = self._user_db.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        return user

    def _user_name(self, user_id: str) -> str:
        user = self._user_db.get_user(user_id)
        return (user.display_name if user else "") or user_id

    async def _update_room(
        self, room_id: str, mutate: Callable[[Room], T], *, allow_confirmed: bool = False,
    ) -> T:
        """Load → mutate → compare-and-swap save, retried on version conflicts."""
        async def attempt() -> T:
            room = self._load_room(room_id)
            if room.confirmed_at is not None and not allow_confirmed:
                raise AlreadyConfirmedError(room_id)
            result = mutate(room)
            self._room_db.save_room(room)
            return result

        return await retry_on_conflict(attempt, self._retry, sleep=self._sleep)

    async def _update_user(self, user_id: str, mutate: Callable[[User], T]) -> T:
        async def attempt() -> T:
            user = self._load_user(user_id)
            result = mutate(user)
            self._user_db.save_user(user)
            return result

        return await retry_on_conflict(attempt, self._retry, sleep=self._sleep)

    def _log(self, room_id: str, user_id: str | None, action: str, details: str, metadata: dict | None = None) -> None:
        name = self._user_name(user_id) if user_id else "system"
        self._activity_db.log_activity(room_id, user_id, name, action, details, metadata)

    async def _publish(self, room_id: str, event: str, message: str) -> None:
        await self._publisher.publish(room_id, event, {
            "roomId": room_id,
            "message": message,
            "timestamp": self._clock().isoformat(),
        })

    async def _negotiation_updated(self, room_id: str, message: str) -> None:
        if self._debouncer.should_emit(room_id):
            await self._publish(room_id, NEGOTIATION_UPDATED, message)
        else:
            logger.debug("Negotiation update for room %s debounced", room_id)

    # ------------------------------------------------------------------
    # Rooms and users
    # ------------------------------------------------------------------

    def register_user(self, user: User) -> User:
        existing = self._user_db.get_user(user.id)
        if existing is not None:
            return existing
        return self._user_db.add_user(user)

    def create_room(self, owner_id: str, name: str) -> Room:
        self._load_user(owner_id)
        room = Room(id=uuid.uuid4().hex[:6], name=name, owner=owner_id)
        return self._room_db.create_room(room)

    async def add_member(self, room_id: str, owner_id: str, user_id: str, priority: int = 3) -> Room:
        self._load_user(user_id)
        now = self._clock()

        def mutate(room: Room) -> Room:
            ledger.require_owner(room, owner_id, "add members")
            if room.member(user_id) is None and not room.is_owner(user_id):
                room.members.append(RoomMember(user=user_id, joined_at=now, priority=priority))
            return room

        room = await self._update_room(room_id, mutate)
        logger.info("User %s joined room %s", user_id, room_id)
        return room

    def get_room(self, room_id: str, user_id: str) -> Room:
        room = self._load_room(room_id)
        ledger.require_member(room, user_id, "view this room")
        return room

    def activity(self, room_id: str, user_id: str, limit: int = 50) -> list[ActivityLogEntry]:
        self.get_room(room_id, user_id)
        return self._activity_db.recent_by_room(room_id, limit)

    async def set_address(self, user_id: str, raw_address: str) -> User:
        """Set a user's location from "lat,lng" or by geocoding a free-text address."""
        match = _LATLNG_RE.match(raw_address)
        if match:
            address, lat, lng = raw_address.strip(), float(match.group(1)), float(match.group(2))
        else:
            geo = await geocode_address(raw_address, self._maps_api_key)
            if geo is None:
                raise PreconditionError("Could not locate that address. Try \"lat,lng\" instead.")
            address, lat, lng = geo.formatted_address, geo.lat, geo.lng

        def mutate(user: User) -> User:
            user.address, user.address_lat, user.address_lng = address, lat, lng
            return user

        return await self._update_user(user_id, mutate)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def submit_slots(
        self, room_id: str, user_id: str, requests: list[ledger.SlotRequest],
    ) -> tuple[list[TimeSlot], list[Negotiation]]:
        """Replace the caller's slots, then open negotiations for new conflicts."""
        now = self._clock()

        def mutate(room: Room) -> tuple[list[TimeSlot], list[Negotiation]]:
            ledger.require_member(room, user_id, "submit slots")
            travel.invalidate_travel_plan(room)
            slots = ledger.submit_slots(room, user_id, requests, now)
            return slots, negotiation.sync_negotiations(room, now)

        slots, opened = await self._update_room(room_id, mutate)
        self._log(room_id, user_id, "schedule_update", f"Submitted {len(slots)} slot(s)")
        if opened:
            await self._negotiation_updated(room_id, f"{len(opened)} new conflict(s) need negotiation.")
        return slots, opened

    async def remove_slot(self, room_id: str, user_id: str, iso_date: str, start_time: str, end_time: str) -> bool:
        def mutate(room: Room) -> bool:
            travel.invalidate_travel_plan(room)
            return ledger.remove_slot(room, user_id, iso_date, start_time, end_time)

        removed = await self._update_room(room_id, mutate)
        if not removed:
            raise NotFoundError(f"No slot {iso_date} {start_time}-{end_time} of yours in this room.")
        self._log(room_id, user_id, "schedule_update", f"Removed slot {iso_date} {start_time}-{end_time}")
        return removed

    async def assign_slot(
        self, room_id: str, owner_id: str, iso_date: str, start_time: str, end_time: str, target_user_id: str,
    ) -> TimeSlot:
        now = self._clock()

        def mutate(room: Room) -> TimeSlot:
            ledger.require_owner(room, owner_id, "assign slots")
            travel.invalidate_travel_plan(room)
            return ledger.assign_slot(room, owner_id, iso_date, start_time, end_time, target_user_id, now)

        slot = await self._update_room(room_id, mutate)
        self._log(
            room_id, owner_id, "auto_assign",
            f"Assigned {iso_date} {slot.start_time}-{slot.end_time} to {self._user_name(target_user_id)}",
        )
        return slot

    def common_slots(self, room_id: str, owner_id: str) -> ledger.CommonSlotReport:
        room = self._load_room(room_id)
        ledger.require_owner(room, owner_id, "view the conflict report")
        return ledger.find_common_slots(room)

    async def reset_carry_over(self, room_id: str, owner_id: str) -> int:
        now = self._clock()
        count = await self._update_room(
            room_id, lambda room: ledger.reset_carry_over(room, owner_id, now), allow_confirmed=True,
        )
        self._log(room_id, owner_id, "carry_over_reset", f"Reset carry-over of {count} member(s)")
        return count

    async def reset_progress(self, room_id: str, owner_id: str) -> int:
        now = self._clock()
        count = await self._update_room(
            room_id, lambda room: ledger.reset_progress(room, owner_id, now), allow_confirmed=True,
        )
        self._log(room_id, owner_id, "progress_reset", f"Reset completed time of {count} member(s)")
        return count

    # ------------------------------------------------------------------
    # Negotiations
    # ------------------------------------------------------------------

    def list_negotiations(self, room_id: str, user_id: str) -> list[Negotiation]:
        return negotiation.active_negotiations(self.get_room(room_id, user_id))

    async def post_message(self, room_id: str, negotiation_id: str, user_id: str, text: str) -> NegotiationMessage:
        now = self._clock()
        message = await self._update_room(
            room_id, lambda room: negotiation.add_message(room, negotiation_id, user_id, text, now),
        )
        await self._publish(room_id, NEGOTIATION_MESSAGE, f"[{negotiation_id}] {self._user_name(user_id)}: {text}")
        return message

    async def _after_negotiation_change(self, room_id: str, nego: Negotiation, actor_id: str | None) -> None:
        if nego.resolution is not None:
            self._log(
                room_id, actor_id, "negotiation_resolve",
                f"Negotiation {nego.id} {nego.status.value}: {self._user_name(nego.resolution.winner)} wins "
                f"{nego.slot_info.date} {nego.slot_info.start_time}",
                {"negotiationId": nego.id, "policy": nego.resolution.policy, "winner": nego.resolution.winner},
            )
            await self._negotiation_updated(
                room_id,
                f"{self._user_name(nego.resolution.winner)} gets "
                f"{nego.slot_info.date} {nego.slot_info.start_time}-{nego.slot_info.end_time}.",
            )
        else:
            await self._negotiation_updated(room_id, f"Negotiation {nego.id} was updated.")

    async def respond(
        self,
        room_id: str,
        negotiation_id: str,
        user_id: str,
        response: MemberResponse,
        yield_option: str | None = None,
    ) -> Negotiation:
        now = self._clock()

        def mutate(room: Room) -> Negotiation:
            travel.invalidate_travel_plan(room)
            return negotiation.respond(room, negotiation_id, user_id, response, now, yield_option)

        nego = await self._update_room(room_id, mutate)
        await self._after_negotiation_change(room_id, nego, user_id)
        return nego

    async def cancel_response(self, room_id: str, negotiation_id: str, user_id: str) -> Negotiation:
        now = self._clock()
        nego = await self._update_room(
            room_id, lambda room: negotiation.cancel_response(room, negotiation_id, user_id, now),
        )
        await self._after_negotiation_change(room_id, nego, user_id)
        return nego

    async def resolve(
        self, room_id: str, negotiation_id: str, owner_id: str, winner_id: str, *, force: bool = False,
    ) -> Negotiation:
        now = self._clock()
        action = negotiation.force_resolve if force else negotiation.resolve

        def mutate(room: Room) -> Negotiation:
            travel.invalidate_travel_plan(room)
            return action(room, negotiation_id, owner_id, winner_id, now)

        nego = await self._update_room(room_id, mutate)
        await self._after_negotiation_change(room_id, nego, owner_id)
        return nego

    async def timeout_negotiations(self, room_id: str, timeout: timedelta) -> list[Negotiation]:
        now = self._clock()

        def mutate(room: Room) -> list[Negotiation]:
            if not any(n.created_at + timeout <= now for n in negotiation.active_negotiations(room)):
                return []
            travel.invalidate_travel_plan(room)
            return negotiation.auto_resolve_timeouts(room, now, timeout)

        timed_out = await self._update_room(room_id, mutate)
        for nego in timed_out:
            await self._after_negotiation_change(room_id, nego, None)
        return timed_out

    async def sweep_negotiation_timeouts(self, timeout: timedelta) -> int:
        """Time out stale negotiations in every unconfirmed room. Failures stay per room."""
        total = 0
        for room in self._room_db.list_rooms():
            if room.confirmed_at is not None or not negotiation.active_negotiations(room):
                continue
            try:
                total += len(await self.timeout_negotiations(room.id, timeout))
            except Exception:
                logger.exception("Negotiation timeout sweep failed for room %s", room.id)
        if total:
            logger.info("Negotiation timeout sweep resolved %d negotiation(s)", total)
        return total

    # ------------------------------------------------------------------
    # Travel and confirmation
    # ------------------------------------------------------------------

    async def change_travel_mode(self, room_id: str, owner_id: str, mode: TravelMode) -> travel.TravelPlan:
        """Recalculate the schedule under `mode` and store it on the room."""
        async def attempt() -> travel.TravelPlan:
            room = self._load_room(room_id)
            ledger.require_owner(room, owner_id, "change the travel mode")
            if room.confirmed_at is not None:
                raise AlreadyConfirmedError(room_id)
            user_ids = {room.owner, *(m.user for m in room.members)}
            users = {uid: u for uid in user_ids if (u := self._user_db.get_user(uid)) is not None}
            plan = await travel.recalculate(room, mode, users, self._travel)
            travel.apply_travel_plan(room, plan)
            self._room_db.save_room(room)
            return plan

        plan = await retry_on_conflict(attempt, self._retry, sleep=self._sleep)
        self._log(
            room_id, owner_id, "travel_mode_change",
            f"Travel mode set to {mode.value} ({len(plan.travel_slots)} travel slot(s))",
        )
        await self._publish(room_id, TRAVEL_MODE_CHANGED, f"Travel mode is now {mode.value}.")
        return plan

    async def set_auto_confirm(self, room_id: str, owner_id: str, delay: timedelta | None) -> datetime | None:
        """Schedule (or with None, clear) unattended confirmation."""
        deadline = self._clock() + delay if delay is not None else None

        def mutate(room: Room) -> datetime | None:
            ledger.require_owner(room, owner_id, "schedule auto-confirmation")
            room.auto_confirm_at = deadline
            if deadline is not None and room.current_travel_mode is None:
                room.current_travel_mode = TravelMode.NORMAL
            return deadline

        await self._update_room(room_id, mutate)
        logger.info("Room %s auto-confirm set to %s", room_id, deadline)
        return deadline

    async def confirm(self, room_id: str, owner_id: str) -> ConfirmationResult:
        return await self._engine.confirm(room_id, owner_id, self._user_name(owner_id))

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def add_preferences(self, user_id: str, entries: list[PreferenceEntry]) -> int:
        return await self._update_user(user_id, lambda user: preferences.add_preferences(user, entries))

    async def remove_preference(
        self, user_id: str, day: int, start_time: str, end_time: str, specific_date: str | None = None,
    ) -> bool:
        return await self._update_user(
            user_id,
            lambda user: preferences.remove_preference(user, day, start_time, end_time, specific_date),
        )

    async def restore_preferences(self, room_id: str, user_id: str) -> int:
        self.get_room(room_id, user_id)
        restored = await self._update_user(user_id, lambda user: preferences.restore_preferences(user, room_id))
        if restored:
            self._log(room_id, user_id, "schedule_update", f"Restored {restored} preference segment(s)")
        return restored
