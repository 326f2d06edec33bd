"""Coordination error taxonomy.

Every error carries a user-facing message. Callers decide from the class
whether to retry (never for preconditions), prompt for data, or ignore.
"""

from __future__ import annotations


class CoordinationError(Exception):
    """Base class for every failure the coordination engine reports."""


class NotFoundError(CoordinationError):
    """Raised when a room, user or negotiation does not exist."""


class PreconditionError(CoordinationError):
    """Raised when an operation is not allowed in the current state."""


class AlreadyConfirmedError(PreconditionError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id} schedule is already confirmed.")
        self.room_id = room_id


class NothingToConfirmError(PreconditionError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id} has no assigned slots to confirm.")
        self.room_id = room_id


class AddressRequiredError(PreconditionError):
    def __init__(self, user_id: str, role: str = "member") -> None:
        super().__init__(
            f"Address required: {role} {user_id} has no location set. "
            "Add an address to the profile and try again."
        )
        self.user_id = user_id
        self.role = role


class NegotiationClosedError(PreconditionError):
    def __init__(self, negotiation_id: str) -> None:
        super().__init__(f"Negotiation {negotiation_id} is already closed.")
        self.negotiation_id = negotiation_id


class InvalidSlotError(PreconditionError):
    """Raised for malformed times or empty intervals."""


class AuthorizationError(CoordinationError):
    """Raised when the caller lacks the role an operation requires."""


class ConcurrencyError(CoordinationError):
    """Raised when optimistic-concurrency retries are exhausted."""
