"""Bounded retry with exponential backoff for compare-and-swap saves."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from roomsync.core.errors import ConcurrencyError
from roomsync.data.db import VersionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 2.0
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the zero-based failed attempt."""
        return min(
            self.base_delay_seconds * (self.exponential_base ** attempt),
            self.max_delay_seconds,
        )

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        from roomsync.config import settings
        return cls(
            max_attempts=settings.SAVE_MAX_ATTEMPTS,
            base_delay_seconds=settings.SAVE_RETRY_BASE_DELAY_SECONDS,
        )


async def retry_on_conflict(
    fn: Callable[[], Coroutine[Any, Any, T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run *fn* (a reload-apply-save unit) until it saves without a version conflict.

    Only VersionConflictError is retried; anything else propagates at once.
    Raises ConcurrencyError once max_attempts conflicts have been seen.
    """
    last_exc: VersionConflictError | None = None
    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except VersionConflictError as exc:
            last_exc = exc
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "Version conflict on %s %s (attempt %d/%d), retrying in %.2fs",
                exc.kind, exc.doc_id, attempt + 1, policy.max_attempts, delay,
            )
            await sleep(delay)

    assert last_exc is not None
    raise ConcurrencyError(
        f"Could not save {last_exc.kind} {last_exc.doc_id} after "
        f"{policy.max_attempts} attempts; please try again."
    ) from last_exc
