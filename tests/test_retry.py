"""Tests for roomsync.core.retry — bounded retry on version conflicts."""

from unittest.mock import AsyncMock

import pytest

from roomsync.core.errors import ConcurrencyError
from roomsync.core.retry import RetryPolicy, retry_on_conflict
from roomsync.data.db import VersionConflictError


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=0.1, max_delay_seconds=0.3)
        assert [policy.delay_for(i) for i in range(4)] == pytest.approx([0.1, 0.2, 0.3, 0.3])

    def test_from_settings(self):
        policy = RetryPolicy.from_settings()
        assert policy.max_attempts == 3
        assert policy.base_delay_seconds == pytest.approx(0.1)


class TestRetryOnConflict:
    @pytest.mark.asyncio
    async def test_succeeds_after_conflicts(self):
        fn = AsyncMock(side_effect=[VersionConflictError("User", "u1", 0), "saved"])
        sleep = AsyncMock()

        result = await retry_on_conflict(fn, RetryPolicy(max_attempts=3), sleep=sleep)

        assert result == "saved"
        assert fn.await_count == 2
        sleep.assert_awaited_once_with(0.1)

    @pytest.mark.asyncio
    async def test_exhausted_raises_concurrency_error(self):
        fn = AsyncMock(side_effect=VersionConflictError("User", "u1", 0))
        sleep = AsyncMock()

        with pytest.raises(ConcurrencyError):
            await retry_on_conflict(fn, RetryPolicy(max_attempts=3), sleep=sleep)

        assert fn.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        fn = AsyncMock(side_effect=ValueError("boom"))
        with pytest.raises(ValueError):
            await retry_on_conflict(fn, RetryPolicy(), sleep=AsyncMock())
        assert fn.await_count == 1
