"""Tests for the batch retry policy."""

from unittest.mock import AsyncMock, patch

import pytest

from planning_qa.core.exceptions import GenerationError, LLMError, QATimeoutError
from planning_qa.services.retry import RetryPolicy, is_transient_error


class TestTransientErrors:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (QATimeoutError("translation", 20.0), True),
            (LLMError("translation", "rate limited", status_code=429, retryable=True), True),
            (LLMError("translation", "bad request", status_code=400), False),
            (GenerationError("empty"), False),
            (ValueError("nope"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_transient_error(error) is expected


class TestRetryPolicy:
    """Tests for RetryPolicy backoff and execution."""

    def test_exponential_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_bound(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=20.0)
        for attempt in range(1, 5):
            assert 0 <= policy.delay_for(attempt) <= 2.0 * 2 ** (attempt - 1)

    def test_rejects_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_config(self, config):
        policy = RetryPolicy.from_config(config.model_copy(update={"batch_max_attempts": 5}))
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.0

    async def test_returns_first_success(self, no_wait_retry):
        fn = AsyncMock(return_value="ok")
        assert await no_wait_retry.run(fn) == "ok"
        assert fn.await_count == 1

    async def test_retries_transient_then_succeeds(self, no_wait_retry):
        fn = AsyncMock(side_effect=[QATimeoutError("translation", 1.0), "ok"])
        assert await no_wait_retry.run(fn) == "ok"
        assert fn.await_count == 2

    async def test_gives_up_after_max_attempts(self, no_wait_retry):
        fn = AsyncMock(side_effect=QATimeoutError("translation", 1.0))

        with pytest.raises(QATimeoutError):
            await no_wait_retry.run(fn)
        assert fn.await_count == 3

    async def test_permanent_error_not_retried(self, no_wait_retry):
        fn = AsyncMock(side_effect=LLMError("translation", "bad request", status_code=400))

        with pytest.raises(LLMError):
            await no_wait_retry.run(fn)
        assert fn.await_count == 1

    async def test_sleeps_between_attempts(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, jitter=False)
        fn = AsyncMock(
            side_effect=[QATimeoutError("x", 1.0), QATimeoutError("x", 1.0), "done"]
        )

        with patch("planning_qa.services.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await policy.run(fn) == "done"

        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]
