"""Tests for the retry policy: delays, classification and the retry driver."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock

import httpx
import pytest

from ally_agent.errors import ApiError, ErrorCategory
from ally_agent.llm.retry import (
    RetryConfig,
    base_delay,
    is_retryable,
    next_delay,
    to_api_error,
    with_retry,
)


class TestRetryConfig:
    def test_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_retries == 3
        assert cfg.initial_delay == 1.0
        assert cfg.max_delay == 30.0
        assert cfg.backoff_multiplier == 2.0

    def test_profiles(self):
        assert RetryConfig.aggressive().max_retries == 5
        assert RetryConfig.conservative().retry_on_network_error is False
        assert RetryConfig.none().max_retries == 0
        assert RetryConfig.from_profile("Aggressive") == RetryConfig.aggressive()

    def test_unknown_profile(self):
        with pytest.raises(ValueError, match="Unknown retry profile"):
            RetryConfig.from_profile("reckless")

    def test_rejects_negative_retries(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)

    def test_frozen(self):
        cfg = RetryConfig()
        with pytest.raises(AttributeError):
            cfg.max_retries = 10  # type: ignore[misc]


class TestDelays:
    def test_exponential_and_capped(self):
        cfg = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter_factor=0.0)
        assert [next_delay(i, cfg) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounds(self):
        cfg = RetryConfig(initial_delay=2.0, jitter_factor=0.5)
        rng = random.Random(7)
        for attempt in range(6):
            base = base_delay(attempt, cfg)
            delay = next_delay(attempt, cfg, rng)
            assert base <= delay <= base * 1.5

    def test_zero_delay_has_no_jitter(self):
        cfg = RetryConfig(initial_delay=0.0, jitter_factor=1.0)
        assert next_delay(3, cfg) == 0.0


class TestClassification:
    def test_server_error_retryable(self):
        assert is_retryable(ApiError("boom", status_code=503), 0, RetryConfig())

    def test_no_attempts_left(self):
        cfg = RetryConfig(max_retries=2)
        assert not is_retryable(ApiError("boom", status_code=503), 2, cfg)

    def test_auth_error_not_retryable(self):
        assert not is_retryable(ApiError("bad key", status_code=401), 0, RetryConfig())

    def test_rate_limit_flag_does_not_override_category(self):
        err = ApiError.rate_limited("slow down")
        assert err.is_retryable
        assert is_retryable(err, 0, RetryConfig())
        assert is_retryable(err, 0, RetryConfig(retry_on_rate_limit=False))

    def test_network_flag_does_not_override_category(self):
        err = ApiError.network("Connection refused")
        assert is_retryable(err, 0, RetryConfig())
        assert is_retryable(err, 0, RetryConfig.conservative())

    def test_server_flag_widens_retries(self):
        # A 5xx explicitly marked non-retryable is retried only under the flag
        err = ApiError("bad gateway", status_code=502, retryable=False)
        assert is_retryable(err, 0, RetryConfig())
        assert not is_retryable(err, 0, RetryConfig(retry_on_server_error=False))
        plain = ApiError("bad gateway", status_code=502)
        assert is_retryable(plain, 0, RetryConfig(retry_on_server_error=False))

    def test_flags_off_leave_non_retryable_errors_alone(self):
        cfg = RetryConfig(
            retry_on_rate_limit=False, retry_on_server_error=False, retry_on_network_error=False,
        )
        assert not is_retryable(ApiError("bad key", status_code=401), 0, cfg)
        assert not is_retryable(ApiError.parse("garbled"), 0, cfg)

    def test_transport_exceptions_become_network_errors(self):
        err = to_api_error(httpx.ConnectError("refused"))
        assert err.category is ErrorCategory.NETWORK
        assert to_api_error(httpx.ReadTimeout("slow")).is_network_error()


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        op = AsyncMock(return_value="ok")
        assert await with_retry(op, RetryConfig(), sleep=AsyncMock()) == "ok"
        op.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self):
        op = AsyncMock(side_effect=[ApiError("down", status_code=500), "ok"])
        sleep = AsyncMock()
        assert await with_retry(op, RetryConfig(jitter_factor=0.0), sleep=sleep) == "ok"
        assert op.await_count == 2
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_exhaustion_makes_n_plus_one_attempts(self):
        cfg = RetryConfig(max_retries=3, initial_delay=0.5, jitter_factor=0.2)
        op = AsyncMock(side_effect=ApiError("down", status_code=503))
        sleep = AsyncMock()
        observed: list[float] = []

        with pytest.raises(ApiError) as exc_info:
            await with_retry(
                op, cfg,
                on_retry=lambda attempt, err, delay: observed.append(delay),
                sleep=sleep, rng=random.Random(1),
            )

        assert op.await_count == cfg.max_retries + 1
        assert sleep.await_count == cfg.max_retries
        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == observed
        assert all(d >= cfg.initial_delay for d in delays)
        # Jitter never exceeds the gap to the next step
        assert all(b >= a for a, b in zip(delays, delays[1:]))

        err = exc_info.value
        assert err.category is ErrorCategory.RETRY_EXHAUSTED
        assert err.code == "retry_exhausted"
        assert isinstance(err.__cause__, ApiError)
        assert err.__cause__.status_code == 503

    @pytest.mark.asyncio
    async def test_non_retryable_raised_unchanged(self):
        original = ApiError("bad request", status_code=400)
        op = AsyncMock(side_effect=original)
        sleep = AsyncMock()
        with pytest.raises(ApiError) as exc_info:
            await with_retry(op, RetryConfig(), sleep=sleep)
        assert exc_info.value is original
        op.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_attempt_is_still_wrapped_as_exhausted(self):
        op = AsyncMock(side_effect=ApiError("down", status_code=500))
        with pytest.raises(ApiError) as exc_info:
            await with_retry(op, RetryConfig.none(), sleep=AsyncMock())
        err = exc_info.value
        assert err.category is ErrorCategory.RETRY_EXHAUSTED
        assert err.message == "Gave up after 1 attempt: down"
        assert err.__cause__.category is ErrorCategory.SERVER
        op.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_after_raises_delay(self):
        cfg = RetryConfig(max_retries=1, initial_delay=0.1, max_delay=30.0, jitter_factor=0.0)
        op = AsyncMock(side_effect=[ApiError.rate_limited("slow", retry_after=7.0), "ok"])
        sleep = AsyncMock()
        await with_retry(op, cfg, sleep=sleep)
        sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_httpx_errors_are_retried(self):
        op = AsyncMock(side_effect=[httpx.ConnectError("refused"), "ok"])
        assert await with_retry(op, RetryConfig(), sleep=AsyncMock()) == "ok"

    @pytest.mark.asyncio
    async def test_async_observer_awaited(self):
        seen = []

        async def observer(attempt, err, delay):
            seen.append(attempt)

        op = AsyncMock(side_effect=[ApiError("x", status_code=500)] * 2 + ["ok"])
        await with_retry(op, RetryConfig(), on_retry=observer, sleep=AsyncMock())
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self):
        op = AsyncMock(side_effect=asyncio.CancelledError())
        sleep = AsyncMock()
        with pytest.raises(asyncio.CancelledError):
            await with_retry(op, RetryConfig(), sleep=sleep)
        sleep.assert_not_awaited()
