"""Retry policy: exponential backoff with jitter and retry classification."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from ally_agent.errors import ApiError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Observer invoked before each backoff sleep: (attempt, error, delay_seconds)
RetryObserver = Callable[[int, ApiError, float], Any]


@dataclass(frozen=True)
class RetryConfig:
    """Immutable retry settings.

    ``max_retries`` counts retries, so an operation runs at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    retry_on_rate_limit: bool = True
    retry_on_server_error: bool = True
    retry_on_network_error: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("RetryConfig.max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("RetryConfig delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("RetryConfig.backoff_multiplier must be >= 1")
        if self.jitter_factor < 0:
            raise ValueError("RetryConfig.jitter_factor must be >= 0")

    # Profiles ----------------------------------------------------------

    @classmethod
    def default(cls) -> RetryConfig:
        return cls()

    @classmethod
    def aggressive(cls) -> RetryConfig:
        return cls(max_retries=5, initial_delay=0.5, max_delay=10.0, jitter_factor=0.2)

    @classmethod
    def conservative(cls) -> RetryConfig:
        return cls(
            max_retries=2,
            initial_delay=2.0,
            max_delay=60.0,
            retry_on_network_error=False,
        )

    @classmethod
    def none(cls) -> RetryConfig:
        return cls(max_retries=0)

    @classmethod
    def from_profile(cls, name: str) -> RetryConfig:
        profiles = {
            "default": cls.default,
            "aggressive": cls.aggressive,
            "conservative": cls.conservative,
            "none": cls.none,
        }
        try:
            return profiles[name.lower()]()
        except KeyError:
            raise ValueError(
                f"Unknown retry profile {name!r}; expected one of {sorted(profiles)}"
            ) from None


def base_delay(attempt: int, config: RetryConfig) -> float:
    """Un-jittered delay before retry number ``attempt + 1`` (attempt is 0-based)."""
    delay = config.initial_delay * (config.backoff_multiplier ** attempt)
    return min(delay, config.max_delay)


def next_delay(
    attempt: int,
    config: RetryConfig,
    rng: random.Random | None = None,
) -> float:
    """Backoff delay for ``attempt`` plus uniform jitter in ``[0, delay * jitter_factor]``."""
    delay = base_delay(attempt, config)
    if delay <= 0 or config.jitter_factor <= 0:
        return delay
    uniform = (rng or random).uniform
    return delay + uniform(0.0, delay * config.jitter_factor)


def retry_allowed(error: ApiError, config: RetryConfig) -> bool:
    """Whether ``error`` belongs to a class of failures ``config`` retries.

    A flag can only widen what is retried: an error whose category is
    retryable stays retryable even when its class flag is off.
    """
    if config.retry_on_rate_limit and error.is_rate_limit_error():
        return True
    if config.retry_on_server_error and error.status_code >= 500:
        return True
    if config.retry_on_network_error and error.is_network_error():
        return True
    return error.is_retryable


def is_retryable(error: ApiError, attempt: int, config: RetryConfig) -> bool:
    """Decide whether a failed attempt (0-based) may be retried."""
    if attempt >= config.max_retries:
        return False
    return retry_allowed(error, config)


def to_api_error(exc: BaseException) -> ApiError:
    """Normalise transport exceptions into :class:`ApiError`."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ApiError.network(f"Request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return ApiError.network(f"Connection failed: {exc}")
    return ApiError(f"{type(exc).__name__}: {exc}", status_code=500)


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    config: RetryConfig | None = None,
    on_retry: RetryObserver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or retries are exhausted.

    Non-retryable failures propagate immediately.  When every allowed attempt
    fails with a retryable error the last error is raised wrapped as a
    ``retry_exhausted`` :class:`ApiError`.
    """
    config = config or RetryConfig()
    last_error: ApiError | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await operation(attempt)
        except asyncio.CancelledError:
            raise
        except (ApiError, httpx.HTTPError) as exc:
            last_error = to_api_error(exc)

        if not retry_allowed(last_error, config):
            raise last_error
        if attempt >= config.max_retries:
            break

        delay = next_delay(attempt, config, rng)
        if last_error.is_rate_limit_error() and last_error.retry_after:
            delay = max(delay, min(last_error.retry_after, config.max_delay))
        _logger.warning(
            "Attempt %d/%d failed (%s), retrying in %.2fs",
            attempt + 1, config.max_retries + 1, last_error.message, delay,
        )
        if on_retry is not None:
            result = on_retry(attempt, last_error, delay)
            if inspect.isawaitable(result):
                await result
        await sleep(delay)

    assert last_error is not None
    raise ApiError.exhausted(last_error, config.max_retries + 1)
