"""Rate-limit bookkeeping from provider response headers."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Mapping

_logger = logging.getLogger(__name__)

# Cooldown applied when a 429 arrives without any reset information
DEFAULT_COOLDOWN = 60.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_reset(value: str | None) -> float | None:
    """Parse a reset header into seconds.

    Accepts bare numbers (seconds) and Go-style durations such as ``"1s"``,
    ``"6m0s"`` or ``"20ms"``.  Returns ``None`` for anything unparseable.
    """
    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        return None
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of the provider's rate-limit state."""

    is_limited: bool = False
    remaining_requests: int | None = None
    remaining_tokens: int | None = None
    reset_at: float | None = None  # epoch seconds
    retry_after: float | None = None  # seconds

    def can_make_request(self, now: float | None = None) -> bool:
        if not self.is_limited:
            return True
        now = time.time() if now is None else now
        return self.reset_at is not None and now >= self.reset_at

    def seconds_until_reset(self, now: float | None = None) -> float | None:
        if self.reset_at is None:
            return None
        now = time.time() if now is None else now
        return max(0.0, self.reset_at - now)


class RateLimitTracker:
    """Holds the latest :class:`RateLimitStatus`, replaced after every response."""

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._status = RateLimitStatus()

    @property
    def status(self) -> RateLimitStatus:
        with self._lock:
            return self._status

    def update(self, status_code: int, headers: Mapping[str, str]) -> RateLimitStatus:
        """Derive a new status from one response and store it."""
        remaining_requests = _parse_int(headers.get("x-ratelimit-remaining-requests"))
        remaining_tokens = _parse_int(headers.get("x-ratelimit-remaining-tokens"))
        reset_requests = parse_reset(headers.get("x-ratelimit-reset-requests"))
        reset_tokens = parse_reset(headers.get("x-ratelimit-reset-tokens"))
        retry_after = parse_reset(headers.get("retry-after"))

        is_limited = (
            status_code == 429
            or (remaining_requests is not None and remaining_requests <= 0)
            or (remaining_tokens is not None and remaining_tokens <= 0)
        )

        now = self._clock()
        resets = [r for r in (reset_requests, reset_tokens) if r is not None]
        reset_at: float | None = None
        if resets and max(resets) > 0:
            reset_at = now + max(resets)
        elif retry_after is not None:
            reset_at = now + retry_after
        elif is_limited:
            reset_at = now + DEFAULT_COOLDOWN

        status = RateLimitStatus(
            is_limited=is_limited,
            remaining_requests=remaining_requests,
            remaining_tokens=remaining_tokens,
            reset_at=reset_at,
            retry_after=retry_after,
        )
        if is_limited:
            _logger.warning(
                "Rate limited (status=%d, remaining_requests=%s, remaining_tokens=%s, reset_in=%.1fs)",
                status_code, remaining_requests, remaining_tokens,
                (reset_at - now) if reset_at else 0.0,
            )
        with self._lock:
            self._status = status
        return status

    def blocking_delay(self) -> float | None:
        """Seconds the caller must still wait, or ``None`` when a request may go out."""
        status = self.status
        now = self._clock()
        if status.can_make_request(now):
            return None
        remaining = status.seconds_until_reset(now)
        if remaining is not None:
            return remaining
        return status.retry_after if status.retry_after is not None else DEFAULT_COOLDOWN

    def reset(self) -> None:
        with self._lock:
            self._status = RateLimitStatus()
