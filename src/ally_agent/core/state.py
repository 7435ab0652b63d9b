"""Observable agent state.

One :class:`AgentStateHolder` per agent.  Observers either read ``value``,
register a callback with ``subscribe()`` or iterate ``watch()``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Union

from ally_agent.errors import ErrorCategory
from ally_agent.llm.client import call_in_loop
from ally_agent.types import AgentResponse

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Thinking:
    reasoning: str = ""


@dataclass(frozen=True)
class Generating:
    partial_content: str = ""


@dataclass(frozen=True)
class ExecutingTool:
    tool_name: str
    arguments: str = ""


@dataclass(frozen=True)
class Error:
    message: str
    retryable: bool = False
    category: ErrorCategory = ErrorCategory.UNKNOWN
    suggested_action: str | None = None
    partial: AgentResponse | None = None


@dataclass(frozen=True)
class Complete:
    response: AgentResponse


AgentState = Union[Idle, Thinking, Generating, ExecutingTool, Error, Complete]

StateCallback = Callable[[AgentState], None]


class AgentStateHolder:
    """Holds the current state and notifies observers on change.

    Setting a state equal to the current one is a no-op.  ``set()`` may be
    called from any thread; ``watch()`` iterators are woken on their own loop.
    """

    def __init__(self, initial: AgentState | None = None) -> None:
        self._value: AgentState = initial if initial is not None else Idle()
        self._lock = threading.Lock()
        self._callbacks: list[StateCallback] = []
        self._watchers: dict[asyncio.Queue[AgentState], asyncio.AbstractEventLoop] = {}

    @property
    def value(self) -> AgentState:
        with self._lock:
            return self._value

    def set(self, state: AgentState) -> bool:
        """Publish *state*.  Returns False when it equals the current state."""
        with self._lock:
            if state == self._value:
                return False
            self._value = state
            callbacks = list(self._callbacks)
            watchers = list(self._watchers.items())
        for queue, loop in watchers:
            call_in_loop(loop, queue.put_nowait, state)
        for callback in callbacks:
            try:
                callback(state)
            except Exception:
                _logger.exception("State observer %r failed", callback)
        return True

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Call *callback* on every change.  Returns an unsubscribe function."""
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    async def watch(self) -> AsyncIterator[AgentState]:
        """Yield the current state, then every subsequent change."""
        queue: asyncio.Queue[AgentState] = asyncio.Queue()
        with self._lock:
            self._watchers[queue] = asyncio.get_running_loop()
            current = self._value
        try:
            yield current
            while True:
                yield await queue.get()
        finally:
            with self._lock:
                self._watchers.pop(queue, None)


class StateThrottle:
    """Debounce for streaming text updates.

    A chunk is published when it is the first of the turn, when ``interval``
    seconds have passed since the last publish, or when ``min_chars``
    characters have accumulated unpublished.
    """

    def __init__(
        self,
        interval: float = 0.05,
        min_chars: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.min_chars = min_chars
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self._last_publish: float | None = None
        self._pending_chars = 0

    def should_publish(self, chunk_len: int, force: bool = False) -> bool:
        self._pending_chars += chunk_len
        now = self._clock()
        due = (
            force
            or self._last_publish is None
            or now - self._last_publish >= self.interval
            or self._pending_chars >= self.min_chars
        )
        if due:
            self.mark_published(now)
        return due

    def mark_published(self, now: float | None = None) -> None:
        self._last_publish = self._clock() if now is None else now
        self._pending_chars = 0
