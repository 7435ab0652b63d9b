"""Tests for the observable agent state and the streaming debounce."""

from __future__ import annotations

import asyncio
import threading

import pytest

from ally_agent.core.state import (
    AgentStateHolder,
    Error,
    ExecutingTool,
    Generating,
    Idle,
    StateThrottle,
    Thinking,
)
from ally_agent.errors import ErrorCategory


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestAgentStateHolder:
    def test_starts_idle(self):
        assert AgentStateHolder().value == Idle()

    def test_set_notifies_on_change_only(self):
        holder = AgentStateHolder()
        seen = []
        holder.subscribe(seen.append)
        assert holder.set(Thinking())
        assert not holder.set(Thinking())
        assert holder.set(Generating("hi"))
        assert seen == [Thinking(), Generating("hi")]

    def test_unsubscribe(self):
        holder = AgentStateHolder()
        seen = []
        unsubscribe = holder.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        holder.set(Thinking())
        assert seen == []

    def test_failing_observer_isolated(self):
        holder = AgentStateHolder()
        seen = []

        def broken(state):
            raise RuntimeError("observer bug")

        holder.subscribe(broken)
        holder.subscribe(seen.append)
        holder.set(ExecutingTool("search_memories"))
        assert seen == [ExecutingTool("search_memories", "")]

    @pytest.mark.asyncio
    async def test_watch(self):
        holder = AgentStateHolder()
        watcher = holder.watch()
        assert await watcher.__anext__() == Idle()
        holder.set(Thinking("hmm"))
        holder.set(Idle())
        assert await asyncio.wait_for(watcher.__anext__(), 1) == Thinking("hmm")
        assert await asyncio.wait_for(watcher.__anext__(), 1) == Idle()
        await watcher.aclose()

    @pytest.mark.asyncio
    async def test_watch_woken_by_set_from_another_thread(self):
        holder = AgentStateHolder()
        watcher = holder.watch()
        assert await watcher.__anext__() == Idle()
        worker = threading.Thread(target=holder.set, args=(Generating("hi"),))
        worker.start()
        worker.join()
        assert await asyncio.wait_for(watcher.__anext__(), 1) == Generating("hi")
        await watcher.aclose()

    def test_error_state_fields(self):
        err = Error("Network error.", retryable=True, category=ErrorCategory.NETWORK)
        assert err.partial is None
        assert err.suggested_action is None


class TestStateThrottle:
    def test_first_chunk_always_published(self):
        throttle = StateThrottle(interval=1.0, min_chars=100, clock=FakeClock())
        assert throttle.should_publish(1)

    def test_interval(self):
        clock = FakeClock()
        throttle = StateThrottle(interval=0.05, min_chars=100, clock=clock)
        throttle.should_publish(1)
        clock.now = 0.01
        assert not throttle.should_publish(1)
        clock.now = 0.06
        assert throttle.should_publish(1)

    def test_char_threshold(self):
        throttle = StateThrottle(interval=10.0, min_chars=10, clock=FakeClock())
        throttle.should_publish(1)
        assert not throttle.should_publish(5)
        assert throttle.should_publish(5)

    def test_force(self):
        throttle = StateThrottle(interval=10.0, min_chars=10, clock=FakeClock())
        throttle.should_publish(1)
        assert throttle.should_publish(1, force=True)

    def test_reset_makes_next_chunk_first(self):
        throttle = StateThrottle(interval=10.0, min_chars=10, clock=FakeClock())
        throttle.should_publish(1)
        throttle.reset()
        assert throttle.should_publish(1)
