"""Tests for the event bus and the tool executor."""

from __future__ import annotations

import asyncio

import pytest

from ally_agent.core.executor import Executor
from ally_agent.events.bus import EventBus
from ally_agent.tools.registry import ToolRegistry
from ally_agent.types import AgentEvent, EventType, ToolCall


class TestEventBus:
    @pytest.mark.asyncio
    async def test_typed_and_wildcard_handlers(self):
        bus = EventBus()
        typed, everything = [], []
        bus.subscribe(EventType.AGENT_DONE, typed.append)
        bus.subscribe("*", everything.append)

        await bus.publish(EventType.AGENT_STARTED, model="m")
        await bus.publish(EventType.AGENT_DONE, tokens_used=3)

        assert [e.type for e in typed] == [EventType.AGENT_DONE]
        assert [e.type for e in everything] == [EventType.AGENT_STARTED, EventType.AGENT_DONE]
        assert everything[0].data == {"model": "m"}

    @pytest.mark.asyncio
    async def test_async_handler(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.type)

        bus.subscribe(EventType.LLM_REQUEST, handler)
        await bus.emit(AgentEvent(type=EventType.LLM_REQUEST))
        assert seen == [EventType.LLM_REQUEST]

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("nope")

        bus.subscribe(EventType.AGENT_ERROR, broken)
        bus.subscribe(EventType.AGENT_ERROR, seen.append)
        await bus.publish(EventType.AGENT_ERROR, message="x")
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(EventType.AGENT_DONE, seen.append)
        unsubscribe()
        await bus.publish(EventType.AGENT_DONE)
        assert seen == []

    @pytest.mark.asyncio
    async def test_history_bounded_and_filtered(self):
        bus = EventBus(max_history=3)
        for _ in range(4):
            await bus.publish(EventType.LLM_REQUEST)
        await bus.publish(EventType.AGENT_DONE)
        assert len(bus.history()) == 3
        assert len(bus.history(EventType.AGENT_DONE)) == 1
        bus.clear()
        assert bus.history() == []


class TestExecutor:
    @staticmethod
    def registry(log: list) -> ToolRegistry:
        async def slow(delay: float = 0.0, tag: str = "") -> str:
            await asyncio.sleep(delay)
            log.append(tag)
            return tag

        reg = ToolRegistry()
        reg.register_function("slow", "Sleeps then echoes", slow)
        return reg

    @pytest.mark.asyncio
    async def test_sequential_in_order(self):
        log: list = []
        bus = EventBus()
        calls = [
            ToolCall("a", "slow", {"delay": 0.02, "tag": "first"}),
            ToolCall("b", "slow", {"delay": 0.0, "tag": "second"}),
        ]
        started = []
        results = await Executor(self.registry(log), bus).execute(calls, on_start=started.append)
        assert log == ["first", "second"]
        assert [r.call_id for r in results] == ["a", "b"]
        assert started == calls
        assert [e.type for e in bus.history()] == [
            EventType.TOOL_EXECUTING, EventType.TOOL_EXECUTED,
            EventType.TOOL_EXECUTING, EventType.TOOL_EXECUTED,
        ]

    @pytest.mark.asyncio
    async def test_concurrent_keeps_call_order(self):
        log: list = []
        calls = [
            ToolCall("a", "slow", {"delay": 0.05, "tag": "first"}),
            ToolCall("b", "slow", {"delay": 0.0, "tag": "second"}),
        ]
        results = await Executor(self.registry(log)).execute(calls, concurrent=True)
        assert log == ["second", "first"]
        assert [r.output for r in results] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failure_emits_tool_error(self):
        bus = EventBus()
        results = await Executor(ToolRegistry(), bus).execute([ToolCall("x", "ghost")])
        assert not results[0].success
        [event] = bus.history(EventType.TOOL_ERROR)
        assert event.data["call_id"] == "x"
