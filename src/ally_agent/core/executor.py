"""Executor: runs the tool calls of one turn through the registry.

Sequential by default; concurrent execution keeps results in call order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from ally_agent.events.bus import EventBus
from ally_agent.tools.registry import ToolRegistry
from ally_agent.types import EventType, ToolCall, ToolResult

_logger = logging.getLogger(__name__)

# Called just before a call is dispatched
StartCallback = Callable[[ToolCall], Any]


class Executor:
    """Dispatches tool calls and reports them on the event bus.

    Usage::

        executor = Executor(registry, event_bus)
        results = await executor.execute(tool_calls)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._event_bus = event_bus

    async def execute(
        self,
        tool_calls: list[ToolCall],
        concurrent: bool = False,
        on_start: StartCallback | None = None,
    ) -> list[ToolResult]:
        """Execute *tool_calls*; result ``i`` belongs to call ``i``.

        Parameters
        ----------
        tool_calls:
            Closed calls, in the order they ended on the stream.
        concurrent:
            If True, run all calls concurrently via asyncio.gather.
        on_start:
            Optional hook invoked as each call is dispatched.
        """
        if concurrent and len(tool_calls) > 1:
            return list(await asyncio.gather(
                *(self._run_one(tc, on_start) for tc in tool_calls)
            ))
        results: list[ToolResult] = []
        for tc in tool_calls:
            results.append(await self._run_one(tc, on_start))
        return results

    async def _run_one(
        self,
        tc: ToolCall,
        on_start: StartCallback | None,
    ) -> ToolResult:
        if on_start is not None:
            on_start(tc)
        await self._emit(EventType.TOOL_EXECUTING, {
            "tool": tc.name,
            "call_id": tc.id,
            "arguments": dict(tc.arguments),
        })

        result = await self._registry.execute(tc.name, tc.arguments, call_id=tc.id)

        if result.success:
            await self._emit(EventType.TOOL_EXECUTED, {
                "tool": tc.name,
                "call_id": tc.id,
                "output_length": len(result.output),
            })
        else:
            await self._emit(EventType.TOOL_ERROR, {
                "tool": tc.name,
                "call_id": tc.id,
                "error": result.output,
            })
        return result

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)
