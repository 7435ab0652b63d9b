"""Reassembles complete tool calls from streaming deltas."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ally_agent.llm.stream_parser import parse_arguments
from ally_agent.types import (
    StreamDelta,
    ToolCall,
    ToolCallArgsChunk,
    ToolCallEnd,
    ToolCallStart,
)

_logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)


class ToolCallAssembler:
    """Index-keyed accumulator for streamed tool calls.

    Fragments are kept per index whether or not the call id is known yet;
    a call is emitted once it has an id, a name and has been closed, either
    by :meth:`close` or by :meth:`finish`.  Arguments are parsed exactly once,
    when the call is emitted.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self._completed: list[ToolCall] = []

    def start(self, id: str, name: str, index: int) -> None:
        call = self._pending.setdefault(index, _PendingCall())
        call.id = id
        call.name = name

    def append(self, index: int, fragment: str, id: str | None = None) -> None:
        call = self._pending.setdefault(index, _PendingCall())
        if id and call.id is None:
            call.id = id
        call.fragments.append(fragment)

    def close(self, index: int, id: str | None = None) -> ToolCall | None:
        """Close the call at ``index``; returns it if it is complete."""
        call = self._pending.pop(index, None)
        if call is None:
            return None
        if id and call.id is None:
            call.id = id
        return self._emit(index, call)

    def feed(self, delta: StreamDelta) -> ToolCall | None:
        """Route one stream delta; returns a call when the delta completed one."""
        if isinstance(delta, ToolCallStart):
            self.start(delta.id, delta.name, delta.index)
        elif isinstance(delta, ToolCallArgsChunk):
            self.append(delta.index, delta.fragment, delta.id)
        elif isinstance(delta, ToolCallEnd):
            return self.close(delta.index, delta.id)
        return None

    def finish(self) -> list[ToolCall]:
        """Close every still-open call in index order."""
        flushed: list[ToolCall] = []
        for index in sorted(self._pending):
            call = self._emit(index, self._pending[index])
            if call is not None:
                flushed.append(call)
        self._pending.clear()
        return flushed

    @property
    def completed(self) -> list[ToolCall]:
        """Calls in the order they were closed."""
        return list(self._completed)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def _emit(self, index: int, call: _PendingCall) -> ToolCall | None:
        if not call.id or not call.name:
            _logger.warning(
                "Dropping incomplete tool call at index %d (id=%r, name=%r)",
                index, call.id, call.name,
            )
            return None
        raw = "".join(call.fragments)
        tool_call = ToolCall(
            id=call.id,
            name=call.name,
            arguments=parse_arguments(raw),
            raw_arguments=raw,
        )
        self._completed.append(tool_call)
        return tool_call
