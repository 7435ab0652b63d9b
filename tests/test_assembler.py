"""Tests for reassembling streamed tool calls."""

from __future__ import annotations

import json

from ally_agent.llm.assembler import ToolCallAssembler
from ally_agent.llm.stream_parser import StreamParser
from ally_agent.types import ToolCallArgsChunk, ToolCallEnd, ToolCallStart

from conftest import finish_frame, tool_frame


class TestToolCallAssembler:
    def test_fragments_concatenate_in_order(self):
        asm = ToolCallAssembler()
        args = {"query": "hiking trips", "limit": 3}
        raw = json.dumps(args)
        asm.feed(ToolCallStart("c1", "search_memories", 0))
        for i in range(0, len(raw), 4):
            asm.feed(ToolCallArgsChunk("c1", 0, raw[i:i + 4]))
        call = asm.feed(ToolCallEnd("c1", 0))
        assert call is not None
        assert call.arguments == args
        assert call.raw_arguments == raw
        assert asm.completed == [call]

    def test_interleaved_indices_kept_apart(self):
        asm = ToolCallAssembler()
        asm.start("a", "f", 0)
        asm.start("b", "g", 1)
        asm.append(0, '{"x":')
        asm.append(1, '{"y":')
        asm.append(1, "2}")
        asm.append(0, "1}")
        second = asm.close(1)
        first = asm.close(0)
        assert first.arguments == {"x": 1}
        assert second.arguments == {"y": 2}
        # completion order, not index order
        assert [c.id for c in asm.completed] == ["b", "a"]

    def test_fragments_before_start_are_kept(self):
        asm = ToolCallAssembler()
        asm.append(0, '{"k": ')
        asm.start("late", "f", 0)
        asm.append(0, '"v"}')
        assert asm.close(0).arguments == {"k": "v"}

    def test_invalid_json_gives_empty_arguments(self):
        asm = ToolCallAssembler()
        asm.start("c", "f", 0)
        asm.append(0, "{broken")
        call = asm.close(0)
        assert call.arguments == {}
        assert call.raw_arguments == "{broken"

    def test_no_fragments_gives_empty_arguments(self):
        asm = ToolCallAssembler()
        asm.start("c", "get_current_date_time", 0)
        assert asm.close(0).arguments == {}

    def test_finish_flushes_open_calls(self):
        asm = ToolCallAssembler()
        asm.start("b", "g", 1)
        asm.start("a", "f", 0)
        assert asm.has_pending
        flushed = asm.finish()
        assert [c.id for c in flushed] == ["a", "b"]
        assert not asm.has_pending

    def test_incomplete_call_dropped(self):
        asm = ToolCallAssembler()
        asm.append(0, "{}")
        assert asm.close(0) is None
        assert asm.completed == []

    def test_close_unknown_index(self):
        assert ToolCallAssembler().close(5) is None

    def test_end_to_end_with_parser(self):
        parser = StreamParser()
        asm = ToolCallAssembler()
        frames = [
            tool_frame(0, "", id="c1", name="search_memories"),
            tool_frame(1, "", id="c2", name="get_current_date_time"),
            tool_frame(0, '{"query":'),
            tool_frame(1, "{}"),
            tool_frame(0, ' "cats"}'),
            finish_frame("tool_calls"),
        ]
        for frame in frames:
            for delta in parser.feed_line("data: " + json.dumps(frame)):
                asm.feed(delta)
        calls = asm.completed
        assert [(c.id, c.name) for c in calls] == [
            ("c1", "search_memories"), ("c2", "get_current_date_time"),
        ]
        assert calls[0].arguments == {"query": "cats"}
        assert calls[1].arguments == {}

    def test_call_survives_malformed_sibling_entry(self):
        parser = StreamParser()
        asm = ToolCallAssembler()
        frames = [
            {"choices": [{"index": 0, "delta": {"tool_calls": [
                {"index": 0, "id": "c1", "function": {"name": "search_memories"}},
                "junk",
            ]}}]},
            tool_frame(0, '{"query": "cats"}'),
        ]
        for frame in frames:
            for delta in parser.feed_line("data: " + json.dumps(frame)):
                asm.feed(delta)
        for delta in parser.feed_line("data: [DONE]"):
            asm.feed(delta)
        [call] = asm.completed
        assert (call.id, call.name) == ("c1", "search_memories")
        assert call.arguments == {"query": "cats"}
