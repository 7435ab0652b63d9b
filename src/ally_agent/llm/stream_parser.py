"""Wire parsing for OpenAI-compatible chat completions.

All raw JSON handling lives here: SSE frames become typed stream deltas,
non-streaming bodies become :class:`CompletionResponse` and error bodies
become :class:`ApiError`.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from ally_agent.errors import ApiError
from ally_agent.types import (
    Choice,
    CompletionResponse,
    ContentText,
    Done,
    Message,
    MessageRole,
    ModelInfo,
    ReasoningText,
    StreamDelta,
    StreamError,
    ToolCall,
    ToolCallArgsChunk,
    ToolCallEnd,
    ToolCallStart,
    Usage,
    UsageInfo,
)

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class _FrameError(ValueError):
    """A frame that is valid JSON but not a usable chunk."""


@dataclass
class _Slot:
    """Per-index bookkeeping for a tool call seen on the stream."""

    id: str | None = None
    name: str | None = None
    started: bool = False
    closed: bool = False


class StreamParser:
    """Turns SSE lines into :data:`StreamDelta` values.

    Feed raw lines with :meth:`feed_line`; call :meth:`finish` when the
    connection closes.  After ``[DONE]`` or an error frame the parser is
    ``finished`` and ignores further input.
    """

    def __init__(self) -> None:
        self._slots: dict[int, _Slot] = {}
        self._seen_content = False
        self._model: str | None = None
        self.finished = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed_line(self, line: str) -> list[StreamDelta]:
        """Process one line of the event stream."""
        if self.finished:
            return []
        data = self._extract_data(line)
        if data is None:
            return []
        if data == DONE_SENTINEL:
            return self._terminate()
        return self.feed_data(data)

    def feed_data(self, data: str) -> list[StreamDelta]:
        """Process the payload of one ``data:`` frame."""
        try:
            chunk = json.loads(data)
            if not isinstance(chunk, dict):
                raise _FrameError(f"expected an object, got {type(chunk).__name__}")
            return self._parse_chunk(chunk)
        except (ValueError, TypeError, AttributeError, KeyError) as exc:
            _logger.warning("Dropping malformed stream frame: %s (%r)", exc, data[:200])
            return [StreamError(
                message=f"Failed to parse stream frame: {exc}",
                code="parse_error",
                retryable=False,
            )]

    def finish(self) -> list[StreamDelta]:
        """Flush state when the connection ends without ``[DONE]``."""
        if self.finished:
            return []
        return self._terminate()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_data(line: str) -> str | None:
        line = line.rstrip("\r\n")
        if not line or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            # event:, id:, retry: and unknown fields carry nothing we need
            return None
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        data = data.strip()
        return data or None

    def _parse_chunk(self, chunk: dict[str, Any]) -> list[StreamDelta]:
        error = chunk.get("error")
        if error:
            api_error = error_from_payload(error, status_code=200)
            self.finished = True
            return [StreamError(
                message=api_error.message,
                code=api_error.code,
                retryable=api_error.is_retryable,
                status_code=api_error.status_code,
                type=api_error.type,
                category=api_error.category,
            )]

        # Shape checks come first; parser state only changes once they pass.
        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            raise _FrameError("'choices' is not a list")
        choice = choices[0] if choices else {}
        if not isinstance(choice, dict):
            raise _FrameError("choice is not an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise _FrameError("'delta' is not an object")
        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise _FrameError("'tool_calls' is not a list")

        out: list[StreamDelta] = []

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            out.append(Usage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ))

        model = chunk.get("model")
        if isinstance(model, str) and model and model != self._model:
            self._model = model
            out.insert(0, ModelInfo(name=model))

        content = delta.get("content")
        if isinstance(content, str) and content:
            out.append(ContentText(text=content, is_first=not self._seen_content))
            self._seen_content = True

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            out.append(ReasoningText(text=reasoning))

        for tc in tool_calls:
            out.extend(self._feed_tool_call(tc))

        if choice.get("finish_reason") == "tool_calls":
            out.extend(self._close_open_calls())

        return out

    def _feed_tool_call(self, tc: Any) -> list[StreamDelta]:
        try:
            index, call_id, name, fragment = _read_tool_call(tc)
        except (ValueError, TypeError) as exc:
            # Only this entry is lost; its siblings in the frame still count
            _logger.warning("Skipping malformed tool call entry: %s (%r)", exc, tc)
            return [StreamError(
                message=f"Failed to parse tool call entry: {exc}",
                code="parse_error",
                retryable=False,
            )]

        slot = self._slots.setdefault(index, _Slot())
        if slot.closed:
            _logger.debug("Ignoring tool call fragment for closed index %d", index)
            return []

        out: list[StreamDelta] = []
        if call_id:
            slot.id = call_id
        if name:
            slot.name = name
        if not slot.started and slot.id and slot.name:
            slot.started = True
            out.append(ToolCallStart(id=slot.id, name=slot.name, index=index))

        if fragment:
            out.append(ToolCallArgsChunk(id=slot.id, index=index, fragment=fragment))
        return out

    def _close_open_calls(self) -> list[StreamDelta]:
        out: list[StreamDelta] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            if slot.closed:
                continue
            slot.closed = True
            if not slot.name:
                _logger.warning("Discarding tool call at index %d without a name", index)
                continue
            if not slot.id:
                slot.id = f"call_{index}"
                _logger.debug("Synthesized id %s for unnamed tool call", slot.id)
            if not slot.started:
                slot.started = True
                out.append(ToolCallStart(id=slot.id, name=slot.name, index=index))
            out.append(ToolCallEnd(id=slot.id, index=index))
        return out

    def _terminate(self) -> list[StreamDelta]:
        out = self._close_open_calls()
        out.append(Done())
        self.finished = True
        return out


def _read_tool_call(tc: Any) -> tuple[int, str | None, str | None, str | None]:
    """Validate one streamed ``tool_calls`` entry: ``(index, id, name, arguments)``."""
    if not isinstance(tc, dict):
        raise _FrameError(f"tool call entry is not an object: {type(tc).__name__}")
    index = int(tc.get("index") or 0)
    func = tc.get("function") or {}
    if not isinstance(func, dict):
        raise _FrameError("'function' is not an object")
    arguments = func.get("arguments")
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    elif arguments is not None and not isinstance(arguments, str):
        raise _FrameError(f"'arguments' is not a string: {type(arguments).__name__}")
    call_id = tc.get("id")
    name = func.get("name")
    return (
        index,
        str(call_id) if call_id else None,
        str(name) if name else None,
        arguments,
    )


# ---------------------------------------------------------------------------
# Non-streaming bodies
# ---------------------------------------------------------------------------

def error_from_payload(
    error: Any,
    status_code: int,
    retry_after: float | None = None,
) -> ApiError:
    """Build an :class:`ApiError` from a provider ``error`` object."""
    if isinstance(error, dict):
        code = error.get("code")
        return ApiError(
            str(error.get("message") or "Unknown error"),
            status_code=status_code,
            type=error.get("type"),
            code=str(code) if code is not None else None,
            param=error.get("param"),
            retry_after=retry_after,
        )
    return ApiError(str(error), status_code=status_code, retry_after=retry_after)


def parse_error_body(
    status_code: int,
    body: str,
    retry_after: float | None = None,
) -> ApiError:
    """Parse an HTTP error response body; falls back to a generic message."""
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        return error_from_payload(data.get("error") or data, status_code, retry_after)
    return ApiError(
        f"Request failed with status {status_code}",
        status_code=status_code,
        retry_after=retry_after,
    )


def parse_completion_response(data: Any) -> CompletionResponse:
    """Parse a non-streaming completion body.

    Raises :class:`ApiError` with category ``parse`` when the shape is wrong.
    """
    try:
        if not isinstance(data, dict):
            raise _FrameError("response body is not an object")
        if data.get("error"):
            raise error_from_payload(data["error"], status_code=200)

        choices: list[Choice] = []
        for raw_choice in data.get("choices") or []:
            msg = raw_choice.get("message") or {}
            tool_calls = [
                _parse_tool_call(tc) for tc in msg.get("tool_calls") or []
            ]
            choices.append(Choice(
                index=int(raw_choice.get("index") or 0),
                message=Message(
                    role=MessageRole.from_value(msg.get("role") or "assistant"),
                    content=msg.get("content") or "",
                    tool_calls=tuple(tool_calls) or None,
                    reasoning=msg.get("reasoning_content") or msg.get("reasoning"),
                ),
                finish_reason=raw_choice.get("finish_reason"),
            ))

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            usage = UsageInfo(
                prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
                completion_tokens=int(raw_usage.get("completion_tokens") or 0),
                total_tokens=int(raw_usage.get("total_tokens") or 0),
            )

        return CompletionResponse(
            id=str(data.get("id") or ""),
            model=str(data.get("model") or ""),
            choices=choices,
            usage=usage,
            created=float(data.get("created") or time.time()),
        )
    except (ValueError, TypeError, AttributeError, KeyError) as exc:
        raise ApiError.parse(f"Malformed completion response: {exc}") from exc


def _parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    func = raw.get("function") or {}
    arguments = func.get("arguments")
    if isinstance(arguments, dict):
        raw_args = json.dumps(arguments)
        parsed = arguments
    else:
        raw_args = arguments or ""
        parsed = parse_arguments(raw_args)
    return ToolCall(
        id=str(raw["id"]),
        name=str(func["name"]),
        arguments=parsed,
        raw_arguments=raw_args,
    )


def parse_arguments(raw: str) -> dict[str, Any]:
    """Parse tool-call arguments; anything but a JSON object yields ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        _logger.warning("Unparseable tool arguments: %r", raw[:200])
        return {}
    if not isinstance(value, dict):
        _logger.warning("Tool arguments are not an object: %r", raw[:200])
        return {}
    return value


def parse_models_body(data: Any) -> list[dict[str, Any]]:
    """Normalise a models listing into ``{"id", "type", "context_length"}`` dicts.

    Understands the OpenAI ``{"data": [...]}`` shape and bare lists of
    ``{"model_name", "type"}`` entries.
    """
    entries = data.get("data") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ApiError.parse("Unexpected models response shape")
    models: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        model_id = entry.get("id") or entry.get("model_name")
        if not model_id:
            continue
        models.append({
            "id": str(model_id),
            "type": entry.get("type"),
            "context_length": entry.get("context_length")
            or (entry.get("metadata") or {}).get("context_length"),
        })
    return models
