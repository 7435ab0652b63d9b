"""AllyAgent: drives one user message through one or two completion turns.

    user message → stream (turn 1) → tool calls? → execute → stream (turn 2)

Turn 1 may request tools.  When it does, the results are appended to the
conversation and a continuation turn runs with tools disabled.  Progress is
published on the agent's :class:`AgentStateHolder`; lifecycle events go to
the :class:`EventBus`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from ally_agent.config import AgentSettings, ModelSpec
from ally_agent.core.executor import Executor
from ally_agent.core.state import (
    AgentState,
    AgentStateHolder,
    Complete,
    Error,
    ExecutingTool,
    Generating,
    Idle,
    StateThrottle,
    Thinking,
)
from ally_agent.errors import AgentBusyError, ApiError, ErrorCategory
from ally_agent.events.bus import EventBus
from ally_agent.llm.assembler import ToolCallAssembler
from ally_agent.llm.client import DeltaStream, TransportClient, call_in_loop
from ally_agent.tools.registry import ToolRegistry
from ally_agent.types import (
    AgentResponse,
    CompletionRequest,
    ContentText,
    Done,
    EventType,
    Message,
    ModelInfo,
    ReasoningText,
    StreamDelta,
    StreamError,
    ToolCall,
    ToolCallArgsChunk,
    ToolCallEnd,
    ToolCallStart,
    ToolResult,
    Usage,
)

_logger = logging.getLogger(__name__)

MISSING_RESULT = "Tool execution failed"

ChunkCallback = Callable[[StreamDelta], Any]


@dataclass
class _TurnResult:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens: int = 0
    model: str = ""
    error: ApiError | None = None
    cancelled: bool = False


@dataclass
class _Exchange:
    """Accumulated outcome of the whole exchange, readable after cancellation."""

    model: str
    first: _TurnResult | None = None
    second: _TurnResult | None = None
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def content(self) -> str:
        if self.second is not None and self.second.content:
            return self.second.content
        return self.first.content if self.first is not None else ""

    def response(self, error: ApiError | None = None, cancelled: bool = False) -> AgentResponse:
        turns = [t for t in (self.first, self.second) if t is not None]
        reasoning = self.first.reasoning if self.first is not None else ""
        return AgentResponse(
            content=self.content,
            reasoning=reasoning or None,
            tool_results=list(self.tool_results),
            tokens_used=sum(t.tokens for t in turns),
            model=next((t.model for t in turns if t.model), self.model),
            error=error,
            cancelled=cancelled,
        )


def _error_from_stream(delta: StreamError) -> ApiError:
    status_code = delta.status_code
    if status_code is None:
        status_code = {"stream_timeout": 0, "rate_limit_exceeded": 429}.get(delta.code or "", 500)
    category = delta.category
    if category is None and delta.code == "retry_exhausted":
        category = ErrorCategory.RETRY_EXHAUSTED
    return ApiError(
        delta.message,
        status_code=status_code,
        type=delta.type,
        code=delta.code,
        category=category,
        retryable=delta.retryable,
    )


class AllyAgent:
    """Streaming completion orchestrator.

    Parameters
    ----------
    client:
        Transport used for both turns.
    registry:
        Tools offered to the model on the first turn.
    event_bus:
        Receives lifecycle events (optional).
    settings:
        Debounce and tool-execution settings.
    model:
        Default model id; falls back to the client's default.
    models:
        Known model capabilities.  A model listed here without tool calling
        is never offered tools; its sampling settings apply to both turns.
        Unlisted models get tools and provider-default sampling.
    clock:
        Monotonic clock used by the state debounce.
    """

    def __init__(
        self,
        client: TransportClient,
        registry: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
        settings: AgentSettings | None = None,
        model: str | None = None,
        models: list[ModelSpec] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._registry = registry or ToolRegistry()
        self._event_bus = event_bus or EventBus()
        self._settings = settings or AgentSettings()
        self._model = model
        self._models = {spec.model_id: spec for spec in models or []}
        self._executor = Executor(self._registry, self._event_bus)
        self._throttle = StateThrottle(
            self._settings.debounce_interval, self._settings.debounce_chars, clock,
        )
        self.state = AgentStateHolder()

        self._lock = threading.Lock()
        self._active = False
        self._generation = 0
        self._task: asyncio.Task[AgentResponse] | None = None
        self._stream: DeltaStream | None = None
        self._messages: list[Message] = []
        self._pending: AgentState | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._active

    @property
    def messages(self) -> list[Message]:
        """The conversation of the latest exchange."""
        return list(self._messages)

    async def process_message(
        self,
        text: str,
        model: str | None = None,
        system_prompt: str | None = None,
        history: list[Message] | None = None,
        on_chunk: ChunkCallback | None = None,
        images: list[str] | None = None,
        use_tools: bool = True,
    ) -> AgentResponse:
        """Run one exchange and return the merged response.

        Errors are reported through ``AgentResponse.error`` and the ``Error``
        state rather than raised.  Raises :class:`AgentBusyError` when another
        exchange is still running on this agent.
        """
        with self._lock:
            if self._active:
                raise AgentBusyError("A response is already being generated")
            self._active = True
            generation = self._generation

        exchange = _Exchange(model=model or self._model or self._client.default_model)
        task = asyncio.ensure_future(self._run(
            exchange, generation, text, system_prompt, history, on_chunk, images, use_tools,
        ))
        with self._lock:
            self._task = task
        try:
            response = await task
        except asyncio.CancelledError:
            if not self._is_stale(generation):
                # The caller itself was cancelled
                self.cancel()
                raise
            response = exchange.response(cancelled=True)
        finally:
            with self._lock:
                self._active = False
                self._task = None

        if response.cancelled:
            _logger.info("Generation cancelled")
            await self._emit(EventType.AGENT_CANCELLED, {
                "content_length": len(response.content),
            })
        return response

    def cancel(self) -> None:
        """Abort this agent's running exchange and return to ``Idle``.

        Idempotent, safe when idle and callable from any thread.  Only the
        exchange's own stream and task are touched; other users of the shared
        client are unaffected.  No state other than ``Idle`` is published by
        the aborted exchange afterwards.
        """
        with self._lock:
            self._generation += 1
            stream = self._stream
            task = self._task
            self._stream = None
            self._pending = None
        if stream is not None:
            stream.cancel()
        if task is not None and not task.done():
            call_in_loop(task.get_loop(), task.cancel)
        self.state.set(Idle())

    def reset(self) -> None:
        """Cancel, return to ``Idle`` and clear the retained conversation."""
        self.cancel()
        self._messages = []

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def _run(
        self,
        exchange: _Exchange,
        generation: int,
        text: str,
        system_prompt: str | None,
        history: list[Message] | None,
        on_chunk: ChunkCallback | None,
        images: list[str] | None,
        use_tools: bool,
    ) -> AgentResponse:
        messages: list[Message] = []
        if system_prompt:
            messages.append(Message.system(system_prompt))
        messages.extend(history or [])
        messages.append(Message.user(text, images))
        self._messages = messages

        spec = self._models.get(exchange.model)
        tools = None
        if use_tools and len(self._registry):
            if spec is None or spec.supports_tool_calling:
                tools = self._registry.list_definitions()
            else:
                _logger.debug("Model %s does not support tool calling", exchange.model)

        await self._emit(EventType.AGENT_STARTED, {
            "model": exchange.model,
            "message_length": len(text),
            "tools": len(tools or []),
        })
        self._publish(Thinking(), generation)

        # Turn 1
        exchange.first = await self._stream_turn(
            self._request(exchange.model, messages, spec, tools),
            generation, on_chunk, allow_tools=True,
        )
        first = exchange.first
        if first.cancelled:
            return self._abandon(exchange, generation)
        if first.error is not None:
            return await self._fail(exchange, first.error, generation, partial=False)

        if not first.tool_calls:
            messages.append(Message.assistant(first.content))
            return await self._complete(exchange, generation)

        # Tools
        calls = first.tool_calls
        messages.append(Message.assistant(first.content, calls))
        results = await self._executor.execute(
            calls,
            concurrent=self._settings.parallel_tool_calls,
            on_start=lambda tc: self._publish(
                ExecutingTool(tc.name, tc.raw_arguments), generation,
            ),
        )
        exchange.tool_results = results
        by_id = {r.call_id: r for r in results}
        for tc in calls:
            result = by_id.get(tc.id)
            messages.append(Message.tool(tc.id, result.output if result else MISSING_RESULT))
        if self._is_stale(generation):
            return exchange.response(cancelled=True)

        # Turn 2, tools disabled
        self._throttle.reset()
        exchange.second = await self._stream_turn(
            self._request(exchange.model, messages, spec, tools=None),
            generation, on_chunk, allow_tools=False,
        )
        second = exchange.second
        if second.cancelled:
            return self._abandon(exchange, generation)
        if second.error is not None:
            return await self._fail(exchange, second.error, generation, partial=True)

        messages.append(Message.assistant(exchange.content))
        return await self._complete(exchange, generation)

    async def _stream_turn(
        self,
        request: CompletionRequest,
        generation: int,
        on_chunk: ChunkCallback | None,
        allow_tools: bool,
    ) -> _TurnResult:
        result = _TurnResult(model=request.model)
        assembler = ToolCallAssembler()
        # index -> (name, raw arguments so far), for ExecutingTool progress
        progress: dict[int, tuple[str, str]] = {}

        await self._emit(EventType.LLM_REQUEST, {
            "model": request.model,
            "messages": len(request.messages),
            "tools": bool(request.tools),
        })
        self._throttle.reset()

        stream = self._client.stream_complete(request)
        with self._lock:
            if self._generation != generation:
                stream.cancel()
                result.cancelled = True
                return result
            self._stream = stream

        saw_done = False
        try:
            async for delta in stream:
                if self._is_stale(generation):
                    break
                await self._forward(on_chunk, delta)

                if isinstance(delta, ContentText):
                    result.content += delta.text
                    self._progress(Generating(result.content), len(delta.text), generation)
                elif isinstance(delta, ReasoningText):
                    if not allow_tools:
                        continue
                    result.reasoning += delta.text
                    if isinstance(self.state.value, (Idle, Thinking)):
                        self._progress(Thinking(result.reasoning), len(delta.text), generation)
                elif isinstance(delta, ToolCallStart):
                    if not allow_tools:
                        continue
                    assembler.feed(delta)
                    progress[delta.index] = (delta.name, "")
                    self._publish(ExecutingTool(delta.name, ""), generation)
                elif isinstance(delta, ToolCallArgsChunk):
                    if not allow_tools:
                        continue
                    assembler.feed(delta)
                    if delta.index in progress:
                        name, raw = progress[delta.index]
                        raw += delta.fragment
                        progress[delta.index] = (name, raw)
                        self._publish(ExecutingTool(name, raw), generation)
                elif isinstance(delta, ToolCallEnd):
                    if not allow_tools:
                        continue
                    assembler.feed(delta)
                elif isinstance(delta, Usage):
                    result.tokens = delta.total_tokens
                elif isinstance(delta, ModelInfo):
                    result.model = delta.name
                elif isinstance(delta, StreamError):
                    if delta.code == "parse_error":
                        _logger.warning("Skipping malformed frame: %s", delta.message)
                        continue
                    result.error = _error_from_stream(delta)
                    break
                elif isinstance(delta, Done):
                    saw_done = True
                    break
            # Iteration ends without Done only when the stream was cut short
            interrupted = stream.cancelled and not saw_done
        finally:
            stream.cancel()
            with self._lock:
                if self._stream is stream:
                    self._stream = None

        if self._is_stale(generation):
            result.cancelled = True
            return result
        if result.error is None and not saw_done:
            if interrupted:
                _logger.info("Stream cancelled before completion")
                result.cancelled = True
                return result
            result.error = ApiError(
                "Stream ended before the response was complete",
                status_code=0, code="stream_incomplete", retryable=True,
            )
            return result

        self._flush_pending(generation)
        if result.error is None and allow_tools:
            if assembler.has_pending:
                _logger.debug("Closing tool calls left open at end of stream")
            assembler.finish()
            result.tool_calls = assembler.completed
        return result

    def _request(
        self,
        model: str,
        messages: list[Message],
        spec: ModelSpec | None,
        tools: list[dict[str, Any]] | None,
    ) -> CompletionRequest:
        request = CompletionRequest(
            model=model,
            messages=list(messages),
            max_tokens=self._settings.max_tokens,
            tools=tools,
            tool_choice="auto" if tools else None,
        )
        if spec is None:
            return request
        request.temperature = spec.temperature
        request.top_p = spec.top_p
        request.stop = list(spec.stop) if spec.stop else None
        if spec.max_output_tokens:
            request.max_tokens = spec.max_output_tokens
        return request

    def _abandon(self, exchange: _Exchange, generation: int) -> AgentResponse:
        """End a cancelled exchange in ``Idle``; never ``Complete``."""
        self._publish(Idle(), generation)
        return exchange.response(cancelled=True)

    async def _complete(self, exchange: _Exchange, generation: int) -> AgentResponse:
        response = exchange.response()
        if self._is_stale(generation):
            return exchange.response(cancelled=True)
        self._publish(Complete(response), generation)
        _logger.info(
            "Response complete: %d chars, %d tool call(s), %d tokens",
            len(response.content), len(response.tool_results), response.tokens_used,
        )
        await self._emit(EventType.AGENT_DONE, {
            "content_length": len(response.content),
            "tool_calls": len(response.tool_results),
            "tokens_used": response.tokens_used,
        })
        return response

    async def _fail(
        self,
        exchange: _Exchange,
        error: ApiError,
        generation: int,
        partial: bool,
    ) -> AgentResponse:
        response = exchange.response(error=error)
        _logger.warning("Generation failed (%s): %s", error.category.value, error.message)
        self._publish(Error(
            message=error.user_message,
            retryable=error.is_retryable,
            category=error.category,
            suggested_action=error.suggested_action,
            partial=response if partial else None,
        ), generation)
        await self._emit(EventType.AGENT_ERROR, {
            "message": error.message,
            "category": error.category.value,
            "retryable": error.is_retryable,
        })
        return response

    # ------------------------------------------------------------------
    # State publication
    # ------------------------------------------------------------------

    def _is_stale(self, generation: int) -> bool:
        with self._lock:
            return self._generation != generation

    def _publish(self, state: AgentState, generation: int) -> None:
        """Publish immediately, unless the exchange has been cancelled."""
        with self._lock:
            if self._generation != generation:
                return
            self._pending = None
        self._throttle.mark_published()
        self.state.set(state)

    def _progress(self, state: AgentState, chunk_len: int, generation: int) -> None:
        """Publish a streaming text update subject to the debounce."""
        force = type(self.state.value) is not type(state)
        if self._throttle.should_publish(chunk_len, force=force):
            self._publish(state, generation)
        else:
            with self._lock:
                self._pending = state

    def _flush_pending(self, generation: int) -> None:
        with self._lock:
            pending = self._pending
        if pending is not None:
            self._publish(pending, generation)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _forward(self, on_chunk: ChunkCallback | None, delta: StreamDelta) -> None:
        if on_chunk is None:
            return
        try:
            result = on_chunk(delta)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception("on_chunk callback failed")

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.publish(event_type, **data)
