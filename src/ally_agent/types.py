"""Shared data types for the Ally completion engine."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from ally_agent.errors import ApiError, ErrorCategory


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class MessageRole(str, enum.Enum):
    """Chat roles understood by OpenAI-compatible endpoints."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    @classmethod
    def from_value(cls, value: str | None) -> MessageRole:
        for role in cls:
            if role.value == value:
                return role
        return cls.USER


@dataclass(frozen=True)
class ToolCall:
    """A closed tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.raw_arguments or json.dumps(self.arguments),
            },
        }


@dataclass(frozen=True)
class Message:
    """A single chat message.  Immutable once created."""

    role: MessageRole
    content: str = ""
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    reasoning: str | None = None
    images: tuple[str, ...] | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, images: list[str] | None = None) -> Message:
        return cls(
            role=MessageRole.USER,
            content=content,
            images=tuple(images) if images else None,
        )

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: list[ToolCall] | None = None,
    ) -> Message:
        return cls(
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role=MessageRole.TOOL, content=content, tool_call_id=tool_call_id)

    def to_wire(self) -> dict[str, Any]:
        """Serialise to the chat-completions ``messages[]`` entry format."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": self.content}]
            for url in self.images:
                parts.append({"type": "image_url", "image_url": {"url": url}})
            data["content"] = parts
        return data


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, number, boolean, array, object
    description: str = ""
    required: bool = True
    default: Any = None
    enum: list[str] | None = None
    items: dict[str, Any] | None = None  # schema of array elements

    def to_schema(self) -> dict[str, Any]:
        prop: dict[str, Any] = {"type": self.type}
        if self.description:
            prop["description"] = self.description
        if self.enum:
            prop["enum"] = list(self.enum)
        if self.items:
            prop["items"] = dict(self.items)
        if self.default is not None:
            prop["default"] = self.default
        return prop


@dataclass
class ToolResult:
    """Result of dispatching one tool call."""

    tool_name: str
    output: str
    success: bool
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


# ---------------------------------------------------------------------------
# Request / response types
# ---------------------------------------------------------------------------

@dataclass
class CompletionRequest:
    """A chat-completions request, independent of the transport."""

    model: str
    messages: list[Message]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = True
    tools: list[dict[str, Any]] | None = None
    tool_choice: Any = None
    stop: list[str] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    response_format: dict[str, Any] | None = None
    user: str | None = None

    def to_payload(self, extra_params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Build the JSON body.  Unset optional fields are omitted."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in self.messages],
        }
        if self.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        optional = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "stop": self.stop,
            "response_format": self.response_format,
            "user": self.user,
        }
        for key, value in optional.items():
            if value is not None:
                payload[key] = value
        if self.tools:
            payload["tools"] = self.tools
            if self.tool_choice is not None:
                payload["tool_choice"] = self.tool_choice
        if extra_params:
            payload.update(extra_params)
        return payload


@dataclass(frozen=True)
class UsageInfo:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Choice:
    index: int
    message: Message
    finish_reason: str | None = None


@dataclass
class CompletionResponse:
    """Parsed non-streaming completion."""

    id: str
    model: str
    choices: list[Choice]
    usage: UsageInfo | None = None
    created: float = field(default_factory=time.time)

    @property
    def content(self) -> str:
        return self.choices[0].message.content if self.choices else ""

    @property
    def tool_calls(self) -> list[ToolCall]:
        if not self.choices or not self.choices[0].message.tool_calls:
            return []
        return list(self.choices[0].message.tool_calls)


# ---------------------------------------------------------------------------
# Stream deltas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReasoningText:
    text: str


@dataclass(frozen=True)
class ContentText:
    text: str
    is_first: bool = False


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str
    index: int


@dataclass(frozen=True)
class ToolCallArgsChunk:
    """Argument fragment.  ``id`` is ``None`` until the provider sends it."""

    id: str | None
    index: int
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str
    index: int


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ModelInfo:
    name: str


@dataclass(frozen=True)
class StreamError:
    """A terminal failure (or, with ``code="parse_error"``, a skipped frame).

    ``status_code``, ``type`` and ``category`` carry what the transport knew
    about the failure so the consumer can classify it without guessing.
    """

    message: str
    code: str | None = None
    retryable: bool = False
    status_code: int | None = None
    type: str | None = None
    category: ErrorCategory | None = None


@dataclass(frozen=True)
class Done:
    pass


StreamDelta = Union[
    ReasoningText,
    ContentText,
    ToolCallStart,
    ToolCallArgsChunk,
    ToolCallEnd,
    Usage,
    ModelInfo,
    StreamError,
    Done,
]


# ---------------------------------------------------------------------------
# Agent output
# ---------------------------------------------------------------------------

@dataclass
class AgentResponse:
    """Merged outcome of one user message (one or two turns)."""

    content: str = ""
    reasoning: str | None = None
    tool_results: list[ToolResult] = field(default_factory=list)
    tokens_used: int = 0
    model: str = ""
    error: ApiError | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Lifecycle events emitted by the agent."""

    AGENT_STARTED = "agent.started"
    AGENT_DONE = "agent.done"
    AGENT_ERROR = "agent.error"
    AGENT_CANCELLED = "agent.cancelled"

    LLM_REQUEST = "llm.request"

    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"


@dataclass
class AgentEvent:
    """Event emitted by the agent via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
