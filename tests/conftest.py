"""Shared fixtures: scripted HTTP transport and SSE body builders."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from ally_agent.config import ProviderSpec
from ally_agent.llm.client import TransportClient
from ally_agent.llm.retry import RetryConfig


def sse(*frames: Any, done: bool = True) -> bytes:
    """Encode frames as an SSE body.  Dicts are JSON-encoded, strings sent raw."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def content_frame(text: str, model: str = "test-model") -> dict:
    return {"model": model, "choices": [{"index": 0, "delta": {"content": text}}]}


def usage_frame(prompt: int, completion: int) -> dict:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


def tool_frame(
    index: int,
    fragment: str | None = None,
    id: str | None = None,
    name: str | None = None,
    finish: str | None = None,
) -> dict:
    call: dict[str, Any] = {"index": index}
    if id:
        call["id"] = id
        call["type"] = "function"
    function: dict[str, Any] = {}
    if name:
        function["name"] = name
    if fragment is not None:
        function["arguments"] = fragment
    if function:
        call["function"] = function
    return {
        "choices": [{
            "index": 0,
            "delta": {"tool_calls": [call]},
            "finish_reason": finish,
        }],
    }


def finish_frame(reason: str) -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


class StallingStream(httpx.AsyncByteStream):
    """Yields *prefix*, then hangs until closed."""

    def __init__(self, prefix: bytes = b"") -> None:
        self.prefix = prefix
        self.closed = False

    async def __aiter__(self):
        if self.prefix:
            yield self.prefix
        await asyncio.sleep(3600)

    async def aclose(self) -> None:
        self.closed = True


class ScriptedTransport(httpx.AsyncBaseTransport):
    """Returns queued responses in order and records every request."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def add(self, response: httpx.Response | Exception) -> None:
        self.responses.append(response)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.content]


def stream_response(body: bytes, status_code: int = 200, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=body,
        headers={"content-type": "text/event-stream", **(headers or {})},
    )


@pytest.fixture
def provider() -> ProviderSpec:
    return ProviderSpec(
        id="test",
        name="Test",
        base_url="http://test/v1",
        api_key="test-key",
        headers={"X-Client": "ally-tests"},
        default_model="test-model",
    )


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter_factor=0.0)


@pytest.fixture
async def client(provider, transport, fast_retry):
    c = TransportClient(provider, retry=fast_retry, transport=transport, stream_idle_timeout=5.0)
    yield c
    await c.close()
