"""Async OpenAI-compatible transport.

``complete()`` performs a bounded non-streaming request.  ``stream_complete()``
returns a :class:`DeltaStream`, a cancellable async iterator of typed deltas
fed by a producer task that owns the HTTP response.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from ally_agent.errors import ApiError, ErrorCategory
from ally_agent.llm.rate_limit import RateLimitStatus, RateLimitTracker, parse_reset
from ally_agent.llm.retry import RetryConfig, to_api_error, with_retry
from ally_agent.llm.stream_parser import (
    StreamParser,
    parse_completion_response,
    parse_error_body,
    parse_models_body,
)
from ally_agent.types import CompletionRequest, CompletionResponse, StreamDelta, StreamError

if TYPE_CHECKING:
    from ally_agent.config import ModelSpec, ProviderSpec, TimeoutSpec

_logger = logging.getLogger(__name__)

# Defaults used when no TimeoutSpec is supplied (seconds)
_CONNECT_TIMEOUT = 30.0
_READ_TIMEOUT = 120.0
_WRITE_TIMEOUT = 60.0

_END = object()


def call_in_loop(
    loop: asyncio.AbstractEventLoop | None,
    callback: Callable[..., Any],
    *args: Any,
) -> None:
    """Run *callback* now when already on *loop*, else schedule it there.

    asyncio queues and tasks are not thread-safe; this is how ``cancel()``
    and state publication reach them from a UI or worker thread.
    """
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if loop is None or running is loop:
        callback(*args)
    elif not loop.is_closed():
        loop.call_soon_threadsafe(callback, *args)


class _StreamInterrupted(Exception):
    """Failure after the first delta; must not be retried."""

    def __init__(self, error: ApiError) -> None:
        super().__init__(error.message)
        self.error = error


def _stream_error(error: ApiError, retryable: bool | None = None) -> StreamError:
    return StreamError(
        message=error.message,
        code=error.code,
        retryable=error.is_retryable if retryable is None else retryable,
        status_code=error.status_code,
        type=error.type,
        category=error.category,
    )


# ---------------------------------------------------------------------------
# DeltaStream
# ---------------------------------------------------------------------------

class DeltaStream:
    """Async iterator over :data:`StreamDelta` values.

    The producer starts on first iteration.  :meth:`cancel` may be called at
    any time, any number of times: it stops the producer (which closes the
    HTTP response) and ends iteration.  When no line arrives for
    ``idle_timeout`` seconds the stream ends with a retryable
    ``StreamError(code="stream_timeout")``.
    """

    def __init__(
        self,
        producer: Callable[[DeltaStream], Awaitable[None]],
        idle_timeout: float | None = None,
        on_close: Callable[[DeltaStream], None] | None = None,
    ) -> None:
        self._producer = producer
        self._idle_timeout = idle_timeout
        self._on_close = on_close
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._cancelled = False
        self._exhausted = False
        self._last_activity = time.monotonic()

    # -- consumer side --------------------------------------------------

    def __aiter__(self) -> DeltaStream:
        return self

    async def __anext__(self) -> StreamDelta:
        if self._exhausted or self._cancelled:
            raise StopAsyncIteration
        self._ensure_started()
        while True:
            try:
                item = await self._get()
            except asyncio.TimeoutError:
                idle = time.monotonic() - self._last_activity
                if idle < (self._idle_timeout or 0):
                    continue
                _logger.warning("Stream idle for %.1fs, giving up", idle)
                self._stop_producer()
                self._exhausted = True
                return StreamError(
                    message=f"Stream stalled: no data received for {idle:.0f}s",
                    code="stream_timeout",
                    retryable=True,
                    status_code=0,
                )
            break
        if item is _END or self._cancelled:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    async def _get(self) -> Any:
        if not self._idle_timeout:
            return await self._queue.get()
        remaining = self._idle_timeout - (time.monotonic() - self._last_activity)
        return await asyncio.wait_for(self._queue.get(), timeout=max(remaining, 0.001))

    def cancel(self) -> None:
        """Stop the stream.

        Idempotent, safe before iteration starts and callable from any thread.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        _logger.debug("Stream cancelled")
        call_in_loop(self._loop, self._finish_cancel)

    def _finish_cancel(self) -> None:
        self._stop_producer()
        self._queue.put_nowait(_END)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def aclose(self) -> None:
        self.cancel()
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def __aenter__(self) -> DeltaStream:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- producer side --------------------------------------------------

    def emit(self, delta: StreamDelta) -> None:
        if self._cancelled:
            return
        self._last_activity = time.monotonic()
        self._queue.put_nowait(delta)

    def touch(self) -> None:
        """Record activity that produced no delta (keep-alives, blank lines)."""
        self._last_activity = time.monotonic()

    def _ensure_started(self) -> None:
        if self._task is None:
            self._last_activity = time.monotonic()
            self._loop = asyncio.get_running_loop()
            self._task = self._loop.create_task(self._run())
            self._task.add_done_callback(self._producer_done)

    async def _run(self) -> None:
        try:
            await self._producer(self)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _logger.exception("Stream producer failed")
            self.emit(StreamError(message=str(exc) or type(exc).__name__, code="internal_error"))
        finally:
            self._queue.put_nowait(_END)

    def _producer_done(self, task: asyncio.Task[None]) -> None:
        if self._on_close is not None:
            self._on_close(self)

    def _stop_producer(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        elif task is None and self._on_close is not None:
            self._on_close(self)


# ---------------------------------------------------------------------------
# TransportClient
# ---------------------------------------------------------------------------

class TransportClient:
    """Client for one OpenAI-compatible provider.

    Parameters
    ----------
    provider:
        Endpoint, key and static headers.
    retry:
        Default retry policy for ``complete()`` and for opening streams.
    timeouts:
        Connect/read/write timeouts.  Streams never apply the read timeout.
    stream_idle_timeout:
        Inactivity limit for streams (``None`` disables the watchdog).
    fallback_models:
        Returned by ``fetch_models()`` when the endpoint is unusable.
    transport:
        Optional httpx transport, mainly for tests.
    """

    def __init__(
        self,
        provider: ProviderSpec,
        *,
        retry: RetryConfig | None = None,
        timeouts: TimeoutSpec | None = None,
        stream_idle_timeout: float | None = 120.0,
        fallback_models: list[ModelSpec] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.retry_config = retry or RetryConfig()
        self.stream_idle_timeout = stream_idle_timeout
        self._fallback_models = list(fallback_models or [])
        self._rate_limits = RateLimitTracker(clock=clock)
        self._lock = threading.Lock()
        self._streams: set[DeltaStream] = set()
        self._calls: set[asyncio.Task[Any]] = set()
        self._cancelled_calls: set[asyncio.Task[Any]] = set()

        connect = timeouts.connect if timeouts else _CONNECT_TIMEOUT
        read = timeouts.read if timeouts else _READ_TIMEOUT
        write = timeouts.write if timeouts else _WRITE_TIMEOUT

        base_url = provider.base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=self._base_headers(),
            timeout=httpx.Timeout(read, connect=connect, read=read, write=write),
            transport=transport,
        )
        self._stream_client = httpx.AsyncClient(
            base_url=base_url,
            headers=self._base_headers(),
            timeout=httpx.Timeout(None, connect=connect, read=None, write=write),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def default_model(self) -> str:
        return self.provider.default_model

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._rate_limits.status

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(
        self,
        request: CompletionRequest,
        retry: RetryConfig | None = None,
    ) -> CompletionResponse:
        """Send a non-streaming completion.  Raises :class:`ApiError`."""
        self._check_rate_limit()
        payload = replace(request, stream=False).to_payload(self.provider.extra_params)
        config = retry or self.retry_config

        async def attempt(n: int) -> CompletionResponse:
            resp = await self._client.post(
                self.provider.api_endpoint,
                json=payload,
                headers={"Accept": "application/json"},
            )
            self._rate_limits.update(resp.status_code, resp.headers)
            if resp.status_code >= 400:
                raise self._error_from_response(resp, resp.text)
            try:
                data = resp.json()
            except ValueError as exc:
                raise ApiError.parse(f"Invalid JSON in completion response: {exc}") from exc
            return parse_completion_response(data)

        task = asyncio.ensure_future(with_retry(attempt, config))
        with self._lock:
            self._calls.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            with self._lock:
                ours = task in self._cancelled_calls
            if not ours:
                raise
            raise ApiError(
                "Request cancelled", status_code=0, code="cancelled",
                category=ErrorCategory.UNKNOWN, retryable=False,
            ) from None
        finally:
            with self._lock:
                self._calls.discard(task)
                self._cancelled_calls.discard(task)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_complete(
        self,
        request: CompletionRequest,
        retry: RetryConfig | None = None,
    ) -> DeltaStream:
        """Open a streaming completion.  Failures arrive as ``StreamError`` deltas."""
        payload = replace(request, stream=True).to_payload(self.provider.extra_params)
        config = retry or self.retry_config

        async def produce(stream: DeltaStream) -> None:
            await self._produce(stream, payload, config)

        stream = DeltaStream(produce, self.stream_idle_timeout, on_close=self._forget_stream)
        with self._lock:
            self._streams.add(stream)
        return stream

    async def _produce(
        self,
        stream: DeltaStream,
        payload: dict[str, Any],
        config: RetryConfig,
    ) -> None:
        try:
            self._check_rate_limit()
        except ApiError as err:
            stream.emit(_stream_error(err, retryable=True))
            return

        async def attempt(n: int) -> None:
            produced = False
            async with self._stream_client.stream(
                "POST",
                self.provider.api_endpoint,
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as resp:
                self._rate_limits.update(resp.status_code, resp.headers)
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    raise self._error_from_response(resp, body)

                parser = StreamParser()
                try:
                    async for line in resp.aiter_lines():
                        stream.touch()
                        for delta in parser.feed_line(line):
                            produced = True
                            stream.emit(delta)
                        if parser.finished:
                            return
                except httpx.HTTPError as exc:
                    if produced:
                        raise _StreamInterrupted(to_api_error(exc)) from exc
                    raise
                for delta in parser.finish():
                    stream.emit(delta)

        try:
            await with_retry(attempt, config)
        except _StreamInterrupted as exc:
            _logger.warning("Stream interrupted: %s", exc.error.message)
            stream.emit(_stream_error(exc.error))
        except ApiError as err:
            _logger.warning("Stream failed: %s", err.message)
            stream.emit(_stream_error(err))

    def _forget_stream(self, stream: DeltaStream) -> None:
        with self._lock:
            self._streams.discard(stream)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        """True when the provider answers at all (404 counts as up)."""
        try:
            resp = await self._client.head("/")
        except httpx.HTTPError as exc:
            _logger.debug("Availability check failed: %s", exc)
            return False
        return resp.is_success or resp.status_code == 404

    async def fetch_models(self) -> list[ModelSpec]:
        """List text-generation models; falls back to the configured models."""
        from ally_agent.config import ModelSpec

        endpoint = self.provider.models_endpoint
        if not endpoint:
            return list(self._fallback_models)
        try:
            resp = await self._client.get(endpoint, headers={"Accept": "application/json"})
            if resp.status_code >= 400:
                raise self._error_from_response(resp, resp.text)
            entries = parse_models_body(resp.json())
        except (httpx.HTTPError, ValueError, ApiError) as exc:
            _logger.warning("Could not fetch models from %s: %s", endpoint, exc)
            return list(self._fallback_models)

        models = [
            ModelSpec(
                model_id=entry["id"],
                provider_id=self.provider.id,
                display_name=entry["id"].rsplit("/", 1)[-1],
                context_length=int(entry["context_length"] or 4096),
                supports_tool_calling=self.provider.supports_tool_calling,
            )
            for entry in entries
            if entry["type"] in (None, "text-generation")
        ]
        return models or list(self._fallback_models)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel_requests(self) -> None:
        """Cancel every in-flight request and stream.  Safe when idle and from any thread."""
        with self._lock:
            streams = list(self._streams)
            calls = [t for t in self._calls if not t.done()]
            self._cancelled_calls.update(calls)
        for stream in streams:
            stream.cancel()
        for task in calls:
            call_in_loop(task.get_loop(), task.cancel)
        if streams or calls:
            _logger.info("Cancelled %d stream(s) and %d request(s)", len(streams), len(calls))

    async def close(self) -> None:
        """Close underlying HTTP clients."""
        self.cancel_requests()
        await self._client.aclose()
        await self._stream_client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _base_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"
        headers.update(self.provider.headers)
        return headers

    def _check_rate_limit(self) -> None:
        delay = self._rate_limits.blocking_delay()
        if delay is None:
            return
        raise ApiError.rate_limited(
            f"Rate limit exceeded. Retry after {delay:.0f}s",
            retry_after=delay,
        )

    @staticmethod
    def _error_from_response(resp: httpx.Response, body: str) -> ApiError:
        retry_after = parse_reset(resp.headers.get("retry-after"))
        return parse_error_body(resp.status_code, body, retry_after)
