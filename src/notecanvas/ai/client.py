"""Stream transports for OpenAI-compatible chat endpoints.

A transport opens one remote call and hands back a :class:`StreamHandle`
that yields raw frames, or resolves a whole :class:`FinalResult` in one go
for the non-streaming path. Either way the caller ends up with the same
``{response, tool_calls, finish_reason}`` shape.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Protocol, Union

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.retry import retry_base

from .errors import ServerError, TransportError
from .orchestration.event_decoder import EventDecoder, SSELineBuffer
from .orchestration.events import Complete, ErrorEvent, TextChunk
from .orchestration.model_types import ChatRequest, FinalResult, ToolCall
from .orchestration.tool_call_assembler import ToolCallAssembler

LOGGER = logging.getLogger(__name__)

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"

Frame = Union[str, Mapping[str, Any]]


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a transport."""

    base_url: str
    api_key: str
    model: str
    endpoint: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 2
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @property
    def chat_url(self) -> str:
        if self.endpoint:
            return self.endpoint
        return self.base_url.rstrip("/") + "/chat"


class _EndOfStream:
    """Sentinel returned by :meth:`StreamHandle.next` once the stream is drained."""

    _instance: "_EndOfStream | None" = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EOF"


EOF = _EndOfStream()


class FinalResultReducer:
    """Folds raw frames into the :class:`FinalResult` a stream resolves to.

    An explicit ``complete`` frame wins; otherwise the text and tool calls
    seen along the way are used.
    """

    def __init__(self) -> None:
        self._decoder = EventDecoder()
        self._assembler = ToolCallAssembler()
        self._text: List[str] = []
        self._complete: Complete | None = None
        self.error: str | None = None

    def observe(self, frame: Any) -> None:
        event = self._decoder.decode(frame)
        if event is None:
            return
        if isinstance(event, TextChunk):
            self._text.append(event.content)
        elif isinstance(event, Complete):
            self._complete = event
        elif isinstance(event, ErrorEvent):
            self.error = event.message
        else:
            self._assembler.observe(event)

    def result(self) -> FinalResult:
        streamed_text = "".join(self._text)
        if self._complete is None:
            return FinalResult(response=streamed_text, tool_calls=self._assembler.emitted)
        return FinalResult(
            response=self._complete.response or streamed_text,
            tool_calls=self._complete.tool_calls or self._assembler.emitted,
            finish_reason=self._complete.finish_reason,
        )


class StreamHandle:
    """Pull-based view over one open stream.

    ``next()`` returns the next raw frame or :data:`EOF`. ``complete``
    resolves to the reduced :class:`FinalResult` once ``next()`` has hit
    the end, or raises the error that ended the stream.
    """

    def __init__(
        self,
        frames: AsyncIterator[Frame],
        *,
        closer: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._frames = frames
        self._closer = closer
        self._reducer = FinalResultReducer()
        self._complete: asyncio.Future[FinalResult] = asyncio.get_running_loop().create_future()
        self._complete.add_done_callback(_consume_exception)
        self._finished = False
        self._closed = False
        self.frames_read = 0

    @property
    def complete(self) -> Awaitable[FinalResult]:
        return self._complete

    async def next(self) -> Frame | _EndOfStream:
        if self._finished:
            return EOF
        try:
            frame = await self._frames.__anext__()
        except StopAsyncIteration:
            self._finish()
            await self.aclose()
            return EOF
        except TransportError as exc:
            self._fail(exc)
            await self.aclose()
            raise
        except (httpx.HTTPError, APIError) as exc:
            error = _transport_error_from(exc, "Stream interrupted")
            self._fail(error)
            await self.aclose()
            raise error from exc
        self.frames_read += 1
        self._reducer.observe(frame)
        return frame

    def __aiter__(self) -> "StreamHandle":
        return self

    async def __anext__(self) -> Frame:
        frame = await self.next()
        if frame is EOF:
            raise StopAsyncIteration
        return frame  # type: ignore[return-value]

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._finished:
            self._fail(TransportError("Stream closed before completion"))
        close_frames = getattr(self._frames, "aclose", None)
        if close_frames is not None:
            try:
                await close_frames()
            except Exception:  # pragma: no cover - best-effort cleanup
                LOGGER.debug("Closing frame iterator failed", exc_info=True)
        if self._closer is not None:
            try:
                result = self._closer()
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pragma: no cover - best-effort cleanup
                LOGGER.debug("Closing stream connection failed", exc_info=True)

    def _finish(self) -> None:
        self._finished = True
        if self._complete.done():
            return
        if self._reducer.error is not None:
            self._complete.set_exception(ServerError(self._reducer.error))
        else:
            self._complete.set_result(self._reducer.result())

    def _fail(self, exc: BaseException) -> None:
        self._finished = True
        if not self._complete.done():
            self._complete.set_exception(exc)


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class StreamTransport(Protocol):
    """Contract every transport satisfies."""

    async def open(self, request: ChatRequest) -> StreamHandle:
        ...

    async def open_once(self, request: ChatRequest) -> FinalResult:
        ...

    async def aclose(self) -> None:
        ...


def _transport_error_from(exc: BaseException, prefix: str) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return TransportError(f"{prefix}: {exc}", status_code=status if isinstance(status, int) else None)


class _RetryingMixin:
    _settings: ClientSettings

    def _retrying(self, retry: retry_base) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries + 1)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry,
        )


class HttpStreamTransport(_RetryingMixin):
    """Server-sent events over a plain HTTP POST (httpx).

    A response whose content type is not ``text/event-stream`` is treated
    as the single non-streaming result object.
    """

    # Only failures where the request never reached the server are resent.
    _RETRY_ON = retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout))

    def __init__(self, settings: ClientSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def open(self, request: ChatRequest) -> StreamHandle:
        request.accepts_streaming = True
        payload = self._build_payload(request)
        response = await self._connect(payload, stream=True)
        content_type = response.headers.get("content-type", "")
        if EVENT_STREAM_CONTENT_TYPE not in content_type:
            LOGGER.debug("Endpoint answered with %s; using the non-streaming body", content_type or "no content type")
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            return StreamHandle(_single_frame(self._parse_body(body)))
        return StreamHandle(self._iter_frames(response), closer=response.aclose)

    async def open_once(self, request: ChatRequest) -> FinalResult:
        request.accepts_streaming = False
        payload = self._build_payload(request)
        response = await self._connect(payload, stream=True)
        try:
            body = await response.aread()
        finally:
            await response.aclose()
        content_type = response.headers.get("content-type", "")
        if EVENT_STREAM_CONTENT_TYPE in content_type:
            reducer = FinalResultReducer()
            buffer = SSELineBuffer()
            for line in buffer.feed(body) + buffer.flush():
                reducer.observe(line)
            if reducer.error is not None:
                raise ServerError(reducer.error)
            return reducer.result()
        data = self._parse_body(body)
        if data.get("type") == "error":
            raise ServerError(str(data.get("message") or "Server error"))
        return FinalResult.from_mapping(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        if request.model is None:
            request.model = self._settings.model
        payload = request.to_payload()
        if self._settings.debug_logging:
            _log_payload(payload)
        return payload

    def _headers(self, *, stream: bool) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        headers["Accept"] = EVENT_STREAM_CONTENT_TYPE if stream else "application/json"
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers

    async def _connect(self, payload: Mapping[str, Any], *, stream: bool) -> httpx.Response:
        url = self._settings.chat_url
        accepts_stream = bool(payload.get("acceptsStreaming", stream))
        try:
            async for attempt in self._retrying(self._RETRY_ON):
                with attempt:
                    http_request = self._client.build_request(
                        "POST", url, json=dict(payload), headers=self._headers(stream=accepts_stream)
                    )
                    response = await self._client.send(http_request, stream=True)
                    if response.status_code >= 400:
                        body = await response.aread()
                        await response.aclose()
                        prefix = "Server error" if response.status_code >= 500 else "Request rejected"
                        raise TransportError(
                            f"{prefix}: {_error_detail(body)}", status_code=response.status_code
                        )
                    return response
        except httpx.HTTPError as exc:
            raise _transport_error_from(exc, "Connection failed") from exc
        except RetryError as exc:  # pragma: no cover - reraise=True makes this unreachable
            raise TransportError(f"Connection failed: {exc}") from exc
        raise TransportError("Connection failed")  # pragma: no cover

    async def _iter_frames(self, response: httpx.Response) -> AsyncIterator[str]:
        buffer = SSELineBuffer()
        async for chunk in response.aiter_bytes():
            for line in buffer.feed(chunk):
                if EventDecoder.is_end_marker(line):
                    return
                yield line
        for line in buffer.flush():
            if EventDecoder.is_end_marker(line):
                return
            yield line

    @staticmethod
    def _parse_body(body: bytes) -> Mapping[str, Any]:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError(f"Response body is not valid JSON: {exc}") from exc
        if not isinstance(data, Mapping):
            raise TransportError("Response body is not a JSON object")
        if "type" not in data:
            data = {**data, "type": "complete"}
        return data


class OpenAIResponsesTransport(_RetryingMixin):
    """Streams the OpenAI Responses API and yields each event as a mapping."""

    _RETRY_ON = retry_if_exception_type(APIConnectionError) & retry_if_not_exception_type(APITimeoutError)

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def open(self, request: ChatRequest) -> StreamHandle:
        params = self._build_params(request)
        stream = await self._create(params, stream=True)
        return StreamHandle(self._iter_events(stream), closer=getattr(stream, "close", None))

    async def open_once(self, request: ChatRequest) -> FinalResult:
        params = self._build_params(request)
        response = await self._create(params, stream=False)
        data = _dump(response)
        if data.get("status") == "failed":
            error = data.get("error") or {}
            message = error.get("message") if isinstance(error, Mapping) else None
            raise ServerError(str(message or "Response failed"))
        event = EventDecoder().decode({"type": "response.completed", "response": data})
        if not isinstance(event, Complete):
            return FinalResult()
        return FinalResult(response=event.response, tool_calls=event.tool_calls, finish_reason=event.finish_reason)

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _build_params(self, request: ChatRequest) -> Dict[str, Any]:
        messages = list(request.messages)
        if request.message and not messages:
            messages = [{"role": "user", "content": request.message}]
        params: Dict[str, Any] = {
            "model": request.model or self._settings.model,
            "input": messages,
        }
        if request.tools:
            params["tools"] = [_as_responses_tool(tool) for tool in request.tools]
            params["tool_choice"] = request.tool_choice or "auto"
        if self._settings.debug_logging:
            _log_payload(params)
        return params

    async def _create(self, params: Mapping[str, Any], *, stream: bool) -> Any:
        try:
            async for attempt in self._retrying(self._RETRY_ON):
                with attempt:
                    return await self._client.responses.create(stream=stream, **params)
        except APIError as exc:
            raise _transport_error_from(exc, "Request failed") from exc
        raise TransportError("Request failed")  # pragma: no cover

    async def _iter_events(self, stream: Any) -> AsyncIterator[Mapping[str, Any]]:
        async for event in stream:
            yield _dump(event)


def _dump(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, Mapping):
        return dict(obj)
    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        return dump()
    return dict(vars(obj))


def _as_responses_tool(tool: Mapping[str, Any]) -> Dict[str, Any]:
    function = tool.get("function")
    if not isinstance(function, Mapping):
        return dict(tool)
    converted: Dict[str, Any] = {"type": "function", "name": function.get("name")}
    if function.get("description"):
        converted["description"] = function["description"]
    if function.get("parameters") is not None:
        converted["parameters"] = function["parameters"]
    return converted


async def _single_frame(frame: Mapping[str, Any]) -> AsyncIterator[Mapping[str, Any]]:
    yield frame


def _error_detail(body: bytes | str) -> str:
    text = body.decode("utf-8", "replace") if isinstance(body, (bytes, bytearray)) else body
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text.strip()[:200] or "no response body"
    if isinstance(data, Mapping):
        error = data.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if data.get("message"):
            return str(data["message"])
        if isinstance(error, str):
            return error
    return text.strip()[:200]


def _log_payload(payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        LOGGER.debug("Chat request payload (unserializable): %s", payload)
    else:
        LOGGER.debug("Chat request payload:\n%s", serialized)


def create_transport(settings: ClientSettings, kind: str = "http") -> StreamTransport:
    """Build the transport named by ``kind`` (``"http"`` or ``"openai"``)."""

    normalized = (kind or "http").strip().lower()
    if normalized == "http":
        return HttpStreamTransport(settings)
    if normalized in {"openai", "responses"}:
        return OpenAIResponsesTransport(settings)
    raise ValueError(f"Unknown transport '{kind}'")


__all__ = [
    "ClientSettings",
    "EOF",
    "Frame",
    "FinalResultReducer",
    "StreamHandle",
    "StreamTransport",
    "HttpStreamTransport",
    "OpenAIResponsesTransport",
    "create_transport",
]
