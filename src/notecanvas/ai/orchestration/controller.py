"""Chat session controller.

Runs one user turn at a time: opens the transport, pulls frames through
the :class:`EventDecoder`, forwards text to the caller and hands every
assembled tool call to the tool callback without waiting for it. Tool
callbacks run as tracked tasks so they can be joined or cancelled later.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ...events import (
    Event,
    EventBus,
    ToolCallDispatched,
    ToolCallFinished,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
    TurnStreamChunk,
)
from ..client import EOF, StreamHandle, StreamTransport
from ..errors import NoteCanvasError, ServerError, StaleSessionError, TurnInProgressError
from .chunk_flow import DEFAULT_FRAME_INTERVAL, ChunkCallback, ChunkCoalescer
from .event_decoder import EventDecoder
from .events import TOOL_EVENT_TYPES, Complete, ControlEvent, ErrorEvent, TextChunk
from .model_types import (
    SESSION_TOKEN,
    ChatRequest,
    FinalResult,
    ToolCall,
    ToolOutcome,
    TurnResult,
    TurnStatus,
)
from .tool_call_assembler import ToolCallAssembler

LOGGER = logging.getLogger(__name__)

ToolCallback = Callable[[ToolCall], Awaitable[Any] | Any]


@dataclass(slots=True)
class _TurnState:
    turn_id: str
    token: int
    on_chunk: ChunkCallback | None
    on_tool_call: ToolCallback | None
    text_parts: list[str] = field(default_factory=list)
    forwarded: list[ToolCall] = field(default_factory=list)
    tasks: list[tuple[ToolCall, asyncio.Task[ToolOutcome]]] = field(default_factory=list)
    coalescer: ChunkCoalescer = field(init=False)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class ChatSessionController:
    """Orchestrates chat turns for a single session.

    At most one turn is in flight per controller. Every turn gets a new
    session token; effects scheduled by a turn whose token is no longer
    current are discarded.

    Events Emitted (when an event bus is supplied):
        - TurnStarted, TurnStreamChunk, TurnCompleted, TurnFailed
        - ToolCallDispatched, ToolCallFinished
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        model: str | None = None,
        streaming: bool = True,
        event_bus: EventBus | None = None,
        frame_interval: float = DEFAULT_FRAME_INTERVAL,
        system_prompt: str | None = None,
    ) -> None:
        self._transport = transport
        self._default_tools = [dict(tool) for tool in tools] if tools else []
        self._model = model
        self._streaming = streaming
        self._bus = event_bus
        self._frame_interval = frame_interval
        self._system_prompt = system_prompt
        self._session_token = 0
        self._status = TurnStatus.IDLE
        self._active_task: asyncio.Task[TurnResult] | None = None
        self._tool_tasks: list[tuple[ToolCall, asyncio.Task[ToolOutcome]]] = []
        self._last_result: TurnResult | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def session_token(self) -> int:
        return self._session_token

    @property
    def status(self) -> TurnStatus:
        return self._status

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def last_result(self) -> TurnResult | None:
        return self._last_result

    @property
    def outstanding_tool_calls(self) -> int:
        return sum(1 for _, task in self._tool_tasks if not task.done())

    def is_running(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    def is_current(self, token: int | None) -> bool:
        return token is not None and token == self._session_token

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------
    async def run(
        self,
        message: str,
        history: Sequence[Mapping[str, str]] | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        on_tool_call: ToolCallback | None = None,
        *,
        wait_for_tools: bool = False,
        reject_if_busy: bool = False,
    ) -> TurnResult:
        """Run one chat turn and return its result.

        A turn that fails still resolves: ``TurnResult.error`` holds the
        reason and ``TurnResult.text`` whatever text arrived first. When a
        turn is already in flight the in-flight turn's result is returned
        and no new request is sent (or :class:`TurnInProgressError` is
        raised with ``reject_if_busy``).

        Raises:
            ValueError: If ``message`` is empty or whitespace.
        """
        if not isinstance(message, str) or not message.strip():
            raise ValueError("Message cannot be empty or just whitespace")

        active = self._active_task
        if active is not None and not active.done():
            if reject_if_busy:
                raise TurnInProgressError("A chat turn is already in progress")
            LOGGER.debug("Turn already in flight; joining it instead of starting another")
            return await asyncio.shield(active)

        self._session_token += 1
        token = self._session_token
        turn_id = f"turn-{uuid.uuid4().hex[:8]}"
        request = self._build_request(message.strip(), history, tools)
        state = _TurnState(turn_id=turn_id, token=token, on_chunk=on_chunk, on_tool_call=on_tool_call)
        self._status = TurnStatus.SENDING
        self._active_task = asyncio.get_running_loop().create_task(
            self._run_turn(state, request, message, wait_for_tools=wait_for_tools),
            name=f"notecanvas-{turn_id}",
        )
        return await self._active_task

    def invalidate(self) -> int:
        """Bump the session token so pending effects of older turns are discarded."""

        self._session_token += 1
        LOGGER.debug("Session token invalidated; now %d", self._session_token)
        return self._session_token

    def cancel(self) -> None:
        """Invalidate the session, stop the running turn and its tool calls."""

        self.invalidate()
        for _, task in self._tool_tasks:
            if not task.done():
                task.cancel()
        active = self._active_task
        if active is not None and not active.done():
            active.cancel()

    async def join_tool_calls(self) -> list[ToolOutcome]:
        """Wait for every dispatched tool call and return outcomes in dispatch order."""

        tracked = list(self._tool_tasks)
        self._tool_tasks.clear()
        return await self._join(tracked)

    async def aclose(self) -> None:
        self.cancel()
        active = self._active_task
        if active is not None:
            await asyncio.gather(active, return_exceptions=True)
        await self.join_tool_calls()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_request(
        self,
        message: str,
        history: Sequence[Mapping[str, str]] | None,
        tools: Sequence[Mapping[str, Any]] | None,
    ) -> ChatRequest:
        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        for entry in history or ():
            role = entry.get("role")
            content = entry.get("content")
            if role and content is not None:
                messages.append({"role": str(role), "content": str(content)})
        messages.append({"role": "user", "content": message})
        selected = self._default_tools if tools is None else [dict(tool) for tool in tools]
        return ChatRequest(
            message=message,
            messages=messages,
            model=self._model,
            tools=selected or None,
            tool_choice="auto" if selected else None,
            accepts_streaming=self._streaming,
        )

    async def _run_turn(
        self,
        state: _TurnState,
        request: ChatRequest,
        message: str,
        *,
        wait_for_tools: bool,
    ) -> TurnResult:
        SESSION_TOKEN.set(state.token)
        result = TurnResult(turn_id=state.turn_id, session_token=state.token)
        state.coalescer = ChunkCoalescer(self._chunk_sink(state), frame_interval=self._frame_interval)
        LOGGER.debug("Starting turn %s (token=%d, tools=%d)", state.turn_id, state.token, len(request.tools or ()))
        self._publish(TurnStarted(turn_id=state.turn_id, session_token=state.token, message=message))

        try:
            if self._streaming:
                final = await self._consume_stream(state, request)
            else:
                final = await self._consume_once(state, request)
            self._reconcile(state, final)
        except asyncio.CancelledError:
            await state.coalescer.drain()
            self._status = TurnStatus.FAILED
            self._publish(TurnFailed(turn_id=state.turn_id, error="cancelled", partial_text=state.text))
            raise
        except NoteCanvasError as exc:
            await state.coalescer.drain()
            return await self._fail(state, result, exc, wait_for_tools=wait_for_tools)
        except Exception as exc:
            await state.coalescer.drain()
            return await self._fail(state, result, exc, wait_for_tools=wait_for_tools)

        await state.coalescer.drain()
        result.text = state.text
        result.tool_calls = tuple(state.forwarded)
        result.finish_reason = final.finish_reason
        if wait_for_tools:
            result.tool_results = tuple(await self._join_turn(state))
        result.status = TurnStatus.COMPLETED
        result.completed_at = datetime.now(timezone.utc)
        self._status = TurnStatus.COMPLETED
        self._last_result = result
        LOGGER.debug(
            "Turn %s completed: %d chars, %d tool call(s)",
            state.turn_id,
            len(result.text),
            len(result.tool_calls),
        )
        self._publish(
            TurnCompleted(
                turn_id=state.turn_id,
                response_text=result.text,
                tool_call_count=len(result.tool_calls),
            )
        )
        return result

    async def _fail(
        self,
        state: _TurnState,
        result: TurnResult,
        exc: Exception,
        *,
        wait_for_tools: bool,
    ) -> TurnResult:
        if isinstance(exc, (ServerError, StaleSessionError)):
            LOGGER.warning("Turn %s failed: %s", state.turn_id, exc)
        else:
            LOGGER.error("Turn %s failed: %s", state.turn_id, exc, exc_info=True)
        result.text = state.text
        result.tool_calls = tuple(state.forwarded)
        result.error = exc
        if wait_for_tools:
            result.tool_results = tuple(await self._join_turn(state))
        result.status = TurnStatus.FAILED
        result.completed_at = datetime.now(timezone.utc)
        self._status = TurnStatus.FAILED
        self._last_result = result
        self._publish(TurnFailed(turn_id=state.turn_id, error=str(exc), partial_text=result.text))
        return result

    async def _consume_stream(self, state: _TurnState, request: ChatRequest) -> FinalResult:
        handle: StreamHandle = await self._transport.open(request)
        self._status = TurnStatus.STREAMING
        decoder = EventDecoder()
        assembler = ToolCallAssembler()
        complete: Complete | None = None
        try:
            while True:
                frame = await handle.next()
                if frame is EOF:
                    break
                if not self.is_current(state.token):
                    raise StaleSessionError(state.token, self._session_token)
                event = decoder.decode(frame)
                if event is None:
                    continue
                if isinstance(event, Complete):
                    complete = event
                    break
                self._handle_event(state, assembler, event)
        finally:
            await handle.aclose()

        if not self.is_current(state.token):
            raise StaleSessionError(state.token, self._session_token)
        if decoder.dropped:
            LOGGER.debug("Turn %s dropped %d malformed frame(s)", state.turn_id, decoder.dropped)
        if assembler.pending_ids:
            LOGGER.warning("Turn %s ended with unfinished tool call(s): %s", state.turn_id, list(assembler.pending_ids))
        if complete is not None:
            return FinalResult(
                response=complete.response,
                tool_calls=complete.tool_calls,
                finish_reason=complete.finish_reason,
            )
        return await handle.complete

    async def _consume_once(self, state: _TurnState, request: ChatRequest) -> FinalResult:
        final = await self._transport.open_once(request)
        if not self.is_current(state.token):
            raise StaleSessionError(state.token, self._session_token)
        self._status = TurnStatus.STREAMING
        return final

    def _handle_event(self, state: _TurnState, assembler: ToolCallAssembler, event: ControlEvent) -> None:
        if isinstance(event, TextChunk):
            state.text_parts.append(event.content)
            state.coalescer.push(event.content)
        elif isinstance(event, TOOL_EVENT_TYPES):
            call = assembler.observe(event)
            if call is not None:
                self._dispatch_tool(state, call)
        elif isinstance(event, ErrorEvent):
            raise ServerError(event.message)

    def _reconcile(self, state: _TurnState, final: FinalResult) -> None:
        """Align the final result with what was delivered incrementally."""

        if not state.text_parts and final.response:
            state.text_parts.append(final.response)
            state.coalescer.push(final.response)
        elif final.response and final.response != state.text:
            LOGGER.debug("Turn %s: final response differs from streamed text; keeping streamed text", state.turn_id)

        if not final.tool_calls:
            return
        forwarded_ids = [call.id for call in state.forwarded]
        final_ids = [call.id for call in final.tool_calls]
        if final_ids == forwarded_ids:
            return
        if state.forwarded:
            LOGGER.warning(
                "Turn %s: complete frame lists tool calls %s but %s were streamed",
                state.turn_id,
                final_ids,
                forwarded_ids,
            )
        seen = set(forwarded_ids)
        for call in final.tool_calls:
            if call.id in seen:
                continue
            seen.add(call.id)
            self._dispatch_tool(state, call)

    def _dispatch_tool(self, state: _TurnState, call: ToolCall) -> None:
        state.forwarded.append(call)
        LOGGER.debug("Turn %s dispatching tool call %s (%s)", state.turn_id, call.id, call.name)
        self._publish(
            ToolCallDispatched(
                turn_id=state.turn_id,
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=call.arguments,
            )
        )
        if state.on_tool_call is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._run_tool(state, call, state.on_tool_call),
            name=f"notecanvas-tool-{call.id}",
        )
        entry = (call, task)
        state.tasks.append(entry)
        self._tool_tasks.append(entry)

    async def _run_tool(self, state: _TurnState, call: ToolCall, callback: ToolCallback) -> ToolOutcome:
        started = time.perf_counter()
        try:
            value = callback(call)
            if inspect.isawaitable(value):
                value = await value
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000.0
            LOGGER.warning("Tool call %s (%s) failed: %s", call.id, call.name, exc)
            outcome = ToolOutcome(call=call, success=False, status=str(exc), error=exc, duration_ms=duration_ms)
        else:
            duration_ms = (time.perf_counter() - started) * 1000.0
            outcome = ToolOutcome(
                call=call,
                success=True,
                status="" if value is None else str(value),
                duration_ms=duration_ms,
            )
        if not self.is_current(state.token):
            LOGGER.debug("Tool call %s settled after its session was invalidated", call.id)
            return outcome
        self._publish(
            ToolCallFinished(
                turn_id=state.turn_id,
                tool_call_id=call.id,
                tool_name=call.name,
                success=outcome.success,
                result=outcome.status,
                duration_ms=outcome.duration_ms,
            )
        )
        return outcome

    async def _join_turn(self, state: _TurnState) -> list[ToolOutcome]:
        tracked = list(state.tasks)
        self._tool_tasks[:] = [entry for entry in self._tool_tasks if entry not in tracked]
        return await self._join(tracked)

    @staticmethod
    async def _join(tracked: Sequence[tuple[ToolCall, asyncio.Task[ToolOutcome]]]) -> list[ToolOutcome]:
        if not tracked:
            return []
        settled = await asyncio.gather(*(task for _, task in tracked), return_exceptions=True)
        outcomes: list[ToolOutcome] = []
        for (call, _), value in zip(tracked, settled):
            if isinstance(value, ToolOutcome):
                outcomes.append(value)
            else:
                status = "cancelled" if isinstance(value, asyncio.CancelledError) else str(value)
                outcomes.append(ToolOutcome(call=call, success=False, status=status, error=value))
        return outcomes

    def _chunk_sink(self, state: _TurnState) -> ChunkCallback:
        def deliver(text: str) -> Awaitable[None] | None:
            self._publish(TurnStreamChunk(turn_id=state.turn_id, content=text))
            if state.on_chunk is None:
                return None
            return state.on_chunk(text)

        return deliver

    def _publish(self, event: Event) -> None:
        if self._bus is not None:
            self._bus.publish(event)


__all__ = ["ChatSessionController", "ToolCallback"]
