"""Decode raw stream frames into typed control events.

Two layers live here. :class:`SSELineBuffer` turns an arbitrary sequence of
network reads into complete lines, carrying partial lines across reads.
:class:`EventDecoder` maps one line (or an already-parsed object) onto at
most one :mod:`~notecanvas.ai.orchestration.events` instance and never
raises: frames it cannot understand are counted and dropped.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping

from ..errors import DecodeError
from .events import (
    Complete,
    ControlEvent,
    ErrorEvent,
    TextChunk,
    ToolCallDelta,
    ToolCallDone,
    ToolCallStart,
)
from .model_types import ToolCall

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
_LOG_PREVIEW_CHARS = 120


class SSELineBuffer:
    """Persistent line reassembly for server-sent event byte streams.

    ``feed`` may be called with chunks that split a line (or a multi-byte
    UTF-8 character) anywhere; only complete lines are returned. Blank
    keep-alive lines and ``:`` comment lines are skipped.
    """

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> List[str]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        self._pending += text
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [line for line in (self._clean(part) for part in parts) if line is not None]

    def flush(self) -> List[str]:
        """Return the trailing unterminated line, if any, and reset."""

        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        line = self._clean(tail)
        return [line] if line is not None else []

    @staticmethod
    def _clean(raw: str) -> str | None:
        line = raw.rstrip("\r")
        if not line.strip():
            return None
        if line.startswith(":"):
            return None
        return line


class EventDecoder:
    """Stateless-per-frame decoder with drop accounting.

    Recognised discriminators: ``chunk``, ``tool_call``, ``complete``,
    ``error``, the itemised ``tool_call_start`` / ``tool_call_delta`` /
    ``tool_call_done`` frames and the OpenAI Responses stream event names.
    Frames without a ``type`` fall back to the older text-delta shapes
    (``delta``, ``content``, ``output[].content[].delta`` and chat-completion
    ``choices[0].delta.content``).
    """

    def __init__(self) -> None:
        self.decoded = 0
        self.dropped = 0
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], ControlEvent | None]] = {
            "chunk": self._decode_chunk,
            "tool_call": self._decode_tool_call,
            "tool_call_start": self._decode_item_start,
            "tool_call_delta": self._decode_item_delta,
            "tool_call_done": self._decode_item_done,
            "complete": self._decode_complete,
            "error": self._decode_error,
            "response.output_text.delta": self._decode_output_text_delta,
            "response.output_item.added": self._decode_output_item_added,
            "response.function_call_arguments.delta": self._decode_item_delta,
            "response.function_call_arguments.done": self._decode_item_done,
            "response.completed": self._decode_response_completed,
            "response.failed": self._decode_response_failed,
        }

    @staticmethod
    def is_end_marker(frame: Any) -> bool:
        """Return ``True`` for the ``data: [DONE]`` stream terminator."""

        if isinstance(frame, (bytes, bytearray)):
            try:
                frame = bytes(frame).decode("utf-8")
            except UnicodeDecodeError:
                return False
        if not isinstance(frame, str):
            return False
        text = frame.strip()
        if text.startswith(DATA_PREFIX):
            text = text[len(DATA_PREFIX) :].strip()
        return text == DONE_SENTINEL

    def decode(self, frame: Any) -> ControlEvent | None:
        """Decode ``frame`` into one control event, or ``None`` when dropped."""

        try:
            payload = self._coerce_payload(frame)
            if payload is None:
                return None
            event = self._dispatch(payload)
        except DecodeError as exc:
            self._drop(exc)
            return None
        except Exception as exc:  # pragma: no cover - unexpected shape; keep the stream alive
            self._drop(DecodeError(f"Unexpected decoder failure: {exc}", frame=frame))
            return None
        if event is None:
            self._drop(DecodeError("Frame carried no usable event", frame=frame))
            return None
        self.decoded += 1
        return event

    def decode_many(self, frames: Iterable[Any]) -> List[ControlEvent]:
        events: List[ControlEvent] = []
        for frame in frames:
            event = self.decode(frame)
            if event is not None:
                events.append(event)
        return events

    # ------------------------------------------------------------------
    # Frame normalisation
    # ------------------------------------------------------------------
    def _coerce_payload(self, frame: Any) -> Mapping[str, Any] | None:
        if frame is None:
            raise DecodeError("Empty frame")
        if isinstance(frame, Mapping):
            return frame
        if isinstance(frame, (bytes, bytearray)):
            try:
                frame = bytes(frame).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError("Frame is not valid UTF-8", frame=frame) from exc
        if isinstance(frame, str):
            return self._parse_line(frame)
        dump = getattr(frame, "model_dump", None)
        if callable(dump):
            data = dump()
            if isinstance(data, Mapping):
                return data
        raise DecodeError(f"Unsupported frame type {type(frame).__name__}", frame=frame)

    def _parse_line(self, line: str) -> Mapping[str, Any] | None:
        text = line.strip()
        if not text or text.startswith(":"):
            return None
        if text.startswith(DATA_PREFIX):
            text = text[len(DATA_PREFIX) :].strip()
        elif text.startswith(("event:", "id:", "retry:")):
            return None
        if text == DONE_SENTINEL:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Malformed JSON frame: {exc.msg}", frame=line) from exc
        if not isinstance(data, Mapping):
            raise DecodeError("Frame JSON is not an object", frame=line)
        return data

    def _dispatch(self, payload: Mapping[str, Any]) -> ControlEvent | None:
        frame_type = payload.get("type")
        if frame_type is None:
            return self._decode_legacy(payload)
        handler = self._handlers.get(str(frame_type))
        if handler is None:
            raise DecodeError(f"Unrecognised frame type {frame_type!r}", frame=payload)
        return handler(payload)

    def _drop(self, exc: DecodeError) -> None:
        self.dropped += 1
        LOGGER.debug("Dropped stream frame (%s): %s", exc, _preview(exc.frame))

    # ------------------------------------------------------------------
    # Native frames
    # ------------------------------------------------------------------
    @staticmethod
    def _decode_chunk(payload: Mapping[str, Any]) -> ControlEvent | None:
        content = payload.get("content")
        if isinstance(content, str) and content:
            return TextChunk(content)
        return None

    @staticmethod
    def _decode_tool_call(payload: Mapping[str, Any]) -> ControlEvent | None:
        call = ToolCall.from_mapping(payload.get("tool_call") or {})
        if call is None or not call.id:
            return None
        return ToolCallDone(item_id=call.id, input=call.arguments, name=call.name)

    @staticmethod
    def _decode_item_start(payload: Mapping[str, Any]) -> ControlEvent | None:
        item_id = _item_id(payload)
        name = payload.get("name")
        if not item_id or not isinstance(name, str) or not name:
            return None
        return ToolCallStart(item_id=item_id, name=name)

    @staticmethod
    def _decode_item_delta(payload: Mapping[str, Any]) -> ControlEvent | None:
        item_id = _item_id(payload)
        delta = payload.get("delta")
        if not item_id or not isinstance(delta, str):
            return None
        return ToolCallDelta(item_id=item_id, delta=delta)

    @staticmethod
    def _decode_item_done(payload: Mapping[str, Any]) -> ControlEvent | None:
        item_id = _item_id(payload)
        if not item_id:
            return None
        raw_input = payload.get("input", payload.get("arguments"))
        name = payload.get("name")
        return ToolCallDone(
            item_id=item_id,
            input=raw_input if isinstance(raw_input, str) else None,
            name=name if isinstance(name, str) and name else None,
        )

    @staticmethod
    def _decode_complete(payload: Mapping[str, Any]) -> ControlEvent | None:
        response = payload.get("response")
        raw_calls = payload.get("tool_calls") or ()
        calls: list[ToolCall] = []
        if isinstance(raw_calls, list):
            for index, entry in enumerate(raw_calls):
                call = ToolCall.from_mapping(entry, fallback_id=f"call_{index}")
                if call is not None:
                    calls.append(call)
        finish_reason = payload.get("finish_reason")
        return Complete(
            response=response if isinstance(response, str) else "",
            tool_calls=tuple(calls),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )

    @staticmethod
    def _decode_error(payload: Mapping[str, Any]) -> ControlEvent | None:
        message = payload.get("message")
        if not message:
            error = payload.get("error")
            if isinstance(error, Mapping):
                message = error.get("message")
            elif isinstance(error, str):
                message = error
        return ErrorEvent(str(message or "Stream error"))

    # ------------------------------------------------------------------
    # Responses API frames
    # ------------------------------------------------------------------
    @staticmethod
    def _decode_output_text_delta(payload: Mapping[str, Any]) -> ControlEvent | None:
        delta = payload.get("delta")
        if isinstance(delta, str) and delta:
            return TextChunk(delta)
        return None

    @staticmethod
    def _decode_output_item_added(payload: Mapping[str, Any]) -> ControlEvent | None:
        item = payload.get("item")
        if not isinstance(item, Mapping) or item.get("type") != "function_call":
            return None
        item_id = item.get("id") or item.get("call_id")
        name = item.get("name")
        if not item_id or not isinstance(name, str) or not name:
            return None
        return ToolCallStart(item_id=str(item_id), name=name)

    @staticmethod
    def _decode_response_completed(payload: Mapping[str, Any]) -> ControlEvent | None:
        response = payload.get("response")
        if not isinstance(response, Mapping):
            return None
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for item in response.get("output") or ():
            if not isinstance(item, Mapping):
                continue
            item_type = item.get("type")
            if item_type == "message":
                for part in item.get("content") or ():
                    if isinstance(part, Mapping) and part.get("type") == "output_text":
                        text_parts.append(str(part.get("text") or ""))
            elif item_type == "function_call" and item.get("name"):
                calls.append(
                    ToolCall(
                        id=str(item.get("id") or item.get("call_id") or ""),
                        name=str(item["name"]),
                        arguments=str(item.get("arguments") or ""),
                    )
                )
        status = response.get("status")
        return Complete(
            response="".join(text_parts),
            tool_calls=tuple(calls),
            finish_reason=status if isinstance(status, str) else None,
        )

    @staticmethod
    def _decode_response_failed(payload: Mapping[str, Any]) -> ControlEvent | None:
        response = payload.get("response")
        message = None
        if isinstance(response, Mapping):
            error = response.get("error")
            if isinstance(error, Mapping):
                message = error.get("message")
        return ErrorEvent(str(message or "Response failed"))

    # ------------------------------------------------------------------
    # Untyped legacy shapes
    # ------------------------------------------------------------------
    @staticmethod
    def _decode_legacy(payload: Mapping[str, Any]) -> ControlEvent | None:
        delta = payload.get("delta")
        if isinstance(delta, str) and delta:
            return TextChunk(delta)
        content = payload.get("content")
        if isinstance(content, str) and content:
            return TextChunk(content)
        output = payload.get("output")
        if isinstance(output, list):
            pieces: list[str] = []
            for item in output:
                if not isinstance(item, Mapping):
                    continue
                for part in item.get("content") or ():
                    if isinstance(part, Mapping) and isinstance(part.get("delta"), str):
                        pieces.append(part["delta"])
            text = "".join(pieces)
            if text:
                return TextChunk(text)
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
            choice_delta = choices[0].get("delta")
            if isinstance(choice_delta, Mapping):
                text = choice_delta.get("content")
                if isinstance(text, str) and text:
                    return TextChunk(text)
        return None


def _item_id(payload: Mapping[str, Any]) -> str:
    value = payload.get("item_id") or payload.get("itemId") or payload.get("id")
    return str(value) if value else ""


def _preview(frame: Any) -> str:
    text = frame if isinstance(frame, str) else repr(frame)
    if len(text) > _LOG_PREVIEW_CHARS:
        return text[:_LOG_PREVIEW_CHARS] + "..."
    return text


__all__ = ["SSELineBuffer", "EventDecoder", "DATA_PREFIX", "DONE_SENTINEL"]
