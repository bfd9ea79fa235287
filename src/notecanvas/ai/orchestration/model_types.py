"""Internal data classes for chat turn handling."""

from __future__ import annotations

import json
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Sequence


# Session token of the turn that scheduled the current task, if any.
SESSION_TOKEN: ContextVar[int | None] = ContextVar("notecanvas_session_token", default=None)


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A fully assembled function invocation requested by the model.

    ``arguments`` stays a JSON-encoded string; the tool executor decodes it
    lazily so a malformed payload only fails that one call.
    """

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Return the OpenAI-compatible wire shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, fallback_id: str = "") -> "ToolCall | None":
        """Build a tool call from any of the supported wire shapes.

        Accepts ``{id, function: {name, arguments}}``, the flat
        ``{id, name, arguments}`` form and Responses-API ``function_call``
        items (``call_id``). Returns ``None`` when no name can be found.
        """
        if not isinstance(payload, Mapping):
            return None
        function = payload.get("function")
        if isinstance(function, Mapping):
            name = function.get("name")
            arguments = function.get("arguments")
        else:
            name = payload.get("name")
            arguments = payload.get("arguments")
        if not name:
            return None
        call_id = payload.get("call_id") or payload.get("id") or fallback_id
        return cls(id=str(call_id), name=str(name), arguments=_stringify_arguments(arguments))


def _stringify_arguments(arguments: Any) -> str:
    if arguments is None:
        return ""
    if isinstance(arguments, str):
        return arguments
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(arguments)


@dataclass(slots=True, frozen=True)
class FinalResult:
    """Transport-independent outcome of one remote call."""

    response: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FinalResult":
        raw_calls = payload.get("tool_calls") or payload.get("toolCalls") or ()
        calls: list[ToolCall] = []
        for index, entry in enumerate(raw_calls if isinstance(raw_calls, Sequence) else ()):
            call = ToolCall.from_mapping(entry, fallback_id=f"call_{index}")
            if call is not None:
                calls.append(call)
        response = payload.get("response")
        return cls(
            response=response if isinstance(response, str) else "",
            tool_calls=tuple(calls),
            finish_reason=payload.get("finish_reason"),
        )


@dataclass(slots=True)
class ChatRequest:
    """Request body sent to the remote chat endpoint."""

    message: str | None = None
    messages: list[dict[str, str]] = field(default_factory=list)
    model: str | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | None = None
    accepts_streaming: bool = True

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"acceptsStreaming": self.accepts_streaming}
        if self.message is not None:
            payload["message"] = self.message
        if self.messages:
            payload["messages"] = list(self.messages)
        if self.model:
            payload["model"] = self.model
        if self.tools:
            payload["tools"] = list(self.tools)
            payload["tool_choice"] = self.tool_choice or "auto"
        elif self.tool_choice:
            payload["tool_choice"] = self.tool_choice
        return payload


class TurnStatus(Enum):
    """Lifecycle of a single chat turn."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.COMPLETED, TurnStatus.FAILED)


@dataclass(slots=True)
class ToolOutcome:
    """Settled result of one dispatched tool call."""

    call: ToolCall
    success: bool
    status: str = ""
    error: BaseException | None = None
    duration_ms: float = 0.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TurnResult:
    """What a finished turn hands back to its caller.

    A failed turn still carries whatever text arrived before the failure.
    """

    turn_id: str
    session_token: int
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    status: TurnStatus = TurnStatus.IDLE
    error: BaseException | None = None
    finish_reason: str | None = None
    tool_results: tuple[ToolOutcome, ...] = ()
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.COMPLETED


__all__ = [
    "SESSION_TOKEN",
    "ToolCall",
    "FinalResult",
    "ChatRequest",
    "TurnStatus",
    "ToolOutcome",
    "TurnResult",
]
