"""Typed control events decoded from the streaming wire format.

Each transport frame decodes to at most one of these. They are immutable;
consumers dispatch on them with ``isinstance``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from .model_types import ToolCall


@dataclass(slots=True, frozen=True)
class TextChunk:
    """A free-text delta from the assistant."""

    content: str


@dataclass(slots=True, frozen=True)
class ToolCallStart:
    """The model opened a function call identified by ``item_id``."""

    item_id: str
    name: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """A fragment of a function call's JSON arguments."""

    item_id: str
    delta: str


@dataclass(slots=True, frozen=True)
class ToolCallDone:
    """The function call ``item_id`` is complete.

    ``input`` (when present) is the full argument string and overrides
    anything accumulated from deltas. ``name`` is only set by frames that
    carry the whole call at once.
    """

    item_id: str
    input: str | None = None
    name: str | None = None


@dataclass(slots=True, frozen=True)
class Complete:
    """Terminal frame carrying the full response text and every tool call."""

    response: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    finish_reason: str | None = None


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    """Explicit server-side failure."""

    message: str


ControlEvent = Union[TextChunk, ToolCallStart, ToolCallDelta, ToolCallDone, Complete, ErrorEvent]

TOOL_EVENT_TYPES: tuple[type, ...] = (ToolCallStart, ToolCallDelta, ToolCallDone)


__all__ = [
    "ControlEvent",
    "TextChunk",
    "ToolCallStart",
    "ToolCallDelta",
    "ToolCallDone",
    "Complete",
    "ErrorEvent",
    "TOOL_EVENT_TYPES",
]
