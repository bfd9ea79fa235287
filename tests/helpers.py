"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable, Mapping, Sequence

from notecanvas.ai.client import StreamHandle
from notecanvas.ai.orchestration.model_types import ChatRequest, FinalResult


def sse(payload: Mapping[str, Any]) -> str:
    """Render ``payload`` as one ``data:`` line."""
    return "data: " + json.dumps(payload)


def tool_call_frame(call_id: str, name: str, arguments: Mapping[str, Any] | str) -> str:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return sse(
        {
            "type": "tool_call",
            "tool_call": {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}},
        }
    )


async def _iterate(frames: Iterable[Any], gate: asyncio.Event | None) -> Any:
    if gate is not None:
        await gate.wait()
    for frame in frames:
        if isinstance(frame, BaseException):
            raise frame
        yield frame
        await asyncio.sleep(0)


class ScriptedTransport:
    """StreamTransport stub replaying canned frames.

    Each ``open`` consumes the next script; a script that is an exception is
    raised from ``open`` itself. Frames that are exceptions are raised
    mid-stream. ``gate`` holds every stream before its first frame.

    Example:
        transport = ScriptedTransport([sse({"type": "chunk", "content": "hi"})])
        controller = ChatSessionController(transport, frame_interval=0)
    """

    def __init__(
        self,
        *scripts: Sequence[Any] | BaseException,
        once: Sequence[FinalResult | BaseException] = (),
        gate: asyncio.Event | None = None,
    ) -> None:
        self._scripts = list(scripts)
        self._once = list(once)
        self.gate = gate
        self.requests: list[ChatRequest] = []
        self.closed = False

    async def open(self, request: ChatRequest) -> StreamHandle:
        self.requests.append(request)
        script = self._scripts.pop(0) if self._scripts else []
        if isinstance(script, BaseException):
            raise script
        return StreamHandle(_iterate(script, self.gate))

    async def open_once(self, request: ChatRequest) -> FinalResult:
        self.requests.append(request)
        result = self._once.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True
