"""Keyed accumulation of fragmented function-call arguments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from .events import ControlEvent, ToolCallDelta, ToolCallDone, ToolCallStart
from .model_types import ToolCall

LOGGER = logging.getLogger(__name__)


class AccumulatorState(Enum):
    ACCUMULATING = "accumulating"
    DONE = "done"


@dataclass(slots=True)
class ToolCallAccumulator:
    """Mutable buffer for one in-progress call, keyed by ``item_id``."""

    id: str
    name: str = ""
    argument_buffer: str = ""
    state: AccumulatorState = AccumulatorState.ACCUMULATING

    def append(self, fragment: str) -> None:
        self.argument_buffer += fragment

    def freeze(self, input_override: str | None = None) -> ToolCall:
        self.state = AccumulatorState.DONE
        arguments = input_override if input_override is not None else self.argument_buffer
        return ToolCall(id=self.id, name=self.name, arguments=arguments)


class ToolCallAssembler:
    """Turns start/delta/done events into complete :class:`ToolCall` objects.

    Calls are emitted one at a time from :meth:`observe`, in the order their
    ``ToolCallDone`` is seen. Each ``item_id`` is emitted at most once; a
    repeated ``Done`` for an already emitted id is ignored.
    """

    def __init__(self) -> None:
        self._live: Dict[str, ToolCallAccumulator] = {}
        self._emitted: List[ToolCall] = []
        self._emitted_ids: set[str] = set()

    @property
    def emitted(self) -> tuple[ToolCall, ...]:
        return tuple(self._emitted)

    @property
    def pending_ids(self) -> tuple[str, ...]:
        return tuple(self._live)

    def observe(self, event: ControlEvent) -> ToolCall | None:
        if isinstance(event, ToolCallStart):
            accumulator = self._accumulator_for(event.item_id)
            if accumulator is not None and not accumulator.name:
                accumulator.name = event.name
            return None
        if isinstance(event, ToolCallDelta):
            accumulator = self._accumulator_for(event.item_id)
            if accumulator is not None:
                accumulator.append(event.delta)
            return None
        if isinstance(event, ToolCallDone):
            return self._finish(event)
        return None

    def reset(self) -> None:
        if self._live:
            LOGGER.debug("Discarding %d unfinished tool call(s): %s", len(self._live), list(self._live))
        self._live.clear()
        self._emitted.clear()
        self._emitted_ids.clear()

    def _accumulator_for(self, item_id: str) -> ToolCallAccumulator | None:
        if item_id in self._emitted_ids:
            LOGGER.debug("Ignoring fragment for already emitted tool call %s", item_id)
            return None
        accumulator = self._live.get(item_id)
        if accumulator is None:
            accumulator = ToolCallAccumulator(id=item_id)
            self._live[item_id] = accumulator
        return accumulator

    def _finish(self, event: ToolCallDone) -> ToolCall | None:
        if event.item_id in self._emitted_ids:
            LOGGER.debug("Duplicate done event for tool call %s ignored", event.item_id)
            return None
        accumulator = self._live.pop(event.item_id, None)
        if accumulator is None:
            # Done without any prior fragment: build the call from the event alone.
            accumulator = ToolCallAccumulator(id=event.item_id)
        if event.name:
            accumulator.name = event.name
        if not accumulator.name:
            LOGGER.warning("Tool call %s finished without a name", event.item_id)
        call = accumulator.freeze(event.input)
        self._emitted.append(call)
        self._emitted_ids.add(call.id)
        return call


__all__ = ["AccumulatorState", "ToolCallAccumulator", "ToolCallAssembler"]
