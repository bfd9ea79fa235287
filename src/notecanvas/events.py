"""Event bus infrastructure for decoupled canvas and chat notifications.

Components publish what happened (a node was appended, a turn finished)
without knowing who listens. The CLI, persistence writer and tests all
subscribe through the same bus.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all bus events.

    Example::

        @dataclass(slots=True)
        class NodeAppended(Event):
            board_id: str
            node_id: str
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Graph Events
# =============================================================================


@dataclass(slots=True)
class NodeAppended(Event):
    """Emitted after a node is inserted into a GraphModel.

    Attributes:
        board_id: Board the graph belongs to.
        node_id: Identifier of the new node.
        parent_id: Node the new node was attached to, if any.
    """

    board_id: str
    node_id: str
    parent_id: str | None = None


@dataclass(slots=True)
class EdgeAppended(Event):
    """Emitted after an edge is inserted into a GraphModel."""

    board_id: str
    edge_id: str
    source: str
    target: str


@dataclass(slots=True)
class BoardSaved(Event):
    """Emitted when a debounced board write reaches the Board Store."""

    board_id: str
    node_count: int
    edge_count: int


# =============================================================================
# Chat Turn Events
# =============================================================================


@dataclass(slots=True)
class TurnStarted(Event):
    """Emitted when a chat turn begins.

    Attributes:
        turn_id: Unique identifier for this turn (e.g. "turn-1a2b3c4d").
        session_token: Controller token captured at turn start.
        message: The user message that started the turn.
    """

    turn_id: str
    session_token: int
    message: str


@dataclass(slots=True)
class TurnStreamChunk(Event):
    """Emitted for every coalesced text delivery during a turn."""

    turn_id: str
    content: str


_QUIET_EVENT_TYPES.add(TurnStreamChunk)


@dataclass(slots=True)
class ToolCallDispatched(Event):
    """Emitted when an assembled tool call is handed to the tool callback."""

    turn_id: str
    tool_call_id: str
    tool_name: str
    arguments: str = ""


@dataclass(slots=True)
class ToolCallFinished(Event):
    """Emitted when a dispatched tool call settles.

    Attributes:
        turn_id: The turn that dispatched the call.
        tool_call_id: Identifier of the call.
        tool_name: Registered tool name.
        success: Whether the callback resolved without raising.
        result: Status string or error description.
        duration_ms: Wall time spent in the callback.
    """

    turn_id: str
    tool_call_id: str
    tool_name: str
    success: bool = True
    result: str = ""
    duration_ms: float = 0.0


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted when a turn reaches the Completed state."""

    turn_id: str
    response_text: str
    tool_call_count: int


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when a turn reaches the Failed state.

    Partial text is included so listeners can still render it.
    """

    turn_id: str
    error: str
    partial_text: str = ""


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are stored as weak references where possible (bound methods)
    so subscribers do not need to unsubscribe explicitly.

    Example::

        bus = EventBus()
        bus.subscribe(NodeAppended, lambda event: print(event.node_id))
        bus.publish(NodeAppended(board_id="b1", node_id="node_1"))

    Thread Safety:
        Not thread-safe. Publish from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Subscribing the same handler twice results in two invocations.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove a previously registered handler (first occurrence only)."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers run synchronously in registration order. A handler that
        raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of handlers for ``event_type`` (or all types)."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper holding either a weak (bound method) or strong handler reference."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Any) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "NodeAppended",
    "EdgeAppended",
    "BoardSaved",
    "TurnStarted",
    "TurnStreamChunk",
    "ToolCallDispatched",
    "ToolCallFinished",
    "TurnCompleted",
    "TurnFailed",
]
