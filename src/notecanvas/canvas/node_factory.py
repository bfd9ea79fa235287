"""Construction of new canvas nodes and the edges that attach them."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from .graph_model import NODE_TYPE_EDITABLE, GraphEdge, GraphNode
from .positioner import Position

NODE_COLOR_PALETTE: tuple[str, ...] = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#96CEB4",
    "#FFEAA7",
    "#DDA0DD",
    "#98D8C8",
    "#F7DC6F",
    "#BB8FCE",
    "#85C1E9",
)
DEFAULT_LAYOUT = 1
MIN_LAYOUT = 1
MAX_LAYOUT = 18
EDGE_STROKE_WIDTH = 3

_BASE36 = string.digits + string.ascii_lowercase


@dataclass(slots=True)
class NodeCreationRequest:
    """What a tool call asks to put on the board.

    ``parent_node_id``, when set, must name a node present in the graph at
    dispatch time. Without it the node becomes a root.
    """

    title: str
    description: str
    board_id: str
    layout: int | None = None
    position: Position | None = None
    parent_node_id: str | None = None


def edge_id_for(source: str, target: str) -> str:
    return f"edge_{source}_{target}"


class NodeFactory:
    """Builds :class:`GraphNode` / :class:`GraphEdge` values with fresh ids and colours."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rng = rng or random.Random()
        self._clock = clock

    def new_node_id(self) -> str:
        millis = int(self._clock() * 1000)
        suffix = "".join(self._rng.choice(_BASE36) for _ in range(9))
        return f"node_{millis}_{suffix}"

    def pick_color(self) -> str:
        return self._rng.choice(NODE_COLOR_PALETTE)

    def build_node(
        self,
        request: NodeCreationRequest,
        position: Position,
        *,
        color: str | None = None,
        parent_id: str | None = None,
    ) -> GraphNode:
        data: Dict[str, Any] = {
            "label": request.title,
            "title": request.title,
            "summary": request.description,
            "full_text": request.description,
            "layout": request.layout if request.layout is not None else DEFAULT_LAYOUT,
            "myColor": color or self.pick_color(),
            "previousNode": parent_id,
            "suggestions": [],
            "tokenColors": {},
        }
        return GraphNode(
            id=self.new_node_id(),
            position=position,
            type=NODE_TYPE_EDITABLE,
            data=data,
            draggable=True,
        )

    @staticmethod
    def build_edge(source: str, target: str, color: str) -> GraphEdge:
        return GraphEdge(
            id=edge_id_for(source, target),
            source=source,
            target=target,
            style={"stroke": color, "strokeWidth": EDGE_STROKE_WIDTH},
            marker_end={"type": "arrowclosed", "color": color},
        )


__all__ = [
    "NODE_COLOR_PALETTE",
    "DEFAULT_LAYOUT",
    "MIN_LAYOUT",
    "MAX_LAYOUT",
    "NodeCreationRequest",
    "NodeFactory",
    "edge_id_for",
]
