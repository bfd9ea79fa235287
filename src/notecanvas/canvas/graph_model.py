"""In-memory live graph of a board's nodes and edges.

The model only grows: nodes and edges are appended, never edited or
removed. Each append is a single synchronous insertion, so appends from
concurrent tool calls interleave without read-modify-write races.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping

from ..ai.tools.errors import ErrorCode, ExecutionError
from ..events import EdgeAppended, EventBus, NodeAppended
from .positioner import Position

LOGGER = logging.getLogger(__name__)

NODE_TYPE_EDITABLE = "draggableEditable"


@dataclass(slots=True)
class GraphNode:
    """A canvas node in React Flow shape."""

    id: str
    position: Position
    type: str = NODE_TYPE_EDITABLE
    data: Dict[str, Any] = field(default_factory=dict)
    draggable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "position": self.position.to_dict(),
            "data": copy.deepcopy(self.data),
            "draggable": self.draggable,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "GraphNode":
        return cls(
            id=str(payload["id"]),
            position=Position.from_mapping(payload.get("position") or {"x": 0, "y": 0}),
            type=str(payload.get("type") or NODE_TYPE_EDITABLE),
            data=dict(payload.get("data") or {}),
            draggable=bool(payload.get("draggable", True)),
        )

    def copy(self) -> "GraphNode":
        return GraphNode(
            id=self.id,
            position=self.position,
            type=self.type,
            data=copy.deepcopy(self.data),
            draggable=self.draggable,
        )


@dataclass(slots=True)
class GraphEdge:
    """A directed edge between two live nodes."""

    id: str
    source: str
    target: str
    style: Dict[str, Any] = field(default_factory=dict)
    marker_end: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
        }
        if self.style:
            payload["style"] = dict(self.style)
        if self.marker_end:
            payload["markerEnd"] = dict(self.marker_end)
        return payload

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "GraphEdge":
        marker = payload.get("markerEnd") or payload.get("marker_end")
        return cls(
            id=str(payload["id"]),
            source=str(payload["source"]),
            target=str(payload["target"]),
            style=dict(payload.get("style") or {}),
            marker_end=dict(marker) if isinstance(marker, Mapping) else None,
        )

    def copy(self) -> "GraphEdge":
        return GraphEdge(
            id=self.id,
            source=self.source,
            target=self.target,
            style=dict(self.style),
            marker_end=dict(self.marker_end) if self.marker_end else None,
        )


@dataclass(slots=True, frozen=True)
class GraphSnapshot:
    """Point-in-time copy of a graph."""

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class GraphModel:
    """Append-only graph for one board.

    Events Emitted (when an event bus is supplied):
        - NodeAppended
        - EdgeAppended
    """

    def __init__(
        self,
        board_id: str,
        *,
        nodes: Iterable[GraphNode] = (),
        edges: Iterable[GraphEdge] = (),
        event_bus: EventBus | None = None,
    ) -> None:
        self.board_id = board_id
        self._bus = event_bus
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}
        for node in nodes:
            self._insert_node(node)
        for edge in edges:
            self._check_edge(edge)
            self._edges[edge.id] = edge.copy()

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> GraphNode | None:
        node = self._nodes.get(node_id)
        return node.copy() if node is not None else None

    def append(self, item: GraphNode | GraphEdge) -> None:
        """Insert a node or an edge.

        Raises:
            ExecutionError: On a duplicate id or an edge to an unknown node.
        """
        if isinstance(item, GraphNode):
            self._insert_node(item)
            self._publish_node(item, parent_id=None)
        elif isinstance(item, GraphEdge):
            self._check_edge(item)
            self._edges[item.id] = item.copy()
            self._publish_edge(item)
        else:
            raise TypeError(f"Cannot append {type(item).__name__} to a graph")

    def append_many(self, node: GraphNode, edge: GraphEdge | None = None) -> None:
        """Insert a node and the edge that attaches it, all or nothing."""

        if node.id in self._nodes:
            raise self._duplicate("node", node.id)
        if edge is not None:
            if edge.id in self._edges:
                raise self._duplicate("edge", edge.id)
            known = set(self._nodes) | {node.id}
            for endpoint in (edge.source, edge.target):
                if endpoint not in known:
                    raise self._dangling(edge, endpoint)
        self._nodes[node.id] = node.copy()
        if edge is not None:
            self._edges[edge.id] = edge.copy()
        parent_id = None
        if edge is not None:
            parent_id = edge.source if edge.target == node.id else edge.target
        self._publish_node(node, parent_id=parent_id)
        if edge is not None:
            self._publish_edge(edge)

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            nodes=tuple(node.copy() for node in self._nodes.values()),
            edges=tuple(edge.copy() for edge in self._edges.values()),
        )

    def _insert_node(self, node: GraphNode) -> None:
        if node.id in self._nodes:
            raise self._duplicate("node", node.id)
        self._nodes[node.id] = node.copy()

    def _check_edge(self, edge: GraphEdge) -> None:
        if edge.id in self._edges:
            raise self._duplicate("edge", edge.id)
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._nodes:
                raise self._dangling(edge, endpoint)

    def _duplicate(self, kind: str, item_id: str) -> ExecutionError:
        return ExecutionError(
            error_code=ErrorCode.GRAPH_MUTATION_FAILED,
            message=f"Duplicate {kind} id '{item_id}' on board {self.board_id}",
            details={"board_id": self.board_id, "id": item_id},
        )

    def _dangling(self, edge: GraphEdge, endpoint: str) -> ExecutionError:
        return ExecutionError(
            error_code=ErrorCode.GRAPH_MUTATION_FAILED,
            message=f"Edge '{edge.id}' references unknown node '{endpoint}'",
            details={"board_id": self.board_id, "edge_id": edge.id, "node_id": endpoint},
        )

    def _publish_node(self, node: GraphNode, *, parent_id: str | None) -> None:
        LOGGER.debug("Appended node %s to board %s", node.id, self.board_id)
        if self._bus is not None:
            self._bus.publish(NodeAppended(board_id=self.board_id, node_id=node.id, parent_id=parent_id))

    def _publish_edge(self, edge: GraphEdge) -> None:
        if self._bus is not None:
            self._bus.publish(
                EdgeAppended(board_id=self.board_id, edge_id=edge.id, source=edge.source, target=edge.target)
            )


__all__ = [
    "NODE_TYPE_EDITABLE",
    "GraphNode",
    "GraphEdge",
    "GraphSnapshot",
    "GraphModel",
]
