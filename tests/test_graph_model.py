"""Tests for the append-only graph model and node construction."""

from __future__ import annotations

import random
import re

import pytest

from notecanvas.ai.tools.errors import ErrorCode, ExecutionError
from notecanvas.canvas.graph_model import NODE_TYPE_EDITABLE, GraphEdge, GraphModel, GraphNode
from notecanvas.canvas.node_factory import (
    NODE_COLOR_PALETTE,
    NodeCreationRequest,
    NodeFactory,
    edge_id_for,
)
from notecanvas.canvas.positioner import Position
from notecanvas.events import EdgeAppended, EventBus, NodeAppended


def _node(node_id: str, x: float = 0.0, y: float = 0.0) -> GraphNode:
    return GraphNode(id=node_id, position=Position(x, y), data={"title": node_id})


# ---------------------------------------------------------------------------
# GraphModel
# ---------------------------------------------------------------------------


def test_append_node_and_edge_publishes_events(event_bus: EventBus) -> None:
    seen: list[object] = []
    event_bus.subscribe(NodeAppended, seen.append)
    event_bus.subscribe(EdgeAppended, seen.append)
    graph = GraphModel("board-1", event_bus=event_bus)

    graph.append(_node("a"))
    graph.append(_node("b", 200.0))
    graph.append(GraphEdge(id="edge_a_b", source="a", target="b"))

    assert graph.node_count == 2
    assert graph.edge_count == 1
    assert "a" in graph
    assert [type(event).__name__ for event in seen] == ["NodeAppended", "NodeAppended", "EdgeAppended"]


def test_duplicate_ids_are_rejected(rooted_graph: GraphModel) -> None:
    with pytest.raises(ExecutionError) as excinfo:
        rooted_graph.append(_node("root"))

    assert excinfo.value.error_code == ErrorCode.GRAPH_MUTATION_FAILED
    assert "Duplicate node id" in excinfo.value.message


def test_dangling_edge_is_rejected(rooted_graph: GraphModel) -> None:
    with pytest.raises(ExecutionError):
        rooted_graph.append(GraphEdge(id="e1", source="root", target="ghost"))

    assert rooted_graph.edge_count == 0


def test_append_many_is_all_or_nothing(rooted_graph: GraphModel) -> None:
    bad_edge = GraphEdge(id="e1", source="ghost", target="child")

    with pytest.raises(ExecutionError):
        rooted_graph.append_many(_node("child"), bad_edge)

    assert "child" not in rooted_graph
    assert rooted_graph.node_count == 1


def test_append_many_reports_parent(rooted_graph: GraphModel, event_bus: EventBus) -> None:
    seen: list[NodeAppended] = []
    event_bus.subscribe(NodeAppended, seen.append)

    rooted_graph.append_many(_node("child", 200.0), GraphEdge(id="edge_root_child", source="root", target="child"))

    assert seen == [NodeAppended(board_id="board-1", node_id="child", parent_id="root")]
    assert rooted_graph.edge_count == 1


def test_snapshot_is_a_copy(rooted_graph: GraphModel) -> None:
    snapshot = rooted_graph.snapshot()
    snapshot.nodes[0].data["title"] = "mutated"

    assert rooted_graph.get_node("root").data["title"] == "Root"
    assert snapshot.node_ids() == {"root"}
    assert snapshot.get_node("missing") is None


def test_node_and_edge_dict_round_trip() -> None:
    node = _node("n1", 5.0, 6.0)
    edge = GraphEdge(id="e", source="a", target="b", style={"stroke": "#fff"}, marker_end={"type": "arrowclosed"})

    assert GraphNode.from_mapping(node.to_dict()) == node
    assert edge.to_dict()["markerEnd"] == {"type": "arrowclosed"}
    assert GraphEdge.from_mapping(edge.to_dict()) == edge


# ---------------------------------------------------------------------------
# NodeFactory
# ---------------------------------------------------------------------------


def test_node_ids_use_millis_and_base36_suffix(seeded_factory: NodeFactory) -> None:
    node_id = seeded_factory.new_node_id()

    assert re.fullmatch(r"node_1700000000000_[0-9a-z]{9}", node_id)
    assert seeded_factory.new_node_id() != node_id


def test_build_node_fills_editable_node_data(seeded_factory: NodeFactory) -> None:
    request = NodeCreationRequest(title="Recursion", description="Self reference", board_id="b", layout=4)

    node = seeded_factory.build_node(request, Position(1.0, 2.0), color="#FF6B6B", parent_id="root")

    assert node.type == NODE_TYPE_EDITABLE
    assert node.draggable is True
    assert node.position == Position(1.0, 2.0)
    assert node.data == {
        "label": "Recursion",
        "title": "Recursion",
        "summary": "Self reference",
        "full_text": "Self reference",
        "layout": 4,
        "myColor": "#FF6B6B",
        "previousNode": "root",
        "suggestions": [],
        "tokenColors": {},
    }


def test_build_node_defaults_layout_and_picks_palette_color() -> None:
    factory = NodeFactory(rng=random.Random(3))
    request = NodeCreationRequest(title="T", description="D", board_id="b")

    node = factory.build_node(request, Position(0.0, 0.0))

    assert node.data["layout"] == 1
    assert node.data["myColor"] in NODE_COLOR_PALETTE
    assert node.data["previousNode"] is None


def test_build_edge_styles_with_node_color() -> None:
    edge = NodeFactory.build_edge("root", "child", "#45B7D1")

    assert edge.id == edge_id_for("root", "child") == "edge_root_child"
    assert edge.style == {"stroke": "#45B7D1", "strokeWidth": 3}
    assert edge.marker_end == {"type": "arrowclosed", "color": "#45B7D1"}
