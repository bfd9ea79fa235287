"""Tests for mapping tool calls onto graph appends."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from notecanvas.ai.orchestration.model_types import SESSION_TOKEN, ToolCall
from notecanvas.ai.orchestration.tool_executor import ToolExecutor
from notecanvas.ai.tools.errors import ErrorCode, ToolArgumentError, UnknownToolError
from notecanvas.ai.tools.node_tools import CREATE_CONCEPT_MAP, CREATE_FLOWCHART, CREATE_KNOWLEDGE_NODE
from notecanvas.canvas.graph_model import GraphModel, GraphNode
from notecanvas.canvas.node_factory import NodeFactory
from notecanvas.canvas.positioner import GraphPositioner, Position


def _call(name: str, arguments: object, call_id: str = "call_1") -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall(id=call_id, name=name, arguments=raw)


class _CountingWriter:
    def __init__(self) -> None:
        self.scheduled = 0

    def schedule(self) -> None:
        self.scheduled += 1


class _CollidingFactory(NodeFactory):
    def new_node_id(self) -> str:
        return "root"


def _new_nodes(graph: GraphModel, *known: str) -> list[GraphNode]:
    return [node for node in graph.snapshot().nodes if node.id not in known]


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_tool_is_rejected(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    with pytest.raises(UnknownToolError) as excinfo:
        await executor.execute(_call("delete_board", {}))

    assert excinfo.value.tool_name == "delete_board"
    assert CREATE_FLOWCHART in excinfo.value.suggestion


@pytest.mark.asyncio
async def test_invalid_json_arguments_raise_tool_argument_error(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    with pytest.raises(ToolArgumentError) as excinfo:
        await executor.execute(_call(CREATE_KNOWLEDGE_NODE, "{invalid json"))

    assert excinfo.value.raw_arguments == "{invalid json"
    assert excinfo.value.error_code == ErrorCode.INVALID_ARGUMENTS
    assert rooted_graph.node_count == 1


@pytest.mark.asyncio
async def test_non_object_arguments_are_rejected(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    with pytest.raises(ToolArgumentError):
        await executor.execute(_call(CREATE_FLOWCHART, "[1, 2]"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "arguments",
    [
        {"title": "No description"},
        {"title": "", "description": "empty title"},
        {"title": "Layout", "description": "out of range", "layout": 99},
        {"title": "Pos", "description": "bad position", "position": {"x": "left"}},
    ],
)
async def test_schema_violations_are_reported(rooted_graph: GraphModel, arguments: dict) -> None:
    executor = ToolExecutor(rooted_graph)

    with pytest.raises(ToolArgumentError) as excinfo:
        await executor.execute(_call(CREATE_KNOWLEDGE_NODE, arguments))

    assert excinfo.value.error_code == ErrorCode.SCHEMA_VIOLATION
    assert excinfo.value.details["problems"]
    assert rooted_graph.node_count == 1


@pytest.mark.asyncio
async def test_missing_parent_is_rejected(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    with pytest.raises(ToolArgumentError) as excinfo:
        await executor.execute(
            _call(CREATE_FLOWCHART, {"title": "Deploy", "description": "steps", "parentNodeId": "ghost"})
        )

    assert excinfo.value.error_code == ErrorCode.PARENT_NOT_FOUND
    assert rooted_graph.node_count == 1


# ---------------------------------------------------------------------------
# Node creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("tool", "arguments", "expected_layout", "label"),
    [
        (CREATE_CONCEPT_MAP, {"title": "Recursion", "description": "ideas"}, 4, "concept map"),
        (CREATE_FLOWCHART, {"title": "Recursion", "description": "steps"}, 3, "flowchart"),
        (CREATE_KNOWLEDGE_NODE, {"title": "Recursion", "description": "facts"}, 1, "knowledge node"),
        (CREATE_KNOWLEDGE_NODE, {"title": "Recursion", "description": "facts", "layout": 7}, 7, "knowledge node"),
    ],
)
async def test_layout_follows_tool_identity(
    rooted_graph: GraphModel, tool: str, arguments: dict, expected_layout: int, label: str
) -> None:
    executor = ToolExecutor(rooted_graph)

    status = await executor.execute(_call(tool, arguments))

    assert status == f'Created {label}: "Recursion"'
    (node,) = _new_nodes(rooted_graph, "root")
    assert node.data["layout"] == expected_layout
    assert node.type == "draggableEditable"


@pytest.mark.asyncio
async def test_child_node_gets_an_edge_from_its_parent(
    rooted_graph: GraphModel, seeded_factory: NodeFactory, seeded_positioner: GraphPositioner
) -> None:
    executor = ToolExecutor(rooted_graph, factory=seeded_factory, positioner=seeded_positioner)

    await executor.execute(
        _call(CREATE_CONCEPT_MAP, {"title": "Base case", "description": "stop", "parentNodeId": "root"})
    )

    (node,) = _new_nodes(rooted_graph, "root")
    (edge,) = rooted_graph.snapshot().edges
    assert (edge.source, edge.target) == ("root", node.id)
    assert edge.id == f"edge_root_{node.id}"
    assert edge.style["stroke"] == node.data["myColor"]
    assert node.data["previousNode"] == "root"
    assert node.position == Position(200.0, 0.0)


@pytest.mark.asyncio
async def test_root_node_uses_requested_position() -> None:
    graph = GraphModel("empty")
    executor = ToolExecutor(graph)

    await executor.execute(
        _call(CREATE_KNOWLEDGE_NODE, {"title": "Start", "description": "x", "position": {"x": 10, "y": 20}})
    )

    (node,) = graph.snapshot().nodes
    assert node.position == Position(210.0, 20.0)
    assert graph.edge_count == 0


@pytest.mark.asyncio
async def test_root_node_without_position_sits_near_board_centroid() -> None:
    graph = GraphModel("empty")
    executor = ToolExecutor(graph)

    await executor.execute(_call(CREATE_FLOWCHART, {"title": "Start", "description": "x"}))

    (node,) = graph.snapshot().nodes
    assert node.position == Position(600.0, 300.0)


@pytest.mark.asyncio
async def test_null_parent_creates_a_root_node(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    status = await executor.execute(
        _call(CREATE_CONCEPT_MAP, {"title": "Loose idea", "description": "x", "parentNodeId": None})
    )

    assert status == 'Created concept map: "Loose idea"'
    (node,) = _new_nodes(rooted_graph, "root")
    assert node.data["previousNode"] is None
    assert rooted_graph.edge_count == 0


@pytest.mark.asyncio
async def test_null_layout_and_position_fall_back_to_defaults() -> None:
    graph = GraphModel("empty")
    executor = ToolExecutor(graph)

    await executor.execute(
        _call(CREATE_KNOWLEDGE_NODE, {"title": "Start", "description": "x", "layout": None, "position": None})
    )

    (node,) = graph.snapshot().nodes
    assert node.data["layout"] == 1
    assert node.position == Position(600.0, 300.0)


@pytest.mark.asyncio
async def test_successful_append_schedules_a_save(rooted_graph: GraphModel) -> None:
    writer = _CountingWriter()
    executor = ToolExecutor(rooted_graph, writer=writer)  # type: ignore[arg-type]

    await executor.execute(_call(CREATE_FLOWCHART, {"title": "A", "description": "a"}))
    await executor.execute(_call(CREATE_FLOWCHART, {"title": "B", "description": "b"}, call_id="call_2"))

    assert writer.scheduled == 2
    assert rooted_graph.node_count == 3


@pytest.mark.asyncio
async def test_graph_rejection_becomes_a_status_string(rooted_graph: GraphModel) -> None:
    writer = _CountingWriter()
    executor = ToolExecutor(rooted_graph, factory=_CollidingFactory(), writer=writer)  # type: ignore[arg-type]

    status = await executor.execute(_call(CREATE_KNOWLEDGE_NODE, {"title": "Dup", "description": "x"}))

    assert status.startswith("Failed to create knowledge node: Duplicate node id 'root'")
    assert rooted_graph.node_count == 1
    assert writer.scheduled == 0


@pytest.mark.asyncio
async def test_stale_session_discards_the_mutation(rooted_graph: GraphModel) -> None:
    session = SimpleNamespace(is_current=lambda token: token == 2)
    executor = ToolExecutor(rooted_graph, session=session)

    reset = SESSION_TOKEN.set(1)
    try:
        status = await executor.execute(_call(CREATE_FLOWCHART, {"title": "Late", "description": "x"}))
    finally:
        SESSION_TOKEN.reset(reset)

    assert status == 'Discarded stale tool call create_flowchart: "Late"'
    assert rooted_graph.node_count == 1


def test_tool_specs_cover_the_registry(rooted_graph: GraphModel) -> None:
    executor = ToolExecutor(rooted_graph)

    specs = executor.tool_specs()

    assert [spec["function"]["name"] for spec in specs] == [
        CREATE_KNOWLEDGE_NODE,
        CREATE_CONCEPT_MAP,
        CREATE_FLOWCHART,
    ]
    assert all(spec["type"] == "function" for spec in specs)
    assert specs[0]["function"]["parameters"]["required"] == ["title", "description"]
