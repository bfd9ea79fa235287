"""Node-creation tools offered to the model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

from ...canvas.node_factory import DEFAULT_LAYOUT, MAX_LAYOUT, MIN_LAYOUT, NodeCreationRequest
from ...canvas.positioner import Position

CREATE_KNOWLEDGE_NODE = "create_knowledge_node"
CREATE_CONCEPT_MAP = "create_concept_map"
CREATE_FLOWCHART = "create_flowchart"

LAYOUT_FLOWCHART = 3
LAYOUT_CONCEPT_MAP = 4

_TITLE = {"type": "string", "minLength": 1, "description": "Short title shown on the node"}
_DESCRIPTION = {"type": "string", "description": "Context or summary for the node's content"}
_PARENT = {
    "type": "string",
    "minLength": 1,
    "description": "Id of an existing node to attach the new node to",
}

KNOWLEDGE_NODE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": _TITLE,
        "description": _DESCRIPTION,
        "layout": {
            "type": "integer",
            "minimum": MIN_LAYOUT,
            "maximum": MAX_LAYOUT,
            "description": "Visual layout template for the node content",
        },
        "position": {
            "type": "object",
            "properties": {"x": {"type": "number"}, "y": {"type": "number"}},
            "required": ["x", "y"],
            "description": "Preferred canvas position",
        },
        "parentNodeId": _PARENT,
    },
    "required": ["title", "description"],
}

CONCEPT_MAP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"title": _TITLE, "description": _DESCRIPTION, "parentNodeId": _PARENT},
    "required": ["title", "description"],
}

FLOWCHART_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"title": _TITLE, "description": _DESCRIPTION, "parentNodeId": _PARENT},
    "required": ["title", "description"],
}

RequestBuilder = Callable[[Mapping[str, Any], str], NodeCreationRequest]


@dataclass(slots=True, frozen=True)
class NodeToolDefinition:
    """Static description of one node tool.

    ``label`` is the human wording used in status strings
    (``Created concept map: "..."``).
    """

    name: str
    label: str
    description: str
    parameters: Mapping[str, Any]
    build_request: RequestBuilder


def _parent(params: Mapping[str, Any]) -> str | None:
    value = params.get("parentNodeId")
    return str(value) if value else None


def knowledge_node_request(params: Mapping[str, Any], board_id: str) -> NodeCreationRequest:
    raw_position = params.get("position")
    return NodeCreationRequest(
        title=str(params["title"]),
        description=str(params.get("description", "")),
        board_id=board_id,
        layout=int(params.get("layout", DEFAULT_LAYOUT)),
        position=Position.from_mapping(raw_position) if isinstance(raw_position, Mapping) else None,
        parent_node_id=_parent(params),
    )


def concept_map_request(params: Mapping[str, Any], board_id: str) -> NodeCreationRequest:
    return NodeCreationRequest(
        title=str(params["title"]),
        description=str(params.get("description", "")),
        board_id=board_id,
        layout=LAYOUT_CONCEPT_MAP,
        parent_node_id=_parent(params),
    )


def flowchart_request(params: Mapping[str, Any], board_id: str) -> NodeCreationRequest:
    return NodeCreationRequest(
        title=str(params["title"]),
        description=str(params.get("description", "")),
        board_id=board_id,
        layout=LAYOUT_FLOWCHART,
        parent_node_id=_parent(params),
    )


NODE_TOOLS: tuple[NodeToolDefinition, ...] = (
    NodeToolDefinition(
        name=CREATE_KNOWLEDGE_NODE,
        label="knowledge node",
        description="Creates a knowledge node on the canvas about a specific topic.",
        parameters=KNOWLEDGE_NODE_SCHEMA,
        build_request=knowledge_node_request,
    ),
    NodeToolDefinition(
        name=CREATE_CONCEPT_MAP,
        label="concept map",
        description="Creates a concept map node that lays out related ideas around a topic.",
        parameters=CONCEPT_MAP_SCHEMA,
        build_request=concept_map_request,
    ),
    NodeToolDefinition(
        name=CREATE_FLOWCHART,
        label="flowchart",
        description="Creates a flowchart node describing the steps of a process.",
        parameters=FLOWCHART_SCHEMA,
        build_request=flowchart_request,
    ),
)


__all__ = [
    "CREATE_KNOWLEDGE_NODE",
    "CREATE_CONCEPT_MAP",
    "CREATE_FLOWCHART",
    "LAYOUT_FLOWCHART",
    "LAYOUT_CONCEPT_MAP",
    "NodeToolDefinition",
    "NODE_TOOLS",
    "knowledge_node_request",
    "concept_map_request",
    "flowchart_request",
]
