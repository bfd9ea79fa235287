"""Executes node-creation tool calls against a live graph."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Protocol

from ...canvas.board_store import DebouncedBoardWriter
from ...canvas.graph_model import GraphModel
from ...canvas.node_factory import NodeCreationRequest, NodeFactory
from ...canvas.positioner import GraphPositioner, Position, centroid
from ..tools.errors import ErrorCode, ExecutionError, ToolArgumentError
from ..tools.node_tools import NODE_TOOLS, NodeToolDefinition
from ..tools.registry import ToolHandler, ToolRegistration, ToolRegistry
from .model_types import SESSION_TOKEN, ToolCall

LOGGER = logging.getLogger(__name__)


class SessionTokenSource(Protocol):
    def is_current(self, token: int | None) -> bool:
        ...


class ToolExecutor:
    """Maps tool calls onto graph appends.

    ``execute`` raises for calls that are wrong in themselves (unknown
    tool, unparsable or invalid arguments, missing parent) and returns a
    status string otherwise, including when the graph or store rejects the
    mutation.
    """

    def __init__(
        self,
        graph: GraphModel,
        *,
        positioner: GraphPositioner | None = None,
        factory: NodeFactory | None = None,
        writer: DebouncedBoardWriter | None = None,
        session: SessionTokenSource | None = None,
    ) -> None:
        self._graph = graph
        self._positioner = positioner or GraphPositioner()
        self._factory = factory or NodeFactory()
        self._writer = writer
        self._session = session
        self._registry = ToolRegistry(
            [
                ToolRegistration(
                    name=definition.name,
                    description=definition.description,
                    parameters=definition.parameters,
                    handler=self._handler_for(definition),
                )
                for definition in NODE_TOOLS
            ]
        )

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def graph(self) -> GraphModel:
        return self._graph

    def bind_session(self, session: SessionTokenSource | None) -> None:
        self._session = session

    def tool_specs(self) -> list[dict[str, Any]]:
        return self._registry.as_openai_tools()

    async def execute(self, tool_call: ToolCall) -> str:
        """Run one tool call and return a human-readable status.

        Raises:
            UnknownToolError: For names outside the registry.
            ToolArgumentError: For invalid JSON, schema violations or a
                ``parentNodeId`` that is not on the board.
        """
        registration = self._registry.get(tool_call.name)
        params = self._parse_arguments(tool_call)
        self._registry.validate(tool_call.name, params)
        LOGGER.debug("Executing tool call %s (%s)", tool_call.id, tool_call.name)
        return await registration.handler(params)

    @staticmethod
    def _parse_arguments(tool_call: ToolCall) -> Mapping[str, Any]:
        raw = tool_call.arguments or "{}"
        try:
            params = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(
                message=f"Invalid tool arguments: {raw}",
                details={"tool": tool_call.name, "error": exc.msg, "position": exc.pos},
                raw_arguments=raw,
            ) from exc
        if not isinstance(params, dict):
            raise ToolArgumentError(
                message=f"Tool arguments must be a JSON object, got {type(params).__name__}",
                details={"tool": tool_call.name},
                raw_arguments=raw,
            )
        # Models send null for optional fields they leave unset.
        return {key: value for key, value in params.items() if value is not None}

    def _handler_for(self, definition: NodeToolDefinition) -> ToolHandler:
        async def handler(params: Mapping[str, Any]) -> str:
            request = definition.build_request(params, self._graph.board_id)
            return self._create_node(definition, request)

        handler.__name__ = f"handle_{definition.name}"
        return handler

    def _create_node(self, definition: NodeToolDefinition, request: NodeCreationRequest) -> str:
        snapshot = self._graph.snapshot()
        parent = None
        if request.parent_node_id is not None:
            parent = snapshot.get_node(request.parent_node_id)
            if parent is None:
                raise ToolArgumentError(
                    error_code=ErrorCode.PARENT_NOT_FOUND,
                    message=f"Parent node '{request.parent_node_id}' does not exist on board {request.board_id}",
                    details={"parentNodeId": request.parent_node_id, "board_id": request.board_id},
                    suggestion="Omit parentNodeId to create a root node",
                )

        anchor: Position
        if parent is not None:
            anchor = parent.position
        elif request.position is not None:
            anchor = request.position
        else:
            anchor = centroid(snapshot.nodes)
        position = self._positioner.place(anchor, snapshot.nodes)

        color = self._factory.pick_color()
        node = self._factory.build_node(request, position, color=color, parent_id=parent.id if parent else None)
        edge = self._factory.build_edge(parent.id, node.id, color) if parent is not None else None

        token = SESSION_TOKEN.get()
        if self._session is not None and token is not None and not self._session.is_current(token):
            LOGGER.debug("Discarding %s from stale session %s", definition.name, token)
            return f'Discarded stale tool call {definition.name}: "{request.title}"'

        try:
            self._graph.append_many(node, edge)
        except ExecutionError as exc:
            LOGGER.warning("Creating %s failed: %s", definition.label, exc.message)
            return f"Failed to create {definition.label}: {exc.message}"

        if self._writer is not None:
            self._writer.schedule()
        return f'Created {definition.label}: "{request.title}"'


__all__ = ["ToolExecutor", "SessionTokenSource"]
