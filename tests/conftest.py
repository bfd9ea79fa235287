"""Shared pytest fixtures."""

from __future__ import annotations

import random

import pytest

from notecanvas.canvas.graph_model import GraphModel, GraphNode
from notecanvas.canvas.node_factory import NodeFactory
from notecanvas.canvas.positioner import GraphPositioner, Position
from notecanvas.events import EventBus


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def rooted_graph(event_bus: EventBus) -> GraphModel:
    root = GraphNode(id="root", position=Position(0.0, 0.0), data={"title": "Root"})
    return GraphModel("board-1", nodes=[root], event_bus=event_bus)


@pytest.fixture
def seeded_factory() -> NodeFactory:
    return NodeFactory(rng=random.Random(7), clock=lambda: 1_700_000_000.0)


@pytest.fixture
def seeded_positioner() -> GraphPositioner:
    return GraphPositioner(rng=random.Random(11))


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in [
        "NOTECANVAS_API_KEY",
        "NOTECANVAS_BASE_URL",
        "NOTECANVAS_MODEL",
        "NOTECANVAS_ENDPOINT",
        "NOTECANVAS_TRANSPORT",
        "NOTECANVAS_STREAMING",
        "NOTECANVAS_DEBUG_LOGGING",
        "NOTECANVAS_REQUEST_TIMEOUT",
        "NOTECANVAS_SAVE_DEBOUNCE",
    ]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NOTECANVAS_LOG_DIR", str(tmp_path / "logs"))
