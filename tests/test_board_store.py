"""Tests for board persistence and the debounced writer."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from notecanvas.ai.tools.errors import ErrorCode, ExecutionError
from notecanvas.canvas.board_store import (
    CachedBoardStore,
    DebouncedBoardWriter,
    InMemoryBoardStore,
    JsonFileBoardStore,
    clamp_debounce,
    load_graph,
)
from notecanvas.canvas.graph_model import GraphEdge, GraphModel, GraphNode
from notecanvas.canvas.positioner import Position
from notecanvas.events import BoardSaved, EventBus
from notecanvas.services.cache import TTLCache


def _node(node_id: str, x: float = 0.0) -> GraphNode:
    return GraphNode(id=node_id, position=Position(x, 0.0), data={"title": node_id, "layout": 1})


class _FailingStore(InMemoryBoardStore):
    async def save_nodes(self, board_id, nodes) -> None:
        raise OSError("disk full")


class _FlakyStore(InMemoryBoardStore):
    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def save_nodes(self, board_id, nodes) -> None:
        self.attempts += 1
        if self.attempts == 1:
            raise OSError("disk busy")
        await super().save_nodes(board_id, nodes)


class _CountingStore(InMemoryBoardStore):
    def __init__(self) -> None:
        super().__init__()
        self.node_loads = 0

    async def load_nodes(self, board_id):
        self.node_loads += 1
        await asyncio.sleep(0)
        return await super().load_nodes(board_id)


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_json_store_round_trips_a_board(tmp_path: Path) -> None:
    store = JsonFileBoardStore(tmp_path / "boards")
    nodes = [_node("a"), _node("b", 200.0)]
    edges = [GraphEdge(id="edge_a_b", source="a", target="b", style={"stroke": "#fff", "strokeWidth": 3})]

    await store.save_nodes("board-1", nodes)
    await store.save_edges("board-1", edges)

    assert await store.load_nodes("board-1") == nodes
    assert await store.load_edges("board-1") == edges
    document = json.loads(store.path_for("board-1").read_text(encoding="utf-8"))
    assert document["board_id"] == "board-1"
    assert "updated_at" in document
    assert not store.path_for("board-1").with_suffix(".tmp").exists()


@pytest.mark.asyncio
async def test_json_store_missing_board_is_empty(tmp_path: Path) -> None:
    store = JsonFileBoardStore(tmp_path)

    assert await store.load_nodes("nothing") == []
    assert await store.load_edges("nothing") == []


def test_board_ids_are_sanitized_into_file_names(tmp_path: Path) -> None:
    store = JsonFileBoardStore(tmp_path)

    assert store.path_for("../evil").name == "___evil.json"
    assert store.path_for("my-board_2").name == "my-board_2.json"
    assert store.path_for("").name == "board.json"
    assert store.path_for("../evil").parent == tmp_path


@pytest.mark.asyncio
async def test_corrupt_board_file_raises_persistence_error(tmp_path: Path) -> None:
    store = JsonFileBoardStore(tmp_path)
    store.path_for("broken").write_text("{not json", encoding="utf-8")

    with pytest.raises(ExecutionError) as excinfo:
        await store.load_nodes("broken")

    assert excinfo.value.error_code == ErrorCode.PERSISTENCE_FAILED


@pytest.mark.asyncio
async def test_load_graph_drops_edges_to_missing_nodes() -> None:
    store = InMemoryBoardStore()
    await store.save_nodes("b", [_node("a"), _node("b", 200.0)])
    await store.save_edges(
        "b",
        [
            GraphEdge(id="edge_a_b", source="a", target="b"),
            GraphEdge(id="edge_a_gone", source="a", target="gone"),
        ],
    )

    graph = await load_graph(store, "b")

    assert graph.board_id == "b"
    assert graph.node_count == 2
    assert [edge.id for edge in graph.snapshot().edges] == ["edge_a_b"]


# ---------------------------------------------------------------------------
# Debounced writer
# ---------------------------------------------------------------------------


def test_debounce_window_is_clamped() -> None:
    assert clamp_debounce(0.1) == 0.5
    assert clamp_debounce(5) == 1.0
    assert clamp_debounce(0.75) == 0.75


@pytest.mark.asyncio
async def test_rapid_appends_produce_a_single_save(rooted_graph: GraphModel, event_bus: EventBus) -> None:
    saved: list[BoardSaved] = []
    event_bus.subscribe(BoardSaved, saved.append)
    store = InMemoryBoardStore()
    writer = DebouncedBoardWriter(rooted_graph, store, delay=0.5, event_bus=event_bus)

    for index in range(5):
        rooted_graph.append(_node(f"n{index}", 200.0 * (index + 1)))
        writer.schedule()
    assert writer.pending

    await asyncio.sleep(0.6)
    await writer.aclose()

    assert store.save_calls == 1
    assert writer.saves == 1
    assert not writer.pending
    assert len(await store.load_nodes("board-1")) == 6
    assert saved == [BoardSaved(board_id="board-1", node_count=6, edge_count=0)]


@pytest.mark.asyncio
async def test_flush_writes_immediately_and_cancels_the_timer(rooted_graph: GraphModel) -> None:
    store = InMemoryBoardStore()
    writer = DebouncedBoardWriter(rooted_graph, store)
    writer.schedule()

    await writer.flush()
    await writer.flush()

    assert store.save_calls == 1
    assert writer.delay == 0.75


@pytest.mark.asyncio
async def test_nothing_to_save_means_no_write(rooted_graph: GraphModel) -> None:
    store = InMemoryBoardStore()
    writer = DebouncedBoardWriter(rooted_graph, store)

    await writer.aclose()

    assert store.save_calls == 0


@pytest.mark.asyncio
async def test_failed_save_is_counted_not_raised(rooted_graph: GraphModel) -> None:
    writer = DebouncedBoardWriter(rooted_graph, _FailingStore())
    writer.schedule()

    await writer.flush()

    assert writer.failures == 1
    assert writer.saves == 0


@pytest.mark.asyncio
async def test_failed_save_is_written_again_on_close(rooted_graph: GraphModel) -> None:
    store = _FlakyStore()
    writer = DebouncedBoardWriter(rooted_graph, store)
    writer.schedule()

    await writer.flush()
    assert writer.failures == 1
    assert writer.pending

    await writer.aclose()

    assert writer.saves == 1
    assert not writer.pending
    assert [node.id for node in await store.load_nodes("board-1")] == ["root"]


# ---------------------------------------------------------------------------
# Cached store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cached_store_shares_concurrent_reads() -> None:
    inner = _CountingStore()
    await inner.save_nodes("b", [_node("a")])
    store = CachedBoardStore(inner, TTLCache(ttl=60))

    first, second = await asyncio.gather(store.load_nodes("b"), store.load_nodes("b"))
    third = await store.load_nodes("b")

    assert first == second == third == [_node("a")]
    assert inner.node_loads == 1
    assert store.cache.stats.hits == 1


@pytest.mark.asyncio
async def test_cached_store_refreshes_on_save() -> None:
    inner = _CountingStore()
    store = CachedBoardStore(inner)
    await store.load_nodes("b")

    await store.save_nodes("b", [_node("fresh")])

    assert [node.id for node in await store.load_nodes("b")] == ["fresh"]
    assert inner.node_loads == 1
