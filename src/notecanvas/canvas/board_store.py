"""Board persistence: store implementations and the debounced writer."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence, runtime_checkable

from ..ai.tools.errors import ErrorCode, ExecutionError
from ..events import BoardSaved, EventBus
from ..services.cache import TTLCache
from .graph_model import GraphEdge, GraphModel, GraphNode

LOGGER = logging.getLogger(__name__)

DEFAULT_SAVE_DEBOUNCE = 0.75
MIN_SAVE_DEBOUNCE = 0.5
MAX_SAVE_DEBOUNCE = 1.0


@runtime_checkable
class BoardStore(Protocol):
    """Persistence collaborator for a board's nodes and edges."""

    async def save_nodes(self, board_id: str, nodes: Sequence[GraphNode]) -> None:
        ...

    async def save_edges(self, board_id: str, edges: Sequence[GraphEdge]) -> None:
        ...

    async def load_nodes(self, board_id: str) -> List[GraphNode]:
        ...

    async def load_edges(self, board_id: str) -> List[GraphEdge]:
        ...


class InMemoryBoardStore:
    """Board store kept in process memory."""

    def __init__(self) -> None:
        self._nodes: Dict[str, List[GraphNode]] = {}
        self._edges: Dict[str, List[GraphEdge]] = {}
        self.save_calls = 0

    async def save_nodes(self, board_id: str, nodes: Sequence[GraphNode]) -> None:
        self.save_calls += 1
        self._nodes[board_id] = [node.copy() for node in nodes]

    async def save_edges(self, board_id: str, edges: Sequence[GraphEdge]) -> None:
        self._edges[board_id] = [edge.copy() for edge in edges]

    async def load_nodes(self, board_id: str) -> List[GraphNode]:
        return [node.copy() for node in self._nodes.get(board_id, ())]

    async def load_edges(self, board_id: str) -> List[GraphEdge]:
        return [edge.copy() for edge in self._edges.get(board_id, ())]


class JsonFileBoardStore:
    """One JSON document per board under ``directory``.

    Writes go to a ``.tmp`` sibling that replaces the board file, so a
    crash never leaves a half-written board.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, board_id: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in board_id) or "board"
        return self._directory / f"{safe}.json"

    async def save_nodes(self, board_id: str, nodes: Sequence[GraphNode]) -> None:
        payload = [node.to_dict() for node in nodes]
        await asyncio.to_thread(self._update, board_id, "nodes", payload)

    async def save_edges(self, board_id: str, edges: Sequence[GraphEdge]) -> None:
        payload = [edge.to_dict() for edge in edges]
        await asyncio.to_thread(self._update, board_id, "edges", payload)

    async def load_nodes(self, board_id: str) -> List[GraphNode]:
        document = await asyncio.to_thread(self._read, board_id)
        return [GraphNode.from_mapping(item) for item in document.get("nodes", ())]

    async def load_edges(self, board_id: str) -> List[GraphEdge]:
        document = await asyncio.to_thread(self._read, board_id)
        return [GraphEdge.from_mapping(item) for item in document.get("edges", ())]

    def _read(self, board_id: str) -> Dict[str, Any]:
        path = self.path_for(board_id)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ExecutionError(
                error_code=ErrorCode.PERSISTENCE_FAILED,
                message=f"Unable to read board file {path}: {exc}",
                details={"board_id": board_id, "path": str(path)},
            ) from exc
        return data if isinstance(data, dict) else {}

    def _update(self, board_id: str, key: str, payload: List[Dict[str, Any]]) -> None:
        path = self.path_for(board_id)
        document = self._read(board_id)
        document["board_id"] = board_id
        document[key] = payload
        document["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise ExecutionError(
                error_code=ErrorCode.PERSISTENCE_FAILED,
                message=f"Unable to write board file {path}: {exc}",
                details={"board_id": board_id, "path": str(path)},
            ) from exc


class CachedBoardStore:
    """Wraps another store with a :class:`TTLCache` for reads."""

    _NODES = "nodes"
    _EDGES = "edges"

    def __init__(self, inner: BoardStore, cache: TTLCache | None = None) -> None:
        self._inner = inner
        self._cache = cache or TTLCache()

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def save_nodes(self, board_id: str, nodes: Sequence[GraphNode]) -> None:
        await self._inner.save_nodes(board_id, nodes)
        self._cache.set(self._NODES, board_id, [node.copy() for node in nodes])

    async def save_edges(self, board_id: str, edges: Sequence[GraphEdge]) -> None:
        await self._inner.save_edges(board_id, edges)
        self._cache.set(self._EDGES, board_id, [edge.copy() for edge in edges])

    async def load_nodes(self, board_id: str) -> List[GraphNode]:
        nodes = await self._cache.get_or_fetch(self._NODES, board_id, lambda: self._inner.load_nodes(board_id))
        return [node.copy() for node in nodes]

    async def load_edges(self, board_id: str) -> List[GraphEdge]:
        edges = await self._cache.get_or_fetch(self._EDGES, board_id, lambda: self._inner.load_edges(board_id))
        return [edge.copy() for edge in edges]


async def load_graph(store: BoardStore, board_id: str, *, event_bus: EventBus | None = None) -> GraphModel:
    """Build a :class:`GraphModel` from whatever ``store`` holds for ``board_id``."""

    nodes = await store.load_nodes(board_id)
    edges = await store.load_edges(board_id)
    known = {node.id for node in nodes}
    live_edges = [edge for edge in edges if edge.source in known and edge.target in known]
    if len(live_edges) != len(edges):
        LOGGER.warning("Board %s: ignored %d edge(s) to missing nodes", board_id, len(edges) - len(live_edges))
    return GraphModel(board_id, nodes=nodes, edges=live_edges, event_bus=event_bus)


def clamp_debounce(seconds: float) -> float:
    return min(MAX_SAVE_DEBOUNCE, max(MIN_SAVE_DEBOUNCE, float(seconds)))


class DebouncedBoardWriter:
    """Coalesces graph appends into one board write per quiet window.

    Events Emitted (when an event bus is supplied):
        - BoardSaved: after each successful write
    """

    def __init__(
        self,
        graph: GraphModel,
        store: BoardStore,
        *,
        delay: float = DEFAULT_SAVE_DEBOUNCE,
        event_bus: EventBus | None = None,
    ) -> None:
        self._graph = graph
        self._store = store
        self._delay = clamp_debounce(delay)
        self._bus = event_bus
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._dirty = False
        self.saves = 0
        self.failures = 0

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        return self._dirty

    def schedule(self) -> None:
        """Mark the board dirty and (re)start the quiet-window timer."""

        self._dirty = True
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._on_timer)

    async def flush(self) -> None:
        """Write the current graph now if anything changed."""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            snapshot = self._graph.snapshot()
            board_id = self._graph.board_id
            try:
                await self._store.save_nodes(board_id, snapshot.nodes)
                await self._store.save_edges(board_id, snapshot.edges)
            except Exception as exc:
                self.failures += 1
                self._dirty = True
                LOGGER.warning("Saving board %s failed: %s", board_id, exc, exc_info=True)
                return
            self.saves += 1
            LOGGER.debug(
                "Saved board %s (%d nodes, %d edges)",
                board_id,
                len(snapshot.nodes),
                len(snapshot.edges),
            )
            if self._bus is not None:
                self._bus.publish(
                    BoardSaved(board_id=board_id, node_count=len(snapshot.nodes), edge_count=len(snapshot.edges))
                )

    async def aclose(self) -> None:
        """Flush pending writes and wait for any write already running."""

        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        await self.flush()

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())


__all__ = [
    "BoardStore",
    "InMemoryBoardStore",
    "JsonFileBoardStore",
    "CachedBoardStore",
    "DebouncedBoardWriter",
    "DEFAULT_SAVE_DEBOUNCE",
    "clamp_debounce",
    "load_graph",
]
