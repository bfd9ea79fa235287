"""Rate-limited delivery of streamed text deltas."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

LOGGER = logging.getLogger(__name__)

DEFAULT_FRAME_INTERVAL = 1.0 / 60.0

ChunkCallback = Callable[[str], Awaitable[None] | None]


class ChunkCoalescer:
    """Buffers text deltas and hands them to ``callback`` once per frame tick.

    Only the delivery cadence changes: the concatenation of every string
    passed to ``callback`` equals the concatenation of every ``push``.
    Async callbacks are awaited in delivery order.
    """

    def __init__(
        self,
        callback: ChunkCallback | None,
        *,
        frame_interval: float = DEFAULT_FRAME_INTERVAL,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._callback = callback
        self._interval = max(0.0, float(frame_interval))
        self._loop = loop
        self._buffer: list[str] = []
        self._timer: asyncio.TimerHandle | None = None
        self._last_flush: float | None = None
        self._tail: asyncio.Task[None] | None = None
        self._closed = False
        self.deliveries = 0

    @property
    def pending_text(self) -> str:
        return "".join(self._buffer)

    def push(self, text: str) -> None:
        if not text or self._callback is None or self._closed:
            return
        self._buffer.append(text)
        if self._timer is not None:
            return
        loop = self._resolve_loop()
        now = loop.time()
        delay = 0.0 if self._last_flush is None else max(0.0, self._last_flush + self._interval - now)
        self._timer = loop.call_later(delay, self._on_timer)

    def flush(self) -> None:
        """Deliver anything buffered right now."""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        self._last_flush = self._resolve_loop().time()
        self._deliver(text)

    async def drain(self) -> None:
        """Flush buffered text and wait for every async delivery to finish."""

        self.flush()
        tail = self._tail
        if tail is not None:
            await asyncio.gather(tail, return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        self._closed = True

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _deliver(self, text: str) -> None:
        callback = self._callback
        if callback is None:
            return
        self.deliveries += 1
        try:
            result = callback(text)
        except Exception:  # pragma: no cover - callback bugs should not break the stream
            LOGGER.warning("Chunk callback raised; continuing", exc_info=True)
            return
        if inspect.isawaitable(result):
            loop = self._resolve_loop()
            self._tail = loop.create_task(self._await_in_order(self._tail, result))

    @staticmethod
    async def _await_in_order(previous: asyncio.Task[None] | None, awaitable: Awaitable[Any]) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await awaitable
        except Exception:
            LOGGER.warning("Async chunk callback failed; continuing", exc_info=True)

    def _resolve_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop


__all__ = ["ChunkCoalescer", "ChunkCallback", "DEFAULT_FRAME_INTERVAL"]
