"""In-memory TTL cache with request de-duplication.

The cache is an explicit object handed to whatever needs it (see
:class:`~notecanvas.canvas.board_store.CachedBoardStore`); there is no
module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60.0
DEFAULT_MAX_ENTRIES = 50

T = TypeVar("T")


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    reads: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "reads": self.reads,
        }


@dataclass(slots=True)
class _Entry(Generic[T]):
    value: T
    stored_at: float
    expires_at: float


class TTLCache:
    """Keyed cache whose entries expire after ``ttl`` seconds.

    Keys are ``(kind, identifier)`` pairs so one cache can serve several
    record types. When more than ``max_entries`` are held the oldest entry
    is evicted.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], _Entry[Any]] = OrderedDict()
        self._pending: dict[tuple[str, str], asyncio.Future[Any]] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, kind: str, identifier: str) -> Any | None:
        key = (kind, identifier)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        self.stats.hits += 1
        return entry.value

    def set(self, kind: str, identifier: str, value: Any, *, ttl: float | None = None) -> None:
        key = (kind, identifier)
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = _Entry(value=value, stored_at=now, expires_at=now + (ttl or self.ttl))
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            LOGGER.debug("Evicted cache entry %s", evicted)

    def invalidate(self, kind: str, identifier: str) -> None:
        self._entries.pop((kind, identifier), None)

    def invalidate_kind(self, kind: str) -> None:
        for key in [key for key in self._entries if key[0] == kind]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_fetch(
        self,
        kind: str,
        identifier: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
    ) -> T:
        """Return the cached value or fetch it once, sharing the fetch between callers."""

        cached = self.get(kind, identifier)
        if cached is not None:
            return cached
        key = (kind, identifier)
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        self.stats.misses += 1
        self.stats.reads += 1
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        else:
            self.set(kind, identifier, value, ttl=ttl)
            future.set_result(value)
            return value
        finally:
            self._pending.pop(key, None)


__all__ = ["TTLCache", "CacheStats", "DEFAULT_TTL_SECONDS", "DEFAULT_MAX_ENTRIES"]
