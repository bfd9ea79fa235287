"""Placement of new nodes next to an anchor position.

Eight fixed angles are tried at a fixed distance from the anchor; the first
candidate that keeps clear of every existing node wins. Only when all eight
collide does :meth:`GraphPositioner.fallback` pick a random spot.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

BASE_OFFSET = 200.0
SEARCH_RADIUS = 150.0
FALLBACK_EXTRA_OFFSET = 100.0
CANDIDATE_ANGLES: tuple[int, ...] = (0, 45, 90, 135, 180, 225, 270, 315)


@dataclass(slots=True, frozen=True)
class Position:
    """A point on the canvas."""

    x: float
    y: float

    def distance_to(self, other: "Position") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Position":
        return cls(x=float(payload["x"]), y=float(payload["y"]))


DEFAULT_ORIGIN = Position(400.0, 300.0)


def position_of(item: Any) -> Position:
    """Return the position of a node, a mapping or a :class:`Position`."""

    if isinstance(item, Position):
        return item
    if isinstance(item, Mapping):
        raw = item.get("position", item)
        return Position.from_mapping(raw)
    position = getattr(item, "position", None)
    if isinstance(position, Position):
        return position
    raise TypeError(f"Cannot read a position from {type(item).__name__}")


def centroid(items: Iterable[Any], *, default: Position = DEFAULT_ORIGIN) -> Position:
    points = [position_of(item) for item in items]
    if not points:
        return default
    return Position(
        x=sum(point.x for point in points) / len(points),
        y=sum(point.y for point in points) / len(points),
    )


class GraphPositioner:
    """Finds a free spot for a node being attached to ``parent_position``."""

    def __init__(
        self,
        *,
        base_offset: float = BASE_OFFSET,
        search_radius: float = SEARCH_RADIUS,
        extra_offset: float = FALLBACK_EXTRA_OFFSET,
        rng: random.Random | None = None,
    ) -> None:
        self.base_offset = base_offset
        self.search_radius = search_radius
        self.extra_offset = extra_offset
        self._rng = rng or random.Random()

    def candidates(self, parent_position: Position) -> list[Position]:
        return [self._offset(parent_position, angle, self.base_offset) for angle in CANDIDATE_ANGLES]

    def place(self, parent_position: Position, existing_nodes: Iterable[Any]) -> Position:
        occupied = [position_of(node) for node in existing_nodes]
        for candidate in self.candidates(parent_position):
            if all(candidate.distance_to(point) >= self.search_radius for point in occupied):
                return candidate
        return self.fallback(parent_position)

    def fallback(self, parent_position: Position) -> Position:
        """Random angle at an inflated offset; the only non-deterministic path."""

        angle = self._rng.random() * 360.0
        distance = self.base_offset + self._rng.random() * self.extra_offset
        return self._offset(parent_position, angle, distance)

    @staticmethod
    def _offset(origin: Position, angle_degrees: float, distance: float) -> Position:
        radians = math.radians(angle_degrees)
        return Position(
            x=origin.x + math.cos(radians) * distance,
            y=origin.y + math.sin(radians) * distance,
        )


__all__ = [
    "BASE_OFFSET",
    "SEARCH_RADIUS",
    "FALLBACK_EXTRA_OFFSET",
    "CANDIDATE_ANGLES",
    "DEFAULT_ORIGIN",
    "Position",
    "GraphPositioner",
    "centroid",
    "position_of",
]
