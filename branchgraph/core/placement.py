"""Collision-free placement of new nodes next to a parent."""

import logging
import math
from dataclasses import dataclass, field

from .constants import (
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    NODE_SPACING,
    SPIRAL_DIRECTIONS,
    SPIRAL_MAX_RINGS,
)
from .graph import build_pairs, pair_position
from .types import Graph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Size:
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    def moved_to(self, x: float, y: float) -> "Rect":
        return Rect(x, y, self.width, self.height)

    def resized(self, size: Size) -> "Rect":
        return Rect(self.x, self.y, size.width, size.height)


@dataclass(frozen=True)
class Placement:
    """Where a new node goes and how the position was found."""
    x: float
    y: float
    strategy: str
    provisional: bool = False

    def rect(self, size: Size) -> Rect:
        return Rect(self.x, self.y, size.width, size.height)


@dataclass
class Reflow:
    """Result of reconciling provisional placements with measured sizes."""
    rects: dict[str, Rect] = field(default_factory=dict)
    moved: list[str] = field(default_factory=list)

    @property
    def positions(self) -> dict[str, tuple[float, float]]:
        return {node_id: (r.x, r.y) for node_id, r in self.rects.items()}


def collides(a: Rect, b: Rect, spacing: float = NODE_SPACING) -> bool:
    """True unless the rectangles are at least `spacing` apart on some axis."""
    return (
        a.x < b.x + b.width + spacing
        and b.x < a.x + a.width + spacing
        and a.y < b.y + b.height + spacing
        and b.y < a.y + a.height + spacing
    )


def is_free(candidate: Rect, occupied, spacing: float = NODE_SPACING) -> bool:
    return not any(collides(candidate, other, spacing) for other in occupied)


def priority_offsets(parent: Rect, size: Size, spacing: float) -> list[tuple[str, float, float]]:
    """Candidate top-left corners in priority order."""
    centered_x = parent.x + (parent.width - size.width) / 2
    right_x = parent.x + parent.width + spacing
    left_x = parent.x - size.width - spacing
    below_y = parent.y + parent.height + spacing
    return [
        ("below", centered_x, below_y),
        ("below-right", right_x, below_y),
        ("below-left", left_x, below_y),
        ("further-below", centered_x, parent.y + 2 * (parent.height + spacing)),
        ("right", right_x, parent.y),
        ("left", left_x, parent.y),
        ("above", centered_x, parent.y - size.height - spacing),  # last resort
    ]


def spiral_candidates(parent: Rect, size: Size, spacing: float):
    """Ring by ring around the parent's centre, 8 directions per ring."""
    center_x = parent.x + parent.width / 2
    center_y = parent.y + parent.height / 2
    step = max(size.width, size.height) + spacing

    for ring in range(1, SPIRAL_MAX_RINGS + 1):
        distance = ring * step
        for k in range(SPIRAL_DIRECTIONS):
            angle = 2 * math.pi * k / SPIRAL_DIRECTIONS
            x = center_x + distance * math.cos(angle) - size.width / 2
            y = center_y + distance * math.sin(angle) - size.height / 2
            yield ring, round(x, 2), round(y, 2)


def find_free_position(
    parent: Rect,
    size: Size | None,
    occupied,
    spacing: float = NODE_SPACING,
) -> Placement:
    """
    Place a node of `size` near `parent` without touching any occupied rectangle.

    Tries the fixed offsets, then a spiral search, then stacks the node below
    the lowest occupied rectangle. Always returns a position.
    """
    size = size or Size()
    occupied = list(occupied)

    for name, x, y in priority_offsets(parent, size, spacing):
        if is_free(Rect(x, y, size.width, size.height), occupied, spacing):
            return Placement(x, y, name)

    for ring, x, y in spiral_candidates(parent, size, spacing):
        if is_free(Rect(x, y, size.width, size.height), occupied, spacing):
            return Placement(x, y, f"spiral-{ring}")

    lowest = max((r.bottom for r in occupied), default=parent.bottom)
    logger.debug(f"Placement exhausted offsets and spiral; stacking below y={lowest}")
    return Placement(parent.x, lowest + 2 * spacing, "fallback")


def place_provisional(
    parent: Rect,
    occupied,
    size: Size | None = None,
    spacing: float = NODE_SPACING,
) -> Placement:
    """First layout phase: place with default (unmeasured) dimensions."""
    placement = find_free_position(parent, size or Size(), occupied, spacing)
    return Placement(placement.x, placement.y, placement.strategy, provisional=True)


def reconcile(
    layout: dict[str, Rect],
    measured: dict[str, Size],
    provisional: dict[str, str | None],
    spacing: float = NODE_SPACING,
) -> Reflow:
    """
    Second layout phase: apply measured sizes and re-place colliding nodes.

    `provisional` maps each provisionally placed node to its parent id. Only
    those nodes may move; everything that moved is listed in `Reflow.moved`.
    """
    rects = {
        node_id: rect.resized(measured[node_id]) if node_id in measured else rect
        for node_id, rect in layout.items()
    }
    result = Reflow(rects=rects)

    for node_id, parent_id in provisional.items():
        rect = rects.get(node_id)
        if rect is None:
            continue
        others = [r for other_id, r in rects.items() if other_id != node_id]
        if is_free(rect, others, spacing):
            continue

        parent = rects.get(parent_id) if parent_id else None
        placement = find_free_position(parent or rect, rect.size, others, spacing)
        rects[node_id] = rect.moved_to(placement.x, placement.y)
        result.moved.append(node_id)

    if result.moved:
        logger.debug(f"Reflow moved {len(result.moved)} provisional nodes")
    return result


def pair_rects(graph: Graph, sizes: dict[str, Size] | None = None) -> dict[str, Rect]:
    """Occupied rectangles of all positioned QA pairs, keyed by anchor id."""
    sizes = sizes or {}
    rects = {}
    for pair in build_pairs(graph):
        position = pair_position(pair)
        if position is None:
            continue
        size = sizes.get(pair.anchor_id, Size())
        rects[pair.anchor_id] = Rect(position[0], position[1], size.width, size.height)
    return rects


def root_parent_rect(index: int, size: Size | None = None, spacing: float = NODE_SPACING) -> Rect:
    """Virtual parent for a node that starts a new branch with no anchor."""
    size = size or Size()
    return Rect(0, index * (size.height + spacing), size.width, size.height)
