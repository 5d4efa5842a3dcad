"""Bounding-box and placement helpers shared by layout and export."""
from __future__ import annotations

import math
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Tuple

from backend.app.contracts import BoundingBox, Node, Position, finite_or_zero

DEFAULT_INSERT_POSITION = Position(x=50.0, y=50.0)
DEFAULT_NODE_WIDTH = 240.0
DEFAULT_NODE_HEIGHT = 120.0
INSERT_GAP = 50.0

SizeHint = Callable[[Node], Tuple[float, float]]


class Orientation(str, Enum):
    """Dominant direction in which a diagram extends."""

    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


def _extent(value: object, default: float) -> float:
    """Return a usable width/height: the node's own when positive, else the default."""

    number = finite_or_zero(value)
    if number <= 0:
        return default
    return number


def _node_rect(
    node: Node,
    default_width: float,
    default_height: float,
    size_hint: Optional[SizeHint] = None,
) -> Tuple[float, float, float, float]:
    position = getattr(node, "position", None)
    x = finite_or_zero(getattr(position, "x", 0.0))
    y = finite_or_zero(getattr(position, "y", 0.0))
    if size_hint is not None:
        hinted_width, hinted_height = size_hint(node)
        return x, y, _extent(hinted_width, default_width), _extent(hinted_height, default_height)
    width = _extent(getattr(node, "width", None), default_width)
    height = _extent(getattr(node, "height", None), default_height)
    return x, y, width, height


def compute_default_insert_position(
    nodes: Sequence[Node],
    *,
    default_width: float = DEFAULT_NODE_WIDTH,
    gap: float = INSERT_GAP,
) -> Position:
    """Return a position to the right of the rightmost node.

    Args:
        nodes: Nodes currently in the diagram.
        default_width: Width assumed for nodes that have not been measured.
        gap: Horizontal distance kept between the rightmost node and the new one.

    Returns:
        Position: ``DEFAULT_INSERT_POSITION`` for an empty diagram, otherwise a
            point ``gap`` units past the rightmost right edge, aligned with the
            top of that node.
    """

    if not nodes:
        return DEFAULT_INSERT_POSITION
    best_right = -math.inf
    best_y = 0.0
    for node in nodes:
        x, y, width, _ = _node_rect(node, default_width, DEFAULT_NODE_HEIGHT)
        right = x + width
        if right > best_right:
            best_right = right
            best_y = y
    return Position(x=best_right + gap, y=best_y)


def compute_bounding_box(
    nodes: Iterable[Node],
    *,
    default_width: float = DEFAULT_NODE_WIDTH,
    default_height: float = DEFAULT_NODE_HEIGHT,
    size_hint: Optional[SizeHint] = None,
) -> BoundingBox:
    """Return the minimal axis-aligned box covering every node.

    Missing or non-finite numbers are treated as zero and unmeasured nodes use
    the default size. When ``size_hint`` is given it supplies each node's drawn
    size instead. An empty input yields a zero box at the origin.
    """

    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    for node in nodes:
        x, y, width, height = _node_rect(node, default_width, default_height, size_hint)
        min_x = min(min_x, x)
        min_y = min(min_y, y)
        max_x = max(max_x, x + width)
        max_y = max(max_y, y + height)
    if min_x == math.inf:
        return BoundingBox(x=0.0, y=0.0, width=0.0, height=0.0)
    return BoundingBox(
        x=min_x,
        y=min_y,
        width=max(max_x - min_x, 0.0),
        height=max(max_y - min_y, 0.0),
    )


def detect_orientation(nodes: Sequence[Node]) -> Orientation:
    """Compare the widest horizontal and vertical spread between node positions.

    The largest pairwise distance along an axis equals the span between the
    extreme positions on that axis. Horizontal wins only when strictly larger;
    ties and diagrams with fewer than two nodes are vertical.
    """

    if len(nodes) < 2:
        return Orientation.VERTICAL
    xs = [_node_rect(node, 0.0, 0.0)[0] for node in nodes]
    ys = [_node_rect(node, 0.0, 0.0)[1] for node in nodes]
    max_horizontal = max(xs) - min(xs)
    max_vertical = max(ys) - min(ys)
    if max_horizontal > max_vertical:
        return Orientation.HORIZONTAL
    return Orientation.VERTICAL
