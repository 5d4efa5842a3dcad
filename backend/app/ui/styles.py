"""Visual variants for node and edge types."""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from backend.app.contracts import EdgeType, Node, NodeType
from backend.app.ui.geometry import DEFAULT_NODE_HEIGHT, DEFAULT_NODE_WIDTH

EVENT_NODE_HEIGHT = 160.0


@dataclass(frozen=True)
class NodeStyle:
    """Fill, border and text colours used to draw a node."""

    fill: str
    border: str
    text: str = "#1f2937"


@dataclass(frozen=True)
class EdgeStyle:
    """Stroke colour and dash pattern used to draw an edge."""

    color: str
    dashed: bool = False


DEFAULT_NODE_STYLE = NodeStyle(fill="#f9fafb", border="#e5e7eb")
DEFAULT_EDGE_STYLE = EdgeStyle(color="#64748b")

NODE_STYLES: Mapping[NodeType, NodeStyle] = MappingProxyType(
    {
        NodeType.PERSON: NodeStyle(fill="#f0fdf4", border="#bbf7d0"),
        NodeType.PLACE: NodeStyle(fill="#fefce8", border="#fef08a"),
        NodeType.EVENT: NodeStyle(fill="#eff6ff", border="#bfdbfe"),
        NodeType.CONCEPT: NodeStyle(fill="#faf5ff", border="#e9d5ff"),
    }
)

EDGE_STYLES: Mapping[EdgeType, EdgeStyle] = MappingProxyType(
    {
        EdgeType.CAUSES: EdgeStyle(color="#dc2626"),
        EdgeType.CAUSED_BY: EdgeStyle(color="#dc2626", dashed=True),
        EdgeType.LED_TO: EdgeStyle(color="#ea580c"),
        EdgeType.INFLUENCES: EdgeStyle(color="#2563eb"),
        EdgeType.PARTICIPATES: EdgeStyle(color="#16a34a"),
        EdgeType.LOCATED: EdgeStyle(color="#ca8a04", dashed=True),
        EdgeType.PART_OF: EdgeStyle(color="#7c3aed"),
        EdgeType.OPPOSED_TO: EdgeStyle(color="#be123c", dashed=True),
        EdgeType.RELATED_TO: DEFAULT_EDGE_STYLE,
    }
)


def node_style(node_type: object) -> NodeStyle:
    """Return the style for a node type, falling back to the default variant."""

    member = NodeType.parse(node_type)
    if member is None:
        return DEFAULT_NODE_STYLE
    return NODE_STYLES[member]


def edge_style(edge_type: object) -> EdgeStyle:
    """Return the style for an edge type, falling back to the default variant."""

    member = EdgeType.parse(edge_type)
    if member is None:
        return DEFAULT_EDGE_STYLE
    return EDGE_STYLES[member]


def node_size_hint(
    node: Node,
    *,
    default_width: float = DEFAULT_NODE_WIDTH,
    default_height: float = DEFAULT_NODE_HEIGHT,
    event_height: Optional[float] = EVENT_NODE_HEIGHT,
) -> Tuple[float, float]:
    """Return ``(width, height)`` for a node, preferring measured sizes."""

    width = node.width if node.width else default_width
    if node.height:
        return width, node.height
    if event_height is not None and NodeType.parse(node.type) is NodeType.EVENT:
        return width, event_height
    return width, default_height
