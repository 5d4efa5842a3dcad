"""Geometry, layout and visual style helpers for the diagram."""

from .geometry import (
    Orientation,
    compute_bounding_box,
    compute_default_insert_position,
    detect_orientation,
)
from .layout import (
    LayeredLayoutEngine,
    LayoutAdapter,
    LayoutNodeInput,
    NetworkXLayeredEngine,
    arrange_entities,
    grid_columns,
)
from .styles import EdgeStyle, NodeStyle, edge_style, node_size_hint, node_style

__all__ = [
    "EdgeStyle",
    "LayeredLayoutEngine",
    "LayoutAdapter",
    "LayoutNodeInput",
    "NetworkXLayeredEngine",
    "NodeStyle",
    "Orientation",
    "arrange_entities",
    "compute_bounding_box",
    "compute_default_insert_position",
    "detect_orientation",
    "edge_style",
    "grid_columns",
    "node_size_hint",
    "node_style",
]
