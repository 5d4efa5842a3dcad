"""Server-side rendering surface for the diagram, rasterized with Pillow."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from backend.app.contracts import Edge, Node
from backend.app.export.models import RasterizationError
from backend.app.graph.store import GraphStore
from backend.app.ui.styles import edge_style, node_size_hint, node_style

LOGGER = logging.getLogger(__name__)

BASE_FONT_SIZE = 14
ARROW_LENGTH = 12.0
DASH_LENGTH = 8.0


@dataclass(frozen=True)
class Viewport:
    """Affine transform ``screen = translate + zoom * diagram``."""

    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0

    def to_screen(self, x: float, y: float) -> Tuple[float, float]:
        return self.x + x * self.zoom, self.y + y * self.zoom


@dataclass
class SurfaceState:
    """Mutable size and transform of the rendering surface."""

    width: float
    height: float
    viewport: Viewport = field(default_factory=Viewport)

    def copy(self) -> "SurfaceState":
        return replace(self)


def _rect(node: Node, viewport: Viewport) -> Tuple[float, float, float, float]:
    width, height = node_size_hint(node)
    left, top = viewport.to_screen(node.position.x, node.position.y)
    return left, top, left + width * viewport.zoom, top + height * viewport.zoom


def _clip_to_rect(
    start: Tuple[float, float],
    end: Tuple[float, float],
    rect: Tuple[float, float, float, float],
) -> Tuple[float, float]:
    """Return where the segment from ``start`` to the centre ``end`` enters ``rect``."""

    dx = end[0] - start[0]
    dy = end[1] - start[1]
    half_w = (rect[2] - rect[0]) / 2
    half_h = (rect[3] - rect[1]) / 2
    if dx == 0 and dy == 0:
        return end
    scale_x = half_w / abs(dx) if dx else math.inf
    scale_y = half_h / abs(dy) if dy else math.inf
    factor = min(scale_x, scale_y, 1.0)
    return end[0] - dx * factor, end[1] - dy * factor


class DiagramRasterizer:
    """Draw nodes as rounded boxes and edges as arrows onto a Pillow image."""

    def __init__(self, *, background_color: str = "#ffffff") -> None:
        self._background_color = background_color
        self._fonts: Dict[int, object] = {}

    def _font(self, size: int):
        if size not in self._fonts:
            self._fonts[size] = ImageFont.load_default(size=size)
        return self._fonts[size]

    def render(
        self,
        nodes: Sequence[Node],
        edges: Iterable[Edge],
        viewport: Viewport,
        width: int,
        height: int,
    ) -> Image.Image:
        image = Image.new("RGB", (width, height), self._background_color)
        draw = ImageDraw.Draw(image)
        rects = {node.id: _rect(node, viewport) for node in nodes}
        for edge in edges:
            source = rects.get(edge.source)
            target = rects.get(edge.target)
            if source is None or target is None:
                continue
            self._draw_edge(draw, edge, source, target, viewport.zoom)
        font = self._font(max(6, round(BASE_FONT_SIZE * viewport.zoom)))
        for node in nodes:
            self._draw_node(draw, node, rects[node.id], viewport.zoom, font)
        return image

    def _draw_edge(
        self,
        draw: ImageDraw.ImageDraw,
        edge: Edge,
        source: Tuple[float, float, float, float],
        target: Tuple[float, float, float, float],
        zoom: float,
    ) -> None:
        style = edge_style(edge.type)
        line_width = max(1, round(2 * zoom))
        start_centre = ((source[0] + source[2]) / 2, (source[1] + source[3]) / 2)
        end_centre = ((target[0] + target[2]) / 2, (target[1] + target[3]) / 2)
        start = _clip_to_rect(end_centre, start_centre, source)
        end = _clip_to_rect(start_centre, end_centre, target)
        if style.dashed:
            self._dashed_line(draw, start, end, style.color, line_width, DASH_LENGTH * zoom)
        else:
            draw.line([start, end], fill=style.color, width=line_width)
        length = math.hypot(end[0] - start[0], end[1] - start[1])
        if length == 0:
            return
        ux = (end[0] - start[0]) / length
        uy = (end[1] - start[1]) / length
        arrow = ARROW_LENGTH * zoom
        left = (end[0] - ux * arrow - uy * arrow / 2, end[1] - uy * arrow + ux * arrow / 2)
        right = (end[0] - ux * arrow + uy * arrow / 2, end[1] - uy * arrow - ux * arrow / 2)
        draw.polygon([end, left, right], fill=style.color)

    @staticmethod
    def _dashed_line(
        draw: ImageDraw.ImageDraw,
        start: Tuple[float, float],
        end: Tuple[float, float],
        color: str,
        width: int,
        dash: float,
    ) -> None:
        length = math.hypot(end[0] - start[0], end[1] - start[1])
        if length == 0 or dash <= 0:
            return
        steps = int(length // dash)
        for index in range(0, steps + 1, 2):
            t0 = index * dash / length
            t1 = min((index + 1) * dash / length, 1.0)
            draw.line(
                [
                    (start[0] + (end[0] - start[0]) * t0, start[1] + (end[1] - start[1]) * t0),
                    (start[0] + (end[0] - start[0]) * t1, start[1] + (end[1] - start[1]) * t1),
                ],
                fill=color,
                width=width,
            )

    def _draw_node(
        self,
        draw: ImageDraw.ImageDraw,
        node: Node,
        rect: Tuple[float, float, float, float],
        zoom: float,
        font,
    ) -> None:
        style = node_style(node.type)
        draw.rounded_rectangle(
            rect,
            radius=max(1, round(8 * zoom)),
            fill=style.fill,
            outline=style.border,
            width=max(1, round(2 * zoom)),
        )
        lines: List[str] = [node.label]
        if node.subtitle:
            lines.append(node.subtitle)
        text = "\n".join(lines)
        left, top, right, bottom = draw.multiline_textbbox((0, 0), text, font=font, align="center")
        origin = (
            (rect[0] + rect[2] - (right - left)) / 2 - left,
            (rect[1] + rect[3] - (bottom - top)) / 2 - top,
        )
        draw.multiline_text(origin, text, fill=style.text, font=font, align="center")


class DiagramSurface:
    """Rendering surface bound to a graph store.

    The surface never copies the graph; every render reads the store's current
    nodes and edges. Only the surface size and viewport transform live here.
    """

    def __init__(
        self,
        store: GraphStore,
        *,
        width: float,
        height: float,
        rasterizer: Optional[DiagramRasterizer] = None,
    ) -> None:
        self._store = store
        self._state = SurfaceState(width=width, height=height)
        self._rasterizer = rasterizer or DiagramRasterizer()

    @property
    def nodes(self) -> List[Node]:
        return self._store.nodes

    @property
    def edges(self) -> List[Edge]:
        return self._store.edges

    @property
    def state(self) -> SurfaceState:
        return self._state.copy()

    def apply_state(self, state: SurfaceState) -> None:
        self._state = state.copy()

    def set_viewport(self, viewport: Viewport) -> None:
        self._state.viewport = viewport

    def resize(self, width: float, height: float) -> None:
        self._state.width = width
        self._state.height = height

    def rasterize(self) -> Image.Image:
        """Render the current nodes with the current size and transform."""

        width = max(1, round(self._state.width))
        height = max(1, round(self._state.height))
        try:
            return self._rasterizer.render(self.nodes, self.edges, self._state.viewport, width, height)
        except (OSError, ValueError, MemoryError) as exc:
            LOGGER.error("Failed to rasterize diagram at %sx%s: %s", width, height, exc)
            raise RasterizationError(f"Failed to rasterize diagram: {exc}") from exc


__all__ = ["DiagramRasterizer", "DiagramSurface", "SurfaceState", "Viewport"]
