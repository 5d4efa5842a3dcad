"""Service turning the live diagram into downloadable PDF and PNG files."""

from __future__ import annotations

import io
import logging
from typing import Callable, Optional, Sequence

from PIL import Image

from backend.app.config import ExportConfig
from backend.app.contracts import Node
from backend.app.export.models import (
    ExportedFile,
    NothingToExportError,
    PageLayout,
    SurfaceUnavailableError,
)
from backend.app.export.pdf import compute_page_layout, render_pdf
from backend.app.export.surface import DiagramSurface, SurfaceState, Viewport
from backend.app.graph.events import EventBus, Notification
from backend.app.ui.geometry import compute_bounding_box, detect_orientation
from backend.app.ui.styles import node_size_hint

LOGGER = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"
PNG_MEDIA_TYPE = "image/png"


class PDFExportService:
    """Coordinate bounds, page layout, rasterization and file assembly.

    The surface's size and viewport are changed only for the capture and are
    restored afterwards whether or not the export succeeded.
    """

    def __init__(
        self,
        *,
        surface: Optional[DiagramSurface],
        config: Optional[ExportConfig] = None,
        events: Optional[EventBus] = None,
        pdf_writer: Callable[[Image.Image, PageLayout], bytes] = render_pdf,
    ) -> None:
        self._surface = surface
        self._config = config or ExportConfig()
        self._events = events
        self._pdf_writer = pdf_writer

    @property
    def surface(self) -> Optional[DiagramSurface]:
        return self._surface

    def attach(self, surface: Optional[DiagramSurface]) -> None:
        self._surface = surface

    def _notify(self, level: str, message: str) -> None:
        if self._events is not None:
            self._events.publish(Notification(level=level, message=message))

    def plan(self, nodes: Sequence[Node]) -> PageLayout:
        """Return the page layout for ``nodes`` or raise when there is nothing to draw.

        Bounds use the same per-node sizes the rasterizer draws, so taller
        event boxes stay inside the padded content area.
        """

        if not nodes:
            raise NothingToExportError("No nodes to export")
        bounds = compute_bounding_box(nodes, size_hint=node_size_hint)
        orientation = detect_orientation(nodes)
        return compute_page_layout(
            bounds,
            orientation,
            padding=self._config.padding,
            max_aspect_ratio=self._config.max_aspect_ratio,
        )

    def _capture(self, nodes: Optional[Sequence[Node]]) -> tuple[Image.Image, PageLayout]:
        surface = self._surface
        export_nodes = list(nodes) if nodes is not None else (surface.nodes if surface else [])
        layout = self.plan(export_nodes)
        if surface is None:
            raise SurfaceUnavailableError("Could not find the diagram surface")
        original = surface.state
        try:
            surface.apply_state(
                SurfaceState(
                    width=layout.width,
                    height=layout.height,
                    viewport=Viewport(x=layout.translate_x, y=layout.translate_y, zoom=layout.scale),
                )
            )
            image = surface.rasterize()
        finally:
            surface.apply_state(original)
        return image, layout

    def _run(self, label: str, build: Callable[[], ExportedFile]) -> ExportedFile:
        try:
            exported = build()
        except NothingToExportError as exc:
            self._notify("error", str(exc))
            raise
        except Exception as exc:
            LOGGER.error("Failed to generate %s: %s", label, exc)
            self._notify("error", f"Failed to generate {label}")
            raise
        self._notify("success", f"{label} generated successfully")
        LOGGER.info(
            "Exported %s %s (%.0fx%.0f, %d bytes)",
            exported.orientation.value,
            exported.filename,
            exported.width,
            exported.height,
            exported.size_bytes,
        )
        return exported

    def export_to_pdf(self, nodes: Optional[Sequence[Node]] = None) -> ExportedFile:
        """Render the diagram into a single-page PDF sized to its content.

        Args:
            nodes: Nodes whose bounds define the page; defaults to the surface's nodes.

        Raises:
            NothingToExportError: If there are no nodes.
            SurfaceUnavailableError: If no surface is attached.
            RasterizationError: If the surface cannot be rendered.
        """

        def _build() -> ExportedFile:
            image, layout = self._capture(nodes)
            content = self._pdf_writer(image, layout)
            return ExportedFile(
                filename=self._config.pdf_filename,
                media_type=PDF_MEDIA_TYPE,
                content=content,
                orientation=layout.orientation,
                width=layout.width,
                height=layout.height,
            )

        return self._run("PDF", _build)

    def export_to_png(self, nodes: Optional[Sequence[Node]] = None) -> ExportedFile:
        """Render the diagram into a PNG image using the same page layout as the PDF."""

        def _build() -> ExportedFile:
            image, layout = self._capture(nodes)
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            return ExportedFile(
                filename=self._config.png_filename,
                media_type=PNG_MEDIA_TYPE,
                content=buffer.getvalue(),
                orientation=layout.orientation,
                width=layout.width,
                height=layout.height,
            )

        return self._run("PNG", _build)


__all__ = ["PDFExportService", "PDF_MEDIA_TYPE", "PNG_MEDIA_TYPE"]
