"""Tests for page layout computation and the diagram export service."""

from __future__ import annotations

import io
from typing import List

import pytest
from PIL import Image

from backend.app.config import ExportConfig
from backend.app.contracts import BoundingBox, Position
from backend.app.export import (
    DiagramSurface,
    NothingToExportError,
    PDFExportService,
    RasterizationError,
    SurfaceState,
    SurfaceUnavailableError,
    Viewport,
    compute_page_layout,
)
from backend.app.graph import EventBus, GraphStore, Notification
from backend.app.ui.geometry import Orientation


class _RecordingRasterizer:
    """Rasterizer stub recording the surface state at render time."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: List[tuple] = []

    def render(self, nodes, edges, viewport, width, height) -> Image.Image:
        self.calls.append((list(nodes), list(edges), viewport, width, height))
        if self.error is not None:
            raise self.error
        return Image.new("RGB", (width, height), "#ffffff")


def _store_with_row() -> GraphStore:
    store = GraphStore()
    first = store.add_node({"label": "Battle of Hastings", "type": "event", "position": Position(x=0, y=0)})
    second = store.add_node({"label": "William I", "type": "person", "position": Position(x=400, y=0)})
    store.add_edge({"source": first.id, "target": second.id, "type": "led-to"})
    return store


def test_wide_page_is_clamped_to_two_to_one() -> None:
    layout = compute_page_layout(BoundingBox(x=0, y=0, width=1000, height=100), Orientation.HORIZONTAL)

    assert (layout.width, layout.height) == (1100, 550)
    assert layout.scale == pytest.approx(1.0)
    assert (layout.translate_x, layout.translate_y) == (50, 50)


def test_tall_page_is_clamped_to_two_to_one() -> None:
    layout = compute_page_layout(BoundingBox(x=0, y=0, width=100, height=1000), Orientation.VERTICAL)
    assert (layout.width, layout.height) == (550, 1100)


def test_balanced_page_keeps_padded_bounds() -> None:
    layout = compute_page_layout(
        BoundingBox(x=10, y=20, width=300, height=200), Orientation.HORIZONTAL, padding=50
    )

    assert (layout.width, layout.height) == (400, 300)
    assert layout.scale == pytest.approx(1.0)
    assert (layout.translate_x, layout.translate_y) == (40, 30)


def test_orientation_against_bounds_does_not_swap_page() -> None:
    layout = compute_page_layout(BoundingBox(x=0, y=0, width=240, height=120), Orientation.VERTICAL)
    assert (layout.width, layout.height) == (340, 220)
    assert layout.orientation is Orientation.VERTICAL


def test_empty_bounds_still_produce_a_page() -> None:
    layout = compute_page_layout(BoundingBox(), Orientation.VERTICAL, padding=0)
    assert layout.width >= 1 and layout.height >= 1
    assert layout.scale == 1.0


def test_export_pdf_produces_single_page_document() -> None:
    store = _store_with_row()
    bus = EventBus()
    notes: List[Notification] = []
    bus.subscribe(Notification, notes.append)
    surface = DiagramSurface(store, width=1280, height=800)
    service = PDFExportService(surface=surface, config=ExportConfig(), events=bus)

    exported = service.export_to_pdf()

    assert exported.content.startswith(b"%PDF")
    assert exported.media_type == "application/pdf"
    assert exported.filename == "historical-flow.pdf"
    assert exported.orientation is Orientation.HORIZONTAL
    assert (exported.width, exported.height) == (740, 370)
    assert notes == [Notification(level="success", message="PDF generated successfully")]


def test_export_png_matches_page_size() -> None:
    store = _store_with_row()
    surface = DiagramSurface(store, width=1280, height=800)
    exported = PDFExportService(surface=surface).export_to_png()

    image = Image.open(io.BytesIO(exported.content))
    assert image.format == "PNG"
    assert image.size == (740, 370)


def test_capture_uses_page_transform_and_restores_surface() -> None:
    store = _store_with_row()
    rasterizer = _RecordingRasterizer()
    surface = DiagramSurface(store, width=1280, height=800, rasterizer=rasterizer)
    surface.set_viewport(Viewport(x=-30, y=12, zoom=0.5))
    before = surface.state
    written = []

    def _writer(image, layout) -> bytes:
        written.append((image.size, layout))
        return b"%PDF-stub"

    service = PDFExportService(surface=surface, pdf_writer=_writer)
    exported = service.export_to_pdf()

    _, _, viewport, width, height = rasterizer.calls[0]
    layout = written[0][1]
    assert viewport == Viewport(x=layout.translate_x, y=layout.translate_y, zoom=layout.scale)
    assert (width, height) == layout.pixel_size
    assert written[0][0] == layout.pixel_size
    assert exported.content == b"%PDF-stub"
    assert surface.state == before


def test_surface_state_restored_when_rasterization_fails() -> None:
    store = _store_with_row()
    bus = EventBus()
    notes: List[Notification] = []
    bus.subscribe(Notification, notes.append)
    surface = DiagramSurface(
        store, width=1024, height=768, rasterizer=_RecordingRasterizer(OSError("canvas lost"))
    )
    before = surface.state
    service = PDFExportService(surface=surface, events=bus)

    with pytest.raises(RasterizationError):
        service.export_to_pdf()

    assert surface.state == before
    assert surface.state == SurfaceState(width=1024, height=768)
    assert notes == [Notification(level="error", message="Failed to generate PDF")]


def test_nothing_to_export_is_reported() -> None:
    bus = EventBus()
    notes: List[Notification] = []
    bus.subscribe(Notification, notes.append)
    surface = DiagramSurface(GraphStore(), width=800, height=600)
    service = PDFExportService(surface=surface, events=bus)

    with pytest.raises(NothingToExportError):
        service.export_to_pdf()
    assert notes[0].level == "error"
    assert "No nodes" in notes[0].message


def test_missing_surface_is_reported() -> None:
    store = _store_with_row()
    service = PDFExportService(surface=None)

    with pytest.raises(SurfaceUnavailableError):
        service.export_to_png(store.nodes)

    service.attach(DiagramSurface(store, width=800, height=600))
    assert service.export_to_png().content


def test_tall_event_node_stays_inside_padding() -> None:
    store = GraphStore()
    store.add_node({"label": "Treaty", "type": "person", "position": Position(x=0, y=0)})
    store.add_node({"label": "Siege", "type": "event", "position": Position(x=0, y=300)})
    surface = DiagramSurface(store, width=1280, height=800)
    service = PDFExportService(surface=surface, config=ExportConfig(padding=20))

    layout = service.plan(store.nodes)
    assert layout.height == 500
    assert layout.scale == pytest.approx(1.0)

    image = Image.open(io.BytesIO(service.export_to_png().content)).convert("RGB")
    assert image.size == (280, 500)
    assert image.getpixel((140, 470)) != (255, 255, 255)
    for row in range(482, 500):
        assert image.getpixel((140, row)) == (255, 255, 255)
