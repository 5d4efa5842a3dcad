"""PDF and PNG export utilities for the Historiflow backend."""

from backend.app.export.models import (
    ExportError,
    ExportedFile,
    NothingToExportError,
    PageLayout,
    RasterizationError,
    SurfaceUnavailableError,
)
from backend.app.export.pdf import compute_page_layout, render_pdf
from backend.app.export.service import PDFExportService
from backend.app.export.surface import DiagramRasterizer, DiagramSurface, SurfaceState, Viewport

__all__ = [
    "DiagramRasterizer",
    "DiagramSurface",
    "ExportError",
    "ExportedFile",
    "NothingToExportError",
    "PDFExportService",
    "PageLayout",
    "RasterizationError",
    "SurfaceState",
    "SurfaceUnavailableError",
    "Viewport",
    "compute_page_layout",
    "render_pdf",
]
