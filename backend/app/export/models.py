"""Data models and errors for diagram exports."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from backend.app.contracts import BoundingBox
from backend.app.ui.geometry import Orientation


class ExportError(RuntimeError):
    """Base error for export failures."""


class NothingToExportError(ExportError):
    """Raised when the diagram has no nodes."""


class SurfaceUnavailableError(ExportError):
    """Raised when no rendering surface is attached."""


class RasterizationError(ExportError):
    """Raised when the surface cannot be rendered to an image."""


class _FrozenModel(BaseModel):
    """Base class for immutable Pydantic models."""

    model_config = ConfigDict(frozen=True)


class PageLayout(_FrozenModel):
    """Page size and viewport transform computed for one export."""

    bounds: BoundingBox
    orientation: Orientation
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    scale: float = Field(..., gt=0)
    translate_x: float
    translate_y: float
    padding: float = Field(..., ge=0)

    @property
    def pixel_size(self) -> tuple[int, int]:
        return max(1, round(self.width)), max(1, round(self.height))


class ExportedFile(_FrozenModel):
    """Downloadable export payload."""

    filename: str = Field(..., min_length=1)
    media_type: str = Field(..., min_length=1)
    content: bytes
    orientation: Orientation
    width: float
    height: float

    @property
    def size_bytes(self) -> int:
        return len(self.content)


__all__ = [
    "ExportError",
    "ExportedFile",
    "NothingToExportError",
    "PageLayout",
    "RasterizationError",
    "SurfaceUnavailableError",
]
