"""Page geometry and PDF assembly for diagram exports."""

from __future__ import annotations

import io
import logging

from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from backend.app.contracts import BoundingBox
from backend.app.export.models import PageLayout
from backend.app.ui.geometry import Orientation

LOGGER = logging.getLogger(__name__)


def compute_page_layout(
    bounds: BoundingBox,
    orientation: Orientation,
    *,
    padding: float = 50.0,
    max_aspect_ratio: float = 2.0,
) -> PageLayout:
    """Size the page around ``bounds`` and fit the content into it.

    The page is the bounding box plus ``padding`` on every side. When the page
    is more than ``max_aspect_ratio`` times longer in the dominant direction,
    the minor side grows to ``major / max_aspect_ratio``. The scale is the
    largest uniform zoom at which the bounds fit the padded content area, and
    the translation moves the top-left corner of the bounds onto the padding.
    """

    width = bounds.width + padding * 2
    height = bounds.height + padding * 2
    if orientation is Orientation.HORIZONTAL:
        if height > 0 and width / height > max_aspect_ratio:
            height = max(height, width / max_aspect_ratio)
    elif width > 0 and height / width > max_aspect_ratio:
        width = max(width, height / max_aspect_ratio)

    ratios = []
    if bounds.width > 0:
        ratios.append((width - padding * 2) / bounds.width)
    if bounds.height > 0:
        ratios.append((height - padding * 2) / bounds.height)
    scale = min(ratios) if ratios else 1.0
    if scale <= 0:
        scale = 1.0

    return PageLayout(
        bounds=bounds,
        orientation=orientation,
        width=max(width, 1.0),
        height=max(height, 1.0),
        scale=scale,
        translate_x=padding - bounds.x * scale,
        translate_y=padding - bounds.y * scale,
        padding=padding,
    )


def render_pdf(image: Image.Image, layout: PageLayout, *, title: str = "Historical flow") -> bytes:
    """Embed ``image`` into a one-page PDF exactly ``layout.width`` x ``layout.height``."""

    buffer = io.BytesIO()
    page_size = (layout.width, layout.height)
    pdf = canvas.Canvas(buffer, pagesize=page_size)
    pdf.setTitle(title)
    pdf.setSubject(f"{layout.orientation.value} diagram")
    pdf.drawImage(ImageReader(image), 0, 0, width=layout.width, height=layout.height)
    pdf.showPage()
    pdf.save()
    content = buffer.getvalue()
    LOGGER.debug(
        "Rendered %s PDF page %.0fx%.0f (%d bytes)",
        layout.orientation.value,
        layout.width,
        layout.height,
        len(content),
    )
    return content


__all__ = ["compute_page_layout", "render_pdf"]
