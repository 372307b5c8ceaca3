"""
PDF page rendering.
Rasterizes single pages for OCR and for the analysis backend.
"""

import io
from typing import Optional

import structlog
from pdf2image import convert_from_bytes
from PIL import Image

from smart_upload.config import settings
from smart_upload.errors import ExtractionError

logger = structlog.get_logger(__name__)


def render_page(pdf_bytes: bytes, page_index: int, dpi: Optional[int] = None) -> Image.Image:
    """Render one 0-indexed page to a PIL image."""
    dpi = dpi or settings.RENDER_DPI
    try:
        images = convert_from_bytes(
            pdf_bytes,
            dpi=dpi,
            first_page=page_index + 1,
            last_page=page_index + 1,
            poppler_path=settings.POPPLER_PATH,
        )
    except Exception as e:
        logger.error("pdf_render_failed", page_index=page_index, error=str(e))
        raise ExtractionError(f"Failed to render page {page_index}: {e}") from e

    if not images:
        raise ExtractionError(f"Page {page_index} produced no image")
    return images[0]


def render_page_png(pdf_bytes: bytes, page_index: int, dpi: Optional[int] = None) -> bytes:
    """Render one 0-indexed page to PNG bytes."""
    image = render_page(pdf_bytes, page_index, dpi)
    buffer = io.BytesIO()
    image.save(buffer, "PNG")
    logger.debug("pdf_page_rendered", page_index=page_index, width=image.width, height=image.height)
    return buffer.getvalue()
