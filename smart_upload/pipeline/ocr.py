"""
OCR engines.
Fallback path for scanned PDFs and images without a usable text layer.
"""

import io
from abc import ABC, abstractmethod
from typing import Optional

import pytesseract
import structlog
from PIL import Image

from smart_upload.config import settings
from smart_upload.errors import ExtractionError
from smart_upload.pipeline.renderer import render_page

logger = structlog.get_logger(__name__)

PAGE_BREAK = "\n\n--- Page Break ---\n\n"


class OcrEngine(ABC):
    """Recognizes text in rasterized pages."""

    name = "ocr"

    @abstractmethod
    def ocr_image(self, image: Image.Image) -> str:
        ...

    def ocr_image_bytes(self, image_bytes: bytes) -> str:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except Exception as e:
            raise ExtractionError(f"Unreadable image: {e}", reason=ExtractionError.PARSE_FAILURE) from e
        return self.ocr_image(image)

    def ocr_pdf(self, pdf_bytes: bytes, page_count: int) -> str:
        """
        OCR every page, one raster at a time, joined with page-break markers.
        A failing page contributes empty text; if every page fails the whole
        OCR attempt fails.
        """
        pages: list[str] = []
        failures = 0
        for page_index in range(page_count):
            try:
                pages.append(self.ocr_image(render_page(pdf_bytes, page_index)).strip())
            except Exception as e:
                failures += 1
                logger.warning("ocr_page_failed", engine=self.name, page_index=page_index, error=str(e))
                pages.append("")

        if page_count and failures == page_count:
            raise ExtractionError(f"OCR failed on all {page_count} pages")

        logger.info("ocr_complete", engine=self.name, page_count=page_count, failed_pages=failures)
        return PAGE_BREAK.join(pages)


class TesseractOcr(OcrEngine):
    """Tesseract via pytesseract."""

    name = "tesseract"

    def __init__(self, lang: Optional[str] = None, psm: int = 6):
        """
        Args:
            lang: Tesseract language code
            psm: Page segmentation mode (6 = uniform block of text)
        """
        self.lang = lang or settings.TESSERACT_LANG
        self.psm = psm
        pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    def ocr_image(self, image: Image.Image) -> str:
        try:
            return pytesseract.image_to_string(image, lang=self.lang, config=f"--psm {self.psm}")
        except Exception as e:
            raise ExtractionError(f"Tesseract failed: {e}") from e

    def health_check(self) -> bool:
        """Check if Tesseract is installed and accessible."""
        try:
            pytesseract.get_tesseract_version()
            return True
        except Exception:
            return False
