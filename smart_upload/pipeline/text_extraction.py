"""
Text extraction with an OCR-fallback decision.

Direct text extraction (pdfplumber) runs first. A small set of ordered
heuristics decides whether the text layer is good enough; if not, and OCR
is enabled, the pages are rasterized and recognized instead.
"""

import io
import re
from dataclasses import dataclass, field
from typing import Optional

import pdfplumber
import structlog

from smart_upload.config import settings
from smart_upload.errors import ExtractionError
from smart_upload.models.enums import ExtractionMethod, OcrMode
from smart_upload.observability import metrics
from smart_upload.pipeline.ocr import PAGE_BREAK, OcrEngine

logger = structlog.get_logger(__name__)

_WHITESPACE_CHAR = re.compile(r"\s")
_HEAD_WINDOW = 1024
_ENCRYPT_WINDOW = 4096


@dataclass
class OcrThresholds:
    min_text_length: int = 100
    min_chars_per_page: float = 10.0
    max_whitespace_ratio: float = 0.9
    ocr_confidence: float = 0.8
    ocr_fallback_confidence: float = 0.5

    @classmethod
    def from_settings(cls) -> "OcrThresholds":
        return cls(
            min_text_length=settings.OCR_MIN_TEXT_LENGTH,
            min_chars_per_page=settings.OCR_MIN_CHARS_PER_PAGE,
            max_whitespace_ratio=settings.OCR_MAX_WHITESPACE_RATIO,
            ocr_confidence=settings.OCR_CONFIDENCE_ESTIMATE,
            ocr_fallback_confidence=settings.OCR_FALLBACK_CONFIDENCE,
        )


@dataclass
class OcrDecision:
    should_ocr: bool
    reason: str
    confidence: float


@dataclass
class TextExtractionResult:
    text: str
    page_count: int
    method: ExtractionMethod
    confidence: float
    page_texts: list[str] = field(default_factory=list)
    decision: Optional[OcrDecision] = None
    ocr_error: Optional[str] = None


# ─── Validation ──────────────────────────────────────────────

def validate_pdf_signature(data: bytes) -> None:
    """
    Fail fast on files that are not PDFs or are encrypted.
    Raises ExtractionError with reason NOT_A_PDF or PASSWORD_PROTECTED.
    """
    if not data or b"%PDF" not in data[:_HEAD_WINDOW]:
        raise ExtractionError("Invalid PDF file: missing PDF header", reason=ExtractionError.NOT_A_PDF)
    if b"/Encrypt" in data[:_ENCRYPT_WINDOW] or b"/Encrypt" in data[-_ENCRYPT_WINDOW:]:
        raise ExtractionError("PDF is password protected", reason=ExtractionError.PASSWORD_PROTECTED)


def _read_pdf_pages(data: bytes) -> list[str]:
    """Per-page text via pdfplumber. Raises a typed ExtractionError."""
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            return [(page.extract_text() or "") for page in pdf.pages]
    except Exception as e:
        message = str(e).lower()
        if "password" in message or "encrypt" in message:
            raise ExtractionError(
                f"PDF is password protected: {e}", reason=ExtractionError.PASSWORD_PROTECTED,
            ) from e
        raise ExtractionError(f"PDF parse failure: {e}", reason=ExtractionError.PARSE_FAILURE) from e


def get_pdf_page_count(data: bytes) -> int:
    validate_pdf_signature(data)
    return len(_read_pdf_pages(data))


# ─── OCR decision ────────────────────────────────────────────

def should_use_ocr(
    text: str,
    page_count: int,
    thresholds: Optional[OcrThresholds] = None,
) -> OcrDecision:
    """
    Ordered heuristics; the first one that fires wins.

    1. Too little text overall (regardless of page count)
    2. Too little text per page (scanned document indicator)
    3. Mostly whitespace (image-only PDF with stray separators)
    """
    t = thresholds or OcrThresholds.from_settings()
    text_length = len(text.strip())
    chars_per_page = text_length / page_count if page_count > 0 else 0.0

    if text_length < t.min_text_length:
        return OcrDecision(
            should_ocr=True,
            reason=f"Text too short ({text_length} chars, minimum {t.min_text_length})",
            confidence=0.3,
        )

    if chars_per_page < t.min_chars_per_page:
        return OcrDecision(
            should_ocr=True,
            reason=f"Low text density ({chars_per_page:.1f} chars/page, expected > {t.min_chars_per_page:g})",
            confidence=0.4,
        )

    whitespace_ratio = len(_WHITESPACE_CHAR.findall(text)) / len(text)
    if whitespace_ratio > t.max_whitespace_ratio:
        return OcrDecision(
            should_ocr=True,
            reason=f"Excessive whitespace ({whitespace_ratio * 100:.1f}%)",
            confidence=0.35,
        )

    return OcrDecision(should_ocr=False, reason="Text extraction successful", confidence=1.0)


def estimate_text_confidence(text: str, page_count: int) -> float:
    """Rough quality score of a text layer, used for reporting."""
    if not text.strip():
        return 0.0
    decision = should_use_ocr(text, page_count)
    if decision.should_ocr:
        return decision.confidence
    alpha = sum(1 for c in text if c.isalpha())
    printable = sum(1 for c in text if not c.isspace())
    ratio = alpha / printable if printable else 0.0
    return round(min(1.0, 0.6 + 0.4 * ratio), 2)


# ─── Extraction ──────────────────────────────────────────────

def extract_text_from_pdf(
    data: bytes,
    ocr_engine: Optional[OcrEngine] = None,
    ocr_mode: Optional[str] = None,
    thresholds: Optional[OcrThresholds] = None,
) -> TextExtractionResult:
    """
    Extract text from a PDF, escalating to OCR when the text layer is poor.

    OCR failure never fails extraction: the direct text is returned with a
    low confidence instead.
    """
    t = thresholds or OcrThresholds.from_settings()
    mode = OcrMode(ocr_mode or settings.OCR_MODE)

    validate_pdf_signature(data)
    page_texts = _read_pdf_pages(data)
    page_count = len(page_texts)

    if page_count == 0:
        return TextExtractionResult(
            text="", page_count=0, method=ExtractionMethod.PDF_TEXT, confidence=1.0,
        )

    pdf_text = "\n".join(page_texts)
    decision = should_use_ocr(pdf_text, page_count, t)

    logger.info(
        "pdf_text_extracted",
        page_count=page_count,
        text_length=len(pdf_text.strip()),
        should_ocr=decision.should_ocr,
        reason=decision.reason,
    )

    if not decision.should_ocr:
        result = TextExtractionResult(
            text=pdf_text, page_count=page_count, method=ExtractionMethod.PDF_TEXT,
            confidence=decision.confidence, page_texts=page_texts, decision=decision,
        )
    elif mode == OcrMode.SKIP or ocr_engine is None:
        result = TextExtractionResult(
            text=pdf_text, page_count=page_count, method=ExtractionMethod.PDF_TEXT,
            confidence=decision.confidence, page_texts=page_texts, decision=decision,
        )
    else:
        try:
            ocr_text = ocr_engine.ocr_pdf(data, page_count)
            result = TextExtractionResult(
                text=ocr_text, page_count=page_count, method=ExtractionMethod.OCR,
                confidence=t.ocr_confidence, page_texts=ocr_text.split(PAGE_BREAK),
                decision=decision,
            )
        except Exception as e:
            logger.error("ocr_fallback_failed", error=str(e))
            result = TextExtractionResult(
                text=pdf_text, page_count=page_count, method=ExtractionMethod.PDF_TEXT,
                confidence=t.ocr_fallback_confidence, page_texts=page_texts, decision=decision,
                ocr_error=str(e),
            )

    metrics.text_extractions_total.labels(method=result.method.value).inc()
    metrics.extraction_confidence.labels(method=result.method.value).observe(result.confidence)
    return result


def extract_text_from_image(data: bytes, ocr_engine: Optional[OcrEngine]) -> TextExtractionResult:
    """Images go straight to OCR; without an engine they carry no text."""
    if ocr_engine is None:
        return TextExtractionResult(text="", page_count=1, method=ExtractionMethod.NONE, confidence=0.0)
    text = ocr_engine.ocr_image_bytes(data)
    metrics.text_extractions_total.labels(method=ExtractionMethod.OCR.value).inc()
    return TextExtractionResult(
        text=text, page_count=1, method=ExtractionMethod.OCR,
        confidence=settings.OCR_CONFIDENCE_ESTIMATE, page_texts=[text],
    )


# ─── Filename metadata ───────────────────────────────────────

_PART_IN_NAME = re.compile(r"(?:part\s*(\d+)|(\d+)(?:st|nd|rd|th)\s*part)", re.IGNORECASE)
_INSTRUMENT_IN_NAME = re.compile(
    r"(flute|oboe|clarinet|saxophone|trumpet|trombone|horn|tuba|percussion|violin|viola|cello|bass)",
    re.IGNORECASE,
)
_SCORE_IN_NAME = re.compile(r"conductor|full\s*score|score", re.IGNORECASE)
_EXTENSION = re.compile(r"\.[a-z0-9]{2,5}$", re.IGNORECASE)


def parse_filename_metadata(file_name: str) -> dict:
    """
    Best-effort title guess from common file naming patterns
    ("Flute Part 1.pdf", "Full Score.pdf"). Confidence in [0, 1].
    """
    clean = _EXTENSION.sub("", file_name).strip()
    result: dict = {}

    if _PART_IN_NAME.search(clean):
        instrument = _INSTRUMENT_IN_NAME.search(clean)
        if instrument:
            result = {"title": clean, "confidence": 0.3, "part_label": instrument.group(1)}

    if _SCORE_IN_NAME.search(clean):
        result = {"title": clean, "confidence": 0.35}

    if not result and clean:
        result = {"title": clean.replace("_", " "), "confidence": 0.1}

    return result
