"""
Tests for text extraction and the OCR fallback decision.
"""

import pytest

from smart_upload.errors import ExtractionError
from smart_upload.models.enums import ExtractionMethod
from smart_upload.pipeline.text_extraction import (
    estimate_text_confidence,
    extract_text_from_image,
    extract_text_from_pdf,
    parse_filename_metadata,
    should_use_ocr,
    validate_pdf_signature,
)

BODY = "\n".join(["Liberty Parade, march for concert band"] * 6)


class TestShouldUseOcr:
    """Test the ordered OCR heuristics."""

    def test_too_short(self):
        decision = should_use_ocr("", 1)
        assert decision.should_ocr
        assert decision.confidence == 0.3

    def test_low_density(self):
        decision = should_use_ocr("a" * 200, 30)
        assert decision.should_ocr
        assert decision.confidence == 0.4
        assert "density" in decision.reason

    def test_mostly_whitespace(self):
        decision = should_use_ocr("a" + " " * 1000 + "b", 1)
        assert decision.should_ocr
        assert decision.confidence == 0.35

    def test_good_text(self):
        decision = should_use_ocr("Liberty Parade " * 20, 1)
        assert not decision.should_ocr
        assert decision.confidence == 1.0

    def test_short_text_wins_over_density(self):
        decision = should_use_ocr("abc", 10)
        assert decision.confidence == 0.3


class TestValidatePdfSignature:
    def test_not_a_pdf(self):
        with pytest.raises(ExtractionError) as exc:
            validate_pdf_signature(b"PK\x03\x04 not a pdf")
        assert exc.value.reason == ExtractionError.NOT_A_PDF

    def test_encrypted(self):
        with pytest.raises(ExtractionError) as exc:
            validate_pdf_signature(b"%PDF-1.7\n1 0 obj << /Encrypt 2 0 R >>")
        assert exc.value.reason == ExtractionError.PASSWORD_PROTECTED

    def test_valid(self, pdf_factory):
        validate_pdf_signature(pdf_factory(["Flute"]))


class TestExtractTextFromPdf:
    """Test direct extraction and escalation to OCR."""

    def test_text_layer_used(self, pdf_factory, ocr_factory):
        engine = ocr_factory(text="should not be used")
        result = extract_text_from_pdf(pdf_factory([BODY, BODY]), engine)
        assert result.method == ExtractionMethod.PDF_TEXT
        assert result.confidence == 1.0
        assert result.page_count == 2
        assert len(result.page_texts) == 2
        assert "Liberty Parade" in result.page_texts[0]
        assert engine.pdf_calls == 0

    def test_sparse_text_goes_to_ocr(self, pdf_factory, ocr_factory):
        engine = ocr_factory(text="Flute\nLiberty Parade")
        result = extract_text_from_pdf(pdf_factory(["Fl"]), engine, ocr_mode="tesseract")
        assert result.method == ExtractionMethod.OCR
        assert result.confidence == 0.8
        assert result.text == "Flute\nLiberty Parade"
        assert engine.pdf_calls == 1

    def test_ocr_failure_falls_back_to_text(self, pdf_factory, ocr_factory):
        engine = ocr_factory(error=RuntimeError("tesseract missing"))
        result = extract_text_from_pdf(pdf_factory(["Fl"]), engine, ocr_mode="tesseract")
        assert result.method == ExtractionMethod.PDF_TEXT
        assert result.confidence == 0.5
        assert "tesseract missing" in result.ocr_error

    def test_ocr_skipped(self, pdf_factory, ocr_factory):
        engine = ocr_factory(text="unused")
        result = extract_text_from_pdf(pdf_factory(["Fl"]), engine, ocr_mode="skip")
        assert result.method == ExtractionMethod.PDF_TEXT
        assert result.confidence == 0.3
        assert engine.pdf_calls == 0

    def test_no_engine(self, pdf_factory):
        result = extract_text_from_pdf(pdf_factory(["Fl"]), None)
        assert result.method == ExtractionMethod.PDF_TEXT
        assert result.decision.should_ocr

    def test_garbage_rejected(self):
        with pytest.raises(ExtractionError):
            extract_text_from_pdf(b"not a pdf at all", None)


class TestExtractTextFromImage:
    def test_without_engine(self, png_bytes):
        result = extract_text_from_image(png_bytes, None)
        assert result.method == ExtractionMethod.NONE
        assert result.page_count == 1
        assert result.confidence == 0.0

    def test_with_engine(self, png_bytes, ocr_factory):
        result = extract_text_from_image(png_bytes, ocr_factory(text="Trumpet"))
        assert result.method == ExtractionMethod.OCR
        assert result.text == "Trumpet"


class TestEstimateTextConfidence:
    def test_empty(self):
        assert estimate_text_confidence("", 1) == 0.0

    def test_good_text_is_high(self):
        assert estimate_text_confidence("Liberty Parade " * 20, 1) >= 0.9


class TestParseFilenameMetadata:
    """Test title guesses from file names."""

    def test_part_file(self):
        result = parse_filename_metadata("Flute Part 1.pdf")
        assert result["title"] == "Flute Part 1"
        assert result["confidence"] == 0.3
        assert result["part_label"] == "Flute"

    def test_score_file(self):
        result = parse_filename_metadata("Full Score.pdf")
        assert result["confidence"] == 0.35
        assert "part_label" not in result

    def test_plain_name(self):
        result = parse_filename_metadata("liberty_parade.pdf")
        assert result == {"title": "liberty parade", "confidence": 0.1}
