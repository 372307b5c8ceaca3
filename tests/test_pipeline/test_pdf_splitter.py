"""
Tests for PDF splitting.
"""

import fitz
import pytest

from smart_upload.errors import SplitError
from smart_upload.pipeline.pdf_splitter import (
    clamp_page_range,
    get_pdf_page_count,
    sanitize_file_name,
    split_pdf_by_cutting_instructions,
)
from smart_upload.schemas.metadata import CuttingInstruction


def _first_page_text(content: bytes) -> str:
    with fitz.open(stream=content, filetype="pdf") as doc:
        return doc[0].get_text()


class TestClampPageRange:
    """Test 0-indexed inclusive range clamping."""

    def test_inside(self):
        assert clamp_page_range(1, 2, 4) == (1, 2)

    def test_end_past_document(self):
        assert clamp_page_range(0, 10, 4) == (0, 3)

    def test_negative_start(self):
        assert clamp_page_range(-2, 1, 4) == (0, 1)

    def test_fully_outside_document(self):
        assert clamp_page_range(10, 12, 4) == (3, 3)
        assert clamp_page_range(-5, -1, 4) == (0, 0)

    def test_reversed_is_empty(self):
        assert clamp_page_range(3, 1, 4) is None

    def test_empty_document(self):
        assert clamp_page_range(0, 0, 0) is None


class TestSanitizeFileName:
    def test_reserved_characters(self):
        assert sanitize_file_name('March: 1st/2nd "Flute"') == "March_ 1st_2nd _Flute_"


class TestSplitPdf:
    """Test splitting a packet into per-part PDFs."""

    def test_two_parts(self, packet_pdf):
        parts = split_pdf_by_cutting_instructions(packet_pdf, "packet", [
            CuttingInstruction(part_name="Flute", page_start=0, page_end=1),
            CuttingInstruction(part_name="Bb Clarinet", page_start=2, page_end=3),
        ])
        assert [p.instruction.part_name for p in parts] == ["Flute", "Bb Clarinet"]
        assert [p.page_count for p in parts] == [2, 2]
        assert parts[0].file_name == "packet - Flute.pdf"
        assert (parts[1].page_start, parts[1].page_end) == (2, 3)
        assert "Clarinet" in _first_page_text(parts[1].content)
        assert get_pdf_page_count(parts[0].content) == 2

    def test_bad_instruction_does_not_abort_others(self, packet_pdf):
        parts = split_pdf_by_cutting_instructions(packet_pdf, "packet", [
            CuttingInstruction(part_name="Backwards", page_start=3, page_end=1),
            CuttingInstruction(part_name="Flute", page_start=0, page_end=1),
        ])
        assert [p.instruction.part_name for p in parts] == ["Flute"]
        assert parts[0].index == 1

    def test_range_clamped(self, packet_pdf):
        parts = split_pdf_by_cutting_instructions(packet_pdf, "packet", [
            CuttingInstruction(part_name="Bb Clarinet", page_start=2, page_end=9),
        ])
        assert parts[0].page_end == 3
        assert parts[0].page_count == 2

    def test_range_outside_document_clamps(self, packet_pdf):
        parts = split_pdf_by_cutting_instructions(packet_pdf, "packet", [
            CuttingInstruction(part_name="Bb Clarinet", page_start=10, page_end=12),
        ])
        assert [(p.page_start, p.page_end, p.page_count) for p in parts] == [(3, 3, 1)]
        assert "Clarinet" in _first_page_text(parts[0].content)

    def test_repeated_part_names_kept_apart(self, packet_pdf):
        parts = split_pdf_by_cutting_instructions(packet_pdf, "packet", [
            CuttingInstruction(part_name="Flute", page_start=0, page_end=0),
            CuttingInstruction(part_name="Flute", page_start=3, page_end=3),
        ])
        assert [(p.index, p.page_start) for p in parts] == [(0, 0), (1, 3)]
        assert parts[0].content != parts[1].content

    def test_no_instructions(self, packet_pdf):
        assert split_pdf_by_cutting_instructions(packet_pdf, "packet", []) == []

    def test_unreadable_source(self):
        with pytest.raises(SplitError):
            split_pdf_by_cutting_instructions(b"this is not a pdf", "broken", [
                CuttingInstruction(part_name="Flute", page_start=0, page_end=0),
            ])
