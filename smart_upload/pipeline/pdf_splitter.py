"""
PDF splitting by cutting instructions.

Each instruction names a part and a 0-indexed inclusive page range. Ranges
are clamped into the document, empty ranges are skipped, and a failure on
one instruction never aborts the others.
"""

import re
from dataclasses import dataclass
from typing import Sequence

import fitz
import structlog

from smart_upload.errors import SplitError
from smart_upload.observability import metrics
from smart_upload.schemas.metadata import CuttingInstruction

logger = structlog.get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')


@dataclass
class SplitPart:
    instruction: CuttingInstruction
    index: int
    file_name: str
    content: bytes
    page_count: int
    page_start: int
    page_end: int


def sanitize_file_name(name: str) -> str:
    """Replace path separators and reserved characters with underscores."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name).strip()


def clamp_page_range(start: int, end: int, total_pages: int) -> tuple[int, int] | None:
    """
    Clamp a 0-indexed inclusive range into [0, total_pages - 1].
    Returns None when the clamped range is empty.
    """
    if total_pages <= 0:
        return None
    last = total_pages - 1
    clamped_start = max(0, min(start, last))
    clamped_end = max(0, min(end, last))
    if clamped_start > clamped_end:
        return None
    return clamped_start, clamped_end


def split_pdf_by_cutting_instructions(
    pdf_bytes: bytes,
    base_name: str,
    instructions: Sequence[CuttingInstruction],
) -> list[SplitPart]:
    """
    Produce one new PDF per surviving instruction, pages copied in order.
    Raises SplitError only if the source document cannot be opened.
    """
    try:
        source = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise SplitError(f"Cannot open PDF for splitting: {e}") from e

    parts: list[SplitPart] = []
    try:
        total_pages = source.page_count
        for index, instruction in enumerate(instructions):
            clamped = clamp_page_range(instruction.page_start, instruction.page_end, total_pages)
            if clamped is None:
                logger.warning(
                    "split_instruction_skipped",
                    part_name=instruction.part_name,
                    page_start=instruction.page_start,
                    page_end=instruction.page_end,
                    total_pages=total_pages,
                )
                metrics.split_parts_total.labels(outcome="skipped").inc()
                continue

            start, end = clamped
            if (start, end) != (instruction.page_start, instruction.page_end):
                logger.warning(
                    "split_range_clamped",
                    part_name=instruction.part_name,
                    requested=[instruction.page_start, instruction.page_end],
                    clamped=[start, end],
                )

            try:
                part_doc = fitz.open()
                try:
                    part_doc.insert_pdf(source, from_page=start, to_page=end)
                    content = part_doc.tobytes(garbage=3, deflate=True)
                    page_count = part_doc.page_count
                finally:
                    part_doc.close()
            except Exception as e:
                logger.error(
                    "split_instruction_failed",
                    index=index,
                    part_name=instruction.part_name,
                    error=str(e),
                )
                metrics.split_parts_total.labels(outcome="failed").inc()
                continue

            parts.append(SplitPart(
                instruction=instruction,
                index=index,
                file_name=sanitize_file_name(f"{base_name} - {instruction.part_name}.pdf"),
                content=content,
                page_count=page_count,
                page_start=start,
                page_end=end,
            ))
            metrics.split_parts_total.labels(outcome="created").inc()
    finally:
        source.close()

    logger.info(
        "pdf_split_complete",
        total_pages=total_pages,
        requested=len(instructions),
        produced=len(parts),
    )
    return parts


def get_pdf_page_count(pdf_bytes: bytes) -> int:
    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return doc.page_count
    except Exception as e:
        raise SplitError(f"Cannot open PDF: {e}") from e
