"""
Python enums for the lifecycle columns.
Values are stored as plain strings in the database.
"""

from enum import Enum


class BatchStatus(str, Enum):
    CREATED = "CREATED"
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    INGESTING = "INGESTING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ItemStatus(str, Enum):
    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    TEXT_EXTRACTED = "TEXT_EXTRACTED"
    CLASSIFIED = "CLASSIFIED"
    SPLIT = "SPLIT"
    APPROVED = "APPROVED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ItemStep(str, Enum):
    VALIDATED = "VALIDATED"
    TEXT_EXTRACTED = "TEXT_EXTRACTED"
    METADATA_EXTRACTED = "METADATA_EXTRACTED"
    SPLIT_PLANNED = "SPLIT_PLANNED"
    SPLIT_COMPLETE = "SPLIT_COMPLETE"
    VERIFIED = "VERIFIED"
    INGESTED = "INGESTED"


class ExtractionMethod(str, Enum):
    PDF_TEXT = "pdf_text"
    OCR = "ocr"
    NONE = "none"


class OcrMode(str, Enum):
    TESSERACT = "tesseract"
    SKIP = "skip"


class FileType(str, Enum):
    PART = "PART"
    SCORE = "SCORE"
    AUDIO = "AUDIO"
    IMAGE = "IMAGE"
    OTHER = "OTHER"


TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.COMPLETE, BatchStatus.FAILED, BatchStatus.CANCELLED}
)

TERMINAL_ITEM_STATUSES = frozenset(
    {ItemStatus.COMPLETE, ItemStatus.FAILED, ItemStatus.CANCELLED}
)
