"""
Structured records for extracted metadata, cutting instructions,
part mappings and split results.

These are persisted as serialized documents only at the storage boundary
(JSON columns on items and proposals).
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


CATALOG_FIELDS = (
    "title",
    "composer",
    "arranger",
    "publisher",
    "difficulty",
    "genre",
    "style",
    "instrumentation",
    "duration_seconds",
    "notes",
)


class CuttingInstruction(BaseModel):
    """A named page range to extract as one part. 0-indexed, inclusive."""
    part_name: str
    page_start: int
    page_end: int


class ExtractedMetadata(BaseModel):
    """Partial catalog metadata with per-field confidence in [0, 1]."""
    title: Optional[str] = None
    title_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    composer: Optional[str] = None
    composer_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    arranger: Optional[str] = None
    arranger_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    publisher: Optional[str] = None
    publisher_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    difficulty: Optional[str] = None
    difficulty_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    genre: Optional[str] = None
    genre_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    style: Optional[str] = None
    style_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    instrumentation: Optional[str] = None
    instrumentation_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    duration_seconds_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    notes: Optional[str] = None
    notes_confidence: Optional[float] = Field(default=None, ge=0, le=1)

    # Instrument labels as printed on the music
    part_labels: list[str] = Field(default_factory=list)
    cutting_instructions: list[CuttingInstruction] = Field(default_factory=list)
    source: Optional[str] = None

    def confidence_of(self, field: str) -> float:
        value = getattr(self, f"{field}_confidence")
        return value if value is not None else 0.0

    def merge_higher_confidence(self, other: "ExtractedMetadata") -> "ExtractedMetadata":
        """
        Per field, keep whichever value carries the higher confidence.
        Empty values never replace present ones.
        """
        merged = self.model_copy(deep=True)
        for field in CATALOG_FIELDS:
            theirs = getattr(other, field)
            if theirs is None:
                continue
            mine = getattr(merged, field)
            if mine is None or other.confidence_of(field) > merged.confidence_of(field):
                setattr(merged, field, theirs)
                setattr(merged, f"{field}_confidence", getattr(other, f"{field}_confidence"))
        if not merged.part_labels and other.part_labels:
            merged.part_labels = list(other.part_labels)
        if not merged.cutting_instructions and other.cutting_instructions:
            merged.cutting_instructions = list(other.cutting_instructions)
        return merged

    def catalog_values(self) -> dict[str, Any]:
        """Catalog field values and their confidences, keyed like proposal columns."""
        values: dict[str, Any] = {}
        for field in CATALOG_FIELDS:
            values[field] = getattr(self, field)
            values[f"{field}_confidence"] = getattr(self, f"{field}_confidence")
        return values


class PartMapping(BaseModel):
    """One detected part and the catalog instrument it resolved to (if any)."""
    label: str
    normalized_label: str
    instrument_id: Optional[str] = None
    instrument_name: Optional[str] = None
    confidence: float = 0.0
    resolved: bool = False
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    storage_key: Optional[str] = None
    instruction_index: Optional[int] = None


class SplitFileRecord(BaseModel):
    """One per-part PDF produced by the splitter and uploaded to storage."""
    part_name: str
    file_name: str
    storage_key: str
    content_hash: str
    size_bytes: int
    page_count: int
    page_start: int
    page_end: int
    instruction_index: Optional[int] = None


class Corrections(BaseModel):
    """Reviewer edits. Only the fields actually sent are merged."""
    title: Optional[str] = None
    composer: Optional[str] = None
    arranger: Optional[str] = None
    publisher: Optional[str] = None
    difficulty: Optional[str] = None
    genre: Optional[str] = None
    style: Optional[str] = None
    instrumentation: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None

    model_config = {"extra": "forbid"}

    def to_overlay(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
