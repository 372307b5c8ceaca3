"""
Pydantic request/response schemas for the /api/v1/smart-upload endpoints.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from smart_upload.schemas.metadata import Corrections, PartMapping, SplitFileRecord


# ── Request Schemas ──────────────────────────────────────────

class ApproveRequest(BaseModel):
    """Optional corrections applied in the same transaction as the approval."""
    corrections: Optional[Corrections] = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


# ── Response Schemas ─────────────────────────────────────────

class BatchSummary(BaseModel):
    batch_id: uuid.UUID
    user_id: str
    status: str
    total_files: int
    processed_files: int
    success_files: int
    failed_files: int
    error_summary: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BatchListResponse(BaseModel):
    batches: list[BatchSummary]
    limit: int
    offset: int


class ItemSummary(BaseModel):
    item_id: uuid.UUID
    batch_id: uuid.UUID
    file_name: str
    file_size_bytes: int
    mime_type: str
    content_hash: str
    status: str
    current_step: Optional[str] = None
    page_count: Optional[int] = None
    extraction_method: Optional[str] = None
    extraction_confidence: Optional[float] = None
    is_packet: bool = False
    split_files: Optional[list[SplitFileRecord]] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UploadResponse(BaseModel):
    """Response after uploading a file into a batch."""
    item: ItemSummary
    message: str = "File uploaded successfully. Processing queued."


class ProposalResponse(BaseModel):
    proposal_id: uuid.UUID
    item_id: uuid.UUID
    batch_id: uuid.UUID

    title: Optional[str] = None
    title_confidence: Optional[float] = None
    composer: Optional[str] = None
    composer_confidence: Optional[float] = None
    arranger: Optional[str] = None
    arranger_confidence: Optional[float] = None
    publisher: Optional[str] = None
    publisher_confidence: Optional[float] = None
    difficulty: Optional[str] = None
    difficulty_confidence: Optional[float] = None
    genre: Optional[str] = None
    genre_confidence: Optional[float] = None
    style: Optional[str] = None
    style_confidence: Optional[float] = None
    instrumentation: Optional[str] = None
    instrumentation_confidence: Optional[float] = None
    duration_seconds: Optional[int] = None
    duration_seconds_confidence: Optional[float] = None
    notes: Optional[str] = None
    notes_confidence: Optional[float] = None

    parts: Optional[list[PartMapping]] = None
    corrections: Optional[dict] = None
    is_approved: bool
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    matched_piece_id: Optional[uuid.UUID] = None
    is_new_piece: bool
    work_fingerprint: Optional[str] = None

    model_config = {"from_attributes": True}


class ProposalListResponse(BaseModel):
    proposals: list[ProposalResponse]
    total: int


class BatchDetail(BaseModel):
    """Batch with its items and proposals."""
    batch: BatchSummary
    items: list[ItemSummary]
    proposals: list[ProposalResponse]


class CleanupResponse(BaseModel):
    batch_id: str
    status: str
    cleanup_job_id: str
    message: str = "Cleanup queued."


class ErrorResponse(BaseModel):
    error: str
    detail: str
