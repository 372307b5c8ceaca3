"""
SQLAlchemy ORM models.
Pipeline tables (batches, items, proposals), the read-only instrument
catalog, and the music library tables written by ingestion.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from smart_upload.models.database import Base, utcnow
from smart_upload.models.enums import BatchStatus, ItemStatus


# ────────────────────────────────────────────────────────────
# UPLOAD BATCHES
# ────────────────────────────────────────────────────────────
class UploadBatch(Base):
    __tablename__ = "smart_upload_batches"

    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.CREATED.value
    )
    total_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_su_batches_user", "user_id"),
        Index("idx_su_batches_status", "status"),
    )


# ────────────────────────────────────────────────────────────
# UPLOAD ITEMS
# ────────────────────────────────────────────────────────────
class UploadItem(Base):
    __tablename__ = "smart_upload_items"

    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("smart_upload_batches.batch_id"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ItemStatus.CREATED.value
    )
    current_step: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extraction_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Serialized ExtractedMetadata record
    extracted_meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_packet: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Serialized list of SplitFileRecord
    split_files: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_su_items_batch", "batch_id"),
        Index("idx_su_items_status", "status"),
        Index("idx_su_items_hash", "content_hash"),
    )


# ────────────────────────────────────────────────────────────
# UPLOAD PROPOSALS
# ────────────────────────────────────────────────────────────
class UploadProposal(Base):
    __tablename__ = "smart_upload_proposals"

    proposal_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("smart_upload_items.item_id"), nullable=False
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("smart_upload_batches.batch_id"), nullable=False
    )

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    composer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    composer_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    arranger: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    arranger_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    publisher: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    publisher_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    difficulty: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    difficulty_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    genre_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    style: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    style_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    instrumentation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instrumentation_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_seconds_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Serialized list of PartMapping
    parts: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    # Reviewer overlay, merged over the extracted values at ingestion
    corrections: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    matched_piece_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("music_pieces.piece_id"), nullable=True
    )
    is_new_piece: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    work_fingerprint: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("item_id", name="uq_su_proposals_item"),
        Index("idx_su_proposals_batch", "batch_id"),
    )


# ────────────────────────────────────────────────────────────
# INSTRUMENT CATALOG (read-only here)
# ────────────────────────────────────────────────────────────
class Instrument(Base):
    __tablename__ = "instruments"

    instrument_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    family: Mapped[str] = mapped_column(String(50), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ────────────────────────────────────────────────────────────
# MUSIC LIBRARY (written by ingestion)
# ────────────────────────────────────────────────────────────
class MusicPiece(Base):
    __tablename__ = "music_pieces"

    piece_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    composer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    arranger: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    publisher: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    difficulty: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    style: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instrumentation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    work_fingerprint: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_music_pieces_fingerprint", "work_fingerprint"),
    )


class MusicFile(Base):
    __tablename__ = "music_files"

    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    piece_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("music_pieces.piece_id"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(20), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    part_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="smart_upload")
    original_upload_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    extracted_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_music_files_piece", "piece_id"),
        Index("idx_music_files_storage_key", "storage_key"),
        Index("idx_music_files_hash", "content_hash"),
    )


class MusicPart(Base):
    __tablename__ = "music_parts"

    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    piece_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("music_pieces.piece_id"), nullable=False
    )
    instrument_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instruments.instrument_id"), nullable=False
    )
    file_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("music_files.file_id"), nullable=True
    )
    part_name: Mapped[str] = mapped_column(Text, nullable=False)
    page_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    match_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_music_parts_piece", "piece_id"),
    )
