"""
Ingestion: commit approved proposals into the music library.

Each proposal is committed in its own transaction. A failing proposal rolls
back alone, fails its item and is reported in the batch error summary; the
others still commit. Storage objects are re-referenced, never moved.
"""

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import select

from smart_upload.errors import IngestionError, InvalidStateError
from smart_upload.models.database import utcnow
from smart_upload.models.enums import BatchStatus, FileType, ItemStatus, ItemStep
from smart_upload.models.tables import (
    MusicFile,
    MusicPart,
    MusicPiece,
    UploadItem,
    UploadProposal,
)
from smart_upload.observability import metrics
from smart_upload.pipeline import state
from smart_upload.pipeline.cache import CatalogCache
from smart_upload.pipeline.service import SmartUploadService
from smart_upload.schemas.metadata import CATALOG_FIELDS, PartMapping, SplitFileRecord
from smart_upload.storage.paths import compute_work_fingerprint

logger = structlog.get_logger(__name__)

INGEST_ERROR_PREFIX = "Ingestion failed"


@dataclass
class IngestionReport:
    batch_id: str
    status: Optional[str] = None
    ingested: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    piece_ids: set[str] = field(default_factory=set)
    skipped: bool = False


def final_fields(proposal: UploadProposal) -> dict:
    """Reviewer corrections laid over the extracted values."""
    values = {name: getattr(proposal, name) for name in CATALOG_FIELDS}
    for name, value in (proposal.corrections or {}).items():
        if name in CATALOG_FIELDS:
            values[name] = value
    return values


def file_type_for(item: UploadItem, parts: list[PartMapping]) -> FileType:
    mime = item.mime_type or ""
    if mime == "application/pdf":
        return FileType.PART if len(parts) == 1 else FileType.SCORE
    if mime.startswith("audio/"):
        return FileType.AUDIO
    if mime.startswith("image/"):
        return FileType.IMAGE
    return FileType.OTHER


async def _resolve_piece(session, proposal: UploadProposal, values: dict, batch_id: uuid.UUID) -> tuple[MusicPiece, bool]:
    if proposal.matched_piece_id is not None:
        piece = await session.get(MusicPiece, proposal.matched_piece_id)
        if piece is not None:
            return piece, False

    fingerprint = compute_work_fingerprint(values["title"], values.get("composer"))
    # A sibling item of the same work may have created the piece earlier in this run
    existing = (await session.execute(
        select(MusicPiece).where(MusicPiece.work_fingerprint == fingerprint).limit(1)
    )).scalar_one_or_none()
    if existing is not None:
        return existing, False

    piece = MusicPiece(work_fingerprint=fingerprint, source_batch_id=batch_id, **values)
    session.add(piece)
    await session.flush()
    return piece, True


async def _ingest_proposal(service: SmartUploadService, proposal_id: uuid.UUID) -> Optional[str]:
    """Commit one proposal. Returns the piece id, or None if already done."""
    async with service.db.session() as session, session.begin():
        proposal = await session.get(UploadProposal, proposal_id)
        item = await session.get(UploadItem, proposal.item_id) if proposal else None
        if proposal is None or item is None:
            raise IngestionError("Proposal or item disappeared", proposal_id=str(proposal_id))
        if state.item_status(item) != ItemStatus.APPROVED:
            return None

        values = final_fields(proposal)
        if not values.get("title"):
            values["title"] = Path(item.file_name).stem.replace("_", " ").strip()
        if not values["title"]:
            raise IngestionError("Proposal has no title", proposal_id=str(proposal_id))

        piece, created = await _resolve_piece(session, proposal, values, proposal.batch_id)
        parts = [PartMapping.model_validate(p) for p in (proposal.parts or [])]
        split_records = [SplitFileRecord.model_validate(r) for r in (item.split_files or [])]

        # ── Files ──
        files_by_index: dict[int, MusicFile] = {}
        files_by_part: dict[str, MusicFile] = {}
        if split_records:
            for position, record in enumerate(split_records):
                music_file = MusicFile(
                    piece_id=piece.piece_id,
                    file_name=record.file_name,
                    file_type=FileType.PART.value,
                    mime_type="application/pdf",
                    file_size_bytes=record.size_bytes,
                    storage_key=record.storage_key,
                    content_hash=record.content_hash,
                    page_count=record.page_count,
                    part_name=record.part_name,
                    original_upload_id=item.item_id,
                )
                session.add(music_file)
                index = record.instruction_index if record.instruction_index is not None else position
                files_by_index[index] = music_file
                files_by_part.setdefault(record.part_name, music_file)
            original_file = None
        else:
            file_type = file_type_for(item, parts)
            original_file = MusicFile(
                piece_id=piece.piece_id,
                file_name=item.file_name,
                file_type=file_type.value,
                mime_type=item.mime_type,
                file_size_bytes=item.file_size_bytes,
                storage_key=item.storage_key,
                content_hash=item.content_hash,
                page_count=item.page_count,
                part_name=parts[0].label if file_type == FileType.PART else None,
                original_upload_id=item.item_id,
                extracted_metadata=item.extracted_meta,
                ocr_text=item.ocr_text,
            )
            session.add(original_file)
        await session.flush()

        # ── Parts ──
        for mapping in parts:
            if not mapping.resolved or not mapping.instrument_id:
                continue
            music_file = None
            if mapping.instruction_index is not None:
                music_file = files_by_index.get(mapping.instruction_index)
            if music_file is None:
                music_file = files_by_part.get(mapping.label, original_file)
            session.add(MusicPart(
                piece_id=piece.piece_id,
                instrument_id=uuid.UUID(mapping.instrument_id),
                file_id=music_file.file_id if music_file is not None else None,
                part_name=mapping.label,
                page_start=mapping.page_start,
                page_end=mapping.page_end,
                match_confidence=mapping.confidence,
            ))

        proposal.matched_piece_id = piece.piece_id
        proposal.is_new_piece = created
        state.transition_item(item, ItemStatus.COMPLETE)
        item.current_step = ItemStep.INGESTED.value
        item.completed_at = utcnow()

    logger.info(
        "proposal_ingested",
        proposal_id=str(proposal_id),
        piece_id=str(piece.piece_id),
        new_piece=created,
        files=len(split_records) or 1,
        parts=sum(1 for p in parts if p.resolved),
    )
    return str(piece.piece_id)


async def ingest_batch(
    service: SmartUploadService,
    cache: Optional[CatalogCache],
    batch_id: str,
    approved_by: str,
) -> IngestionReport:
    """
    Commit every approved proposal of an INGESTING batch, then finish the
    batch: COMPLETE when nothing failed during ingestion, FAILED otherwise.
    Safe to re-run: completed items are skipped.
    """
    report = IngestionReport(batch_id=str(batch_id))
    batch = await service.get_batch(batch_id)
    current = state.batch_status(batch)
    if state.is_terminal(batch):
        logger.info("ingest_skipped_terminal", batch_id=str(batch_id), status=current.value)
        report.status = current.value
        report.skipped = True
        return report
    if current != BatchStatus.INGESTING:
        raise InvalidStateError(f"Batch {batch_id} is {current.value}, not INGESTING")

    logger.info("ingestion_started", batch_id=str(batch_id), approved_by=approved_by)
    async with service.db.session() as session:
        rows = (await session.execute(
            select(UploadProposal.proposal_id, UploadItem.item_id, UploadItem.file_name)
            .join(UploadItem, UploadItem.item_id == UploadProposal.item_id)
            .where(
                UploadProposal.batch_id == batch.batch_id,
                UploadProposal.is_approved.is_(True),
                UploadItem.status == ItemStatus.APPROVED.value,
            )
            .order_by(UploadProposal.created_at)
        )).all()

    for proposal_id, item_id, file_name in rows:
        try:
            piece_id = await _ingest_proposal(service, proposal_id)
        except Exception as e:
            message = f"{INGEST_ERROR_PREFIX}: {e}"
            logger.exception("proposal_ingest_failed", proposal_id=str(proposal_id), error=str(e))
            metrics.proposals_ingested_total.labels(outcome="failed").inc()
            await service.fail_item(item_id, message, stage="ingest")
            continue
        if piece_id is not None:
            report.ingested.append(str(proposal_id))
            report.piece_ids.add(piece_id)
            metrics.proposals_ingested_total.labels(outcome="success").inc()

    # ── Finish ──
    async with service.db.session() as session, session.begin():
        batch = await service.lock_batch(session, batch_id)
        failed = (await session.execute(
            select(UploadItem.file_name, UploadItem.error_message)
            .where(
                UploadItem.batch_id == batch.batch_id,
                UploadItem.status == ItemStatus.FAILED.value,
                UploadItem.error_message.like(f"{INGEST_ERROR_PREFIX}%"),
            )
            .order_by(UploadItem.file_name)
        )).all()
        report.errors = [f"{name}: {message}" for name, message in failed]
        if state.batch_status(batch) == BatchStatus.INGESTING:
            final = BatchStatus.FAILED if report.errors else BatchStatus.COMPLETE
            state.transition_batch(batch, final)
            batch.error_summary = "; ".join(report.errors) or None
            batch.completed_at = utcnow()
        await service.recompute_batch_counters(session, batch)
        report.status = batch.status

    metrics.batches_finished_total.labels(status=report.status).inc()
    logger.info(
        "ingestion_finished",
        batch_id=str(batch_id),
        status=report.status,
        ingested=len(report.ingested),
        errors=len(report.errors),
    )

    if cache is not None and report.piece_ids:
        try:
            cache.invalidate_pieces(sorted(report.piece_ids))
        except Exception as e:
            # Batch is already committed
            logger.warning("catalog_cache_invalidation_failed", batch_id=str(batch_id), error=str(e))
    return report
